from fastapi import APIRouter

from invitemarket.api.v1.endpoints.health import router as health_router
from invitemarket.api.v1.endpoints.listings import router as listings_router
from invitemarket.api.v1.endpoints.purchase import router as purchase_router
from invitemarket.api.v1.endpoints.sales import router as sales_router
from invitemarket.api.v1.endpoints.identity import router as identity_router
from invitemarket.api.v1.endpoints.internal import router as internal_router
from invitemarket.schemas.common import ErrorResponse


_ERRORS = {code: {"model": ErrorResponse} for code in (400, 401, 404, 409, 500)}

router = APIRouter(prefix="/v1", responses=_ERRORS)
router.include_router(health_router, tags=["health"])
router.include_router(listings_router, tags=["listings"])
router.include_router(purchase_router, tags=["purchase"])
router.include_router(sales_router, tags=["sales"])
router.include_router(identity_router, tags=["identity"])
router.include_router(internal_router, tags=["internal"])
