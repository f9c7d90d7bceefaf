from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.api.deps import get_cipher, get_settlement_adapter
from invitemarket.core.config import settings
from invitemarket.core.crypto import SecretCipher
from invitemarket.core.db import get_db
from invitemarket.core.errors import SettlementFailed
from invitemarket.services.purchase import PurchaseState, purchase_listing
from invitemarket.services.settlement import SettlementAdapter

router = APIRouter()


@router.post("/purchase/{slug}")
async def purchase(
    slug: str,
    request: Request,
    x_payment: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    settlement: SettlementAdapter = Depends(get_settlement_adapter),
    cipher: SecretCipher = Depends(get_cipher),
) -> JSONResponse:
    """
    x402-paid purchase. Without a valid X-PAYMENT header this answers 402 with the payment
    requirements; with one, it settles, records the sale and returns the secret.
    """
    outcome = await purchase_listing(
        db=db,
        slug=slug,
        resource_url=str(request.url),
        payment_proof=x_payment,
        settlement=settlement,
        cipher=cipher,
        chain_id=settings.chain_id,
        timeout_seconds=settings.settlement_timeout_seconds,
    )
    if outcome.state is PurchaseState.SETTLEMENT_FAILED and not outcome.headers:
        # facilitator body and status go back untouched
        raise SettlementFailed(outcome.status_code, outcome.body)
    return JSONResponse(content=outcome.body, status_code=outcome.status_code, headers=outcome.headers)
