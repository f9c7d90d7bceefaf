from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from invitemarket.api.v1.router import router as v1_router
from invitemarket.core.config import settings
from invitemarket.core.crypto import cipher_from_settings
from invitemarket.core.errors import MarketError
from invitemarket.core.telemetry import setup_telemetry
from invitemarket.services.http_client import MarketHttpClient
from invitemarket.services.identity import build_identity_resolver
from invitemarket.services.settlement import X402FacilitatorAdapter


@asynccontextmanager
async def lifespan(app: FastAPI):
    http = MarketHttpClient(timeout_seconds=settings.settlement_timeout_seconds)
    facilitator_key = settings.facilitator_api_key.get_secret_value() if settings.facilitator_api_key else None
    neynar_key = settings.neynar_api_key.get_secret_value() if settings.neynar_api_key else None

    app.state.cipher = cipher_from_settings(settings)
    app.state.settlement = X402FacilitatorAdapter(
        http=http,
        facilitator_url=settings.facilitator_url,
        api_key=facilitator_key,
        max_timeout_seconds=settings.payment_max_timeout_seconds,
    )
    app.state.identity = build_identity_resolver(
        http=http,
        neynar_api_key=neynar_key,
        neynar_base_url=settings.neynar_api_base_url,
        mainnet_rpc_url=settings.mainnet_rpc_url,
        cache_days=settings.identity_cache_days,
    )
    try:
        yield
    finally:
        await http.aclose()


app = FastAPI(title="Invite Market API", version="0.1.0", lifespan=lifespan)


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "message": "Invalid request", "details": {"errors": errors}},
    )


setup_telemetry(app)
app.include_router(v1_router)
