from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.core.config import settings
from invitemarket.core.db import get_db
from invitemarket.schemas.reconciliation import ReconcileSaleIn, ReconcileSaleOut
from invitemarket.services.internal_admin import require_internal_admin
from invitemarket.services.outbox_dispatcher import dispatch_outbox
from invitemarket.services.reconciliation import SaleEvent, reconcile_sale

router = APIRouter()


@router.post("/internal/outbox/dispatch", dependencies=[Depends(require_internal_admin)])
async def internal_dispatch_outbox(db: AsyncSession = Depends(get_db)) -> dict:
    count = await dispatch_outbox(db, batch_size=100)
    return {"dispatched": count}


@router.post(
    "/internal/reconciliations",
    response_model=ReconcileSaleOut,
    dependencies=[Depends(require_internal_admin)],
)
async def internal_reconcile_sale(payload: ReconcileSaleIn, db: AsyncSession = Depends(get_db)) -> ReconcileSaleOut:
    result = await reconcile_sale(
        db,
        SaleEvent(
            listing_slug=payload.listing_slug,
            buyer_address=payload.buyer_address,
            seller_address=payload.seller_address,
            price_usdc=payload.price_usdc,
            chain_id=payload.chain_id,
            timestamp=payload.timestamp,
            tx_hash=payload.tx_hash,
        ),
        match_window_seconds=settings.reconcile_match_window_seconds,
        dry_run=payload.dry_run,
        actor="operator",
    )
    return ReconcileSaleOut(
        status=result.status,
        transaction_id=result.transaction_id,
        listing_slug=result.listing_slug,
        purchase_count=result.purchase_count,
        max_uses=result.max_uses,
        listing_status=result.listing_status,
    )
