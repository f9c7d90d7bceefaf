"""
Record a sale that settled on-chain but never reached the ledger.

One event per run. Re-running the same event is a no-op: an existing ledger row for the
same slug, buyer and chain within the match window counts as already recorded.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Literal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.core.errors import NotFoundOrNotOwned, ReconciliationAborted
from invitemarket.models.listing import Listing
from invitemarket.models.transaction import Transaction
from invitemarket.services import notifications
from invitemarket.services.audit import audit
from invitemarket.services.inventory import consume_unit
from invitemarket.services.signature import format_price, normalize_address


log = logging.getLogger(__name__)

ReconcileStatus = Literal["recorded", "already_recorded", "would_record"]


@dataclass(frozen=True)
class SaleEvent:
    listing_slug: str
    buyer_address: str
    seller_address: str
    price_usdc: Decimal
    chain_id: int
    timestamp: datetime
    tx_hash: str | None = None


@dataclass(frozen=True)
class ReconciliationResult:
    status: ReconcileStatus
    listing_slug: str
    transaction_id: str | None
    purchase_count: int
    max_uses: int
    listing_status: str


def _as_utc(ts: datetime) -> datetime:
    # naive means UTC; offsets are folded in so SQLite string comparisons stay in one zone
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)


async def reconcile_sale(
    db: AsyncSession,
    event: SaleEvent,
    *,
    match_window_seconds: int = 60,
    dry_run: bool = False,
    actor: str = "reconciliation",
) -> ReconciliationResult:
    """
    Commits on success. On dry runs nothing is written and the session is rolled back.

    Raises NotFoundOrNotOwned when the listing is missing and ReconciliationAborted when
    the seller does not match or no inventory remains (a refund is needed instead).
    """
    buyer = normalize_address(event.buyer_address, field="buyer")
    seller = normalize_address(event.seller_address, field="seller")
    ts = _as_utc(event.timestamp)

    listing = (await db.execute(
        select(Listing)
        .where(Listing.slug == event.listing_slug, Listing.chain_id == event.chain_id)
        .with_for_update()
    )).scalar_one_or_none()
    if listing is None:
        raise NotFoundOrNotOwned(f"Listing {event.listing_slug} not found on chain {event.chain_id}")

    if listing.seller_address != seller:
        raise ReconciliationAborted(
            "Seller mismatch",
            details={"expected": listing.seller_address, "given": seller},
        )

    if Decimal(listing.price_usdc) != Decimal(event.price_usdc):
        log.warning(
            "reconcile: %s listed at %s but event price is %s; recording event price",
            listing.slug, listing.price_usdc, event.price_usdc,
        )

    window = timedelta(seconds=match_window_seconds)
    existing = (await db.execute(
        select(Transaction)
        .where(
            Transaction.listing_slug == listing.slug,
            Transaction.buyer_address == buyer,
            Transaction.chain_id == event.chain_id,
            Transaction.created_at >= ts - window,
            Transaction.created_at <= ts + window,
        )
        .limit(1)
    )).scalar_one_or_none()

    if existing is not None:
        log.info("reconcile: %s already recorded as %s", listing.slug, existing.id)
        result = ReconciliationResult(
            status="already_recorded",
            listing_slug=listing.slug,
            transaction_id=existing.id,
            purchase_count=listing.purchase_count,
            max_uses=listing.max_uses,
            listing_status=listing.status,
        )
        await db.rollback()
        return result

    if dry_run:
        if not listing.is_available:
            await db.rollback()
            raise ReconciliationAborted("No remaining inventory; refund the buyer instead")
        result = ReconciliationResult(
            status="would_record",
            listing_slug=listing.slug,
            transaction_id=None,
            purchase_count=listing.purchase_count + 1,
            max_uses=listing.max_uses,
            listing_status=listing.status,
        )
        await db.rollback()
        return result

    slug, app_id, app_name = listing.slug, listing.app_id, listing.app_name

    unit = await consume_unit(db, slug=slug, chain_id=event.chain_id, actor=actor)
    if unit is None:
        await db.rollback()
        raise ReconciliationAborted("No remaining inventory; refund the buyer instead")

    txn = Transaction(
        listing_slug=slug,
        seller_address=seller,
        buyer_address=buyer,
        price_usdc=Decimal(event.price_usdc),
        app_id=app_id,
        chain_id=event.chain_id,
        tx_hash=event.tx_hash,
        source="reconciliation",
        created_at=ts,
    )
    db.add(txn)

    await audit(
        db,
        actor=actor,
        action="reconciliation.recorded",
        target_type="listing",
        target_id=slug,
        detail={
            "buyer_address": buyer,
            "price_usdc": format_price(Decimal(event.price_usdc)),
            "chain_id": event.chain_id,
            "timestamp": ts.isoformat(),
            "tx_hash": event.tx_hash,
        },
    )
    await db.flush()
    transaction_id = txn.id
    await db.commit()

    log.info("reconcile: recorded %s for %s (%s/%s)", transaction_id, slug, unit.purchase_count, unit.max_uses)

    await notifications.emit_after_commit(db, notifications.sale_notification(
        slug=slug,
        app_name=app_name,
        app_id=app_id,
        price_usdc=Decimal(event.price_usdc),
        seller_address=seller,
        buyer_address=buyer,
        chain_id=event.chain_id,
    ))

    return ReconciliationResult(
        status="recorded",
        listing_slug=slug,
        transaction_id=transaction_id,
        purchase_count=unit.purchase_count,
        max_uses=unit.max_uses,
        listing_status=unit.status,
    )
