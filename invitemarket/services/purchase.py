"""
Purchase orchestrator.

    requested -> settling -> settlement_failed            (facilitator response passed through)
                          -> settled -> disclosed         (unit consumed, ledger row committed, secret returned)
                                     -> oversold          (paid, but the last unit went to another buyer)
                                     -> offer_changed     (paid, but the seller repriced the listing meanwhile)
                                     -> recording_failed  (paid, commit failed; no secret until reconciled)

Ordering is fixed: settle, then consume + record in one transaction, then disclose. The
secret only leaves after the ledger row is committed. Settled payments that do not end up
in the ledger are logged at error level with everything an operator needs to reconcile them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.core.crypto import InvalidToken, SecretCipher
from invitemarket.core.errors import ListingUnavailable, PersistenceFailure
from invitemarket.core.telemetry import tracer
from invitemarket.models.listing import Listing
from invitemarket.models.transaction import Transaction
from invitemarket.services import notifications
from invitemarket.services.audit import audit
from invitemarket.services.inventory import consume_unit
from invitemarket.services.listings import disclosure_body, get_listing, secret_from_ciphertext
from invitemarket.services.settlement import SettlementAdapter, SettlementResult
from invitemarket.services.signature import format_price


log = logging.getLogger(__name__)


class PurchaseState(str, Enum):
    SETTLEMENT_FAILED = "settlement_failed"
    DISCLOSED = "disclosed"
    RECORDING_FAILED = "recording_failed"
    OVERSOLD = "oversold"
    OFFER_CHANGED = "offer_changed"


@dataclass(frozen=True)
class PurchaseOutcome:
    state: PurchaseState
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


SETTLEMENT_TIMEOUT_BODY = {
    "error": "settlement_timeout",
    "message": "Payment settlement timed out. If funds left your wallet the sale will be reconciled.",
}


async def _settle_with_deadline(
    settlement: SettlementAdapter,
    *,
    timeout_seconds: float,
    **kwargs: Any,
) -> SettlementResult:
    try:
        return await asyncio.wait_for(settlement.settle(**kwargs), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        # the payment may still land on-chain; it has to be picked up by reconciliation
        log.error(
            "purchase: settlement timed out after %ss for %s; payment state unknown",
            timeout_seconds,
            kwargs.get("resource"),
        )
        return SettlementResult(status=504, response_body=dict(SETTLEMENT_TIMEOUT_BODY))


@dataclass(frozen=True)
class _Offer:
    """What the buyer was quoted, read before settlement starts."""

    slug: str
    seller_address: str
    chain_id: int
    price: Decimal
    app_label: str


def _reconcile_context(offer: _Offer, buyer: str, tx_hash: str | None) -> dict[str, Any]:
    # everything `ops/reconcile_sale.py` needs; no secrets
    return {
        "listing_slug": offer.slug,
        "buyer_address": buyer,
        "seller_address": offer.seller_address,
        "price_usdc": format_price(offer.price),
        "chain_id": offer.chain_id,
        "tx_hash": tx_hash,
    }


async def _audit_best_effort(db: AsyncSession, **kwargs: Any) -> None:
    try:
        await audit(db, **kwargs)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.exception("purchase: could not write audit row %s", kwargs.get("action"))


async def purchase_listing(
    *,
    db: AsyncSession,
    slug: str,
    resource_url: str,
    payment_proof: str | None,
    settlement: SettlementAdapter,
    cipher: SecretCipher,
    chain_id: int,
    timeout_seconds: float,
) -> PurchaseOutcome:
    # 1) availability check before any money moves; an undecryptable secret is never sold
    try:
        view = await get_listing(db=db, slug=slug, cipher=cipher, include_secrets=True)
    except InvalidToken:
        log.exception("purchase: secret for %s cannot be decrypted; refusing to settle", slug)
        raise ListingUnavailable("Listing not found or no longer available")
    if view is None or view.listing.chain_id != chain_id or not view.listing.is_available:
        raise ListingUnavailable("Listing not found or no longer available")

    listing = view.listing
    offer = _Offer(
        slug=listing.slug,
        seller_address=listing.seller_address,
        chain_id=listing.chain_id,
        price=Decimal(listing.price_usdc),
        app_label=listing.app_name or listing.app_id or "invite",
    )
    price = offer.price
    # release the read transaction; settlement can take a while
    await db.rollback()

    # 2) settle
    with tracer.start_as_current_span("purchase.settle"):
        result = await _settle_with_deadline(
            settlement,
            timeout_seconds=timeout_seconds,
            resource=resource_url,
            method="POST",
            payment_proof=payment_proof,
            pay_to=offer.seller_address,
            chain_id=chain_id,
            price=price,
            description=f"Purchase invite for {offer.app_label}",
        )

    if not result.ok or result.receipt is None:
        return PurchaseOutcome(
            state=PurchaseState.SETTLEMENT_FAILED,
            status_code=result.status,
            body=result.response_body,
            headers=result.response_headers,
        )

    receipt = result.receipt
    buyer = receipt.payer
    payment_headers = {"X-PAYMENT-RESPONSE": receipt.header_value()}
    context = _reconcile_context(offer, buyer, receipt.transaction)

    # 3) consume + record, atomically, against the price that was paid
    try:
        with tracer.start_as_current_span("purchase.record"):
            unit = await consume_unit(db, slug=slug, chain_id=chain_id, actor=buyer, expected_price=price)
            if unit is None:
                repriced = await _repriced_while_available(db, slug=slug, chain_id=chain_id, price=price)
                await db.rollback()
                if repriced:
                    return await _settled_not_sold(db, PurchaseState.OFFER_CHANGED, context=context, headers=payment_headers)
                return await _settled_not_sold(db, PurchaseState.OVERSOLD, context=context, headers=payment_headers)

            txn = Transaction(
                listing_slug=unit.slug,
                seller_address=unit.seller_address,
                buyer_address=buyer,
                price_usdc=price,
                app_id=unit.app_id,
                chain_id=unit.chain_id,
                tx_hash=receipt.transaction,
                source="purchase",
            )
            db.add(txn)
            await db.flush()
            transaction_id = txn.id
            await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.error("purchase: PAYMENT SETTLED BUT NOT RECORDED, reconcile manually: %s", context, exc_info=True)
        await _audit_best_effort(
            db,
            actor=buyer,
            action="purchase.recording_failed",
            target_type="listing",
            target_id=slug,
            detail=context,
        )
        # nothing durable says this buyer owns a unit yet; /buyers/reveal works once reconciled
        return PurchaseOutcome(
            state=PurchaseState.RECORDING_FAILED,
            status_code=202,
            body={
                "success": True,
                "recorded": False,
                "message": (
                    "Payment received but the sale could not be recorded yet. Once it is reconciled "
                    "the invite can be revealed from your purchases."
                ),
            },
            headers=payment_headers,
        )

    # 4) disclose
    try:
        secret = secret_from_ciphertext(cipher, unit.secret_ciphertext)
    except InvalidToken:
        log.exception("purchase: recorded %s but could not decrypt secret for %s", transaction_id, slug)
        raise PersistenceFailure(
            "Purchase recorded but the invite could not be decrypted. Use the reveal endpoint later.",
            details={"transactionId": transaction_id},
        )

    log.info("purchase: %s sold to %s (%s/%s)", slug, buyer, unit.purchase_count, unit.max_uses)

    await notifications.emit_after_commit(db, notifications.sale_notification(
        slug=unit.slug,
        app_name=unit.app_name,
        app_id=unit.app_id,
        price_usdc=price,
        seller_address=unit.seller_address,
        buyer_address=buyer,
        chain_id=unit.chain_id,
    ))

    body = {"success": True, "transactionId": transaction_id, "slug": unit.slug}
    body.update(disclosure_body(secret))
    return PurchaseOutcome(state=PurchaseState.DISCLOSED, status_code=200, body=body, headers=payment_headers)


async def _repriced_while_available(db: AsyncSession, *, slug: str, chain_id: int, price: Decimal) -> bool:
    current = (await db.execute(
        select(Listing).where(Listing.slug == slug, Listing.chain_id == chain_id)
    )).scalar_one_or_none()
    return current is not None and current.is_available and Decimal(current.price_usdc) != price


_NOT_SOLD = {
    PurchaseState.OVERSOLD: (
        "purchase.oversold",
        "PAYMENT SETTLED FOR SOLD-OUT LISTING",
        "Payment was received but the listing sold out first. Support has been notified.",
    ),
    PurchaseState.OFFER_CHANGED: (
        "purchase.offer_changed",
        "PAYMENT SETTLED AT A STALE PRICE",
        "Payment was received but the seller changed the price first. Support has been notified.",
    ),
}


async def _settled_not_sold(
    db: AsyncSession,
    state: PurchaseState,
    *,
    context: dict[str, Any],
    headers: dict[str, str],
) -> PurchaseOutcome:
    action, headline, message = _NOT_SOLD[state]
    log.error("purchase: %s, refund or reconcile manually: %s", headline, context)
    await _audit_best_effort(
        db,
        actor=context["buyer_address"],
        action=action,
        target_type="listing",
        target_id=context["listing_slug"],
        detail=context,
    )
    return PurchaseOutcome(
        state=state,
        status_code=409,
        body={"error": state.value, "message": message},
        headers=headers,
    )
