"""
Community-channel notifications for new listings and sales.

Events are written to the outbox in the same database session as the change that caused
them and delivered later by the worker. The notification types only carry public fields,
so a listing secret has no way into a webhook payload.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.core.config import BASE_MAINNET_CHAIN_ID, BASE_SEPOLIA_CHAIN_ID, Settings
from invitemarket.models.listing import UNLIMITED_USES
from invitemarket.models.outbox import OutboxEvent
from invitemarket.services.http_client import HttpResult, MarketHttpClient
from invitemarket.services.signature import format_price


log = logging.getLogger(__name__)

EVENT_LISTING_CREATED = "listing.created"
EVENT_LISTING_SOLD = "listing.sold"

COLOR_GREEN = 0x00FF00  # new listing
COLOR_BLUE = 0x0099FF  # sale


@dataclass(frozen=True)
class ListingNotification:
    slug: str
    listing_type: str
    app_name: str | None
    app_id: str | None
    app_url: str | None  # public, access_code only
    price_usdc: str
    seller_address: str
    max_uses: int
    chain_id: int


@dataclass(frozen=True)
class SaleNotification:
    slug: str
    app_name: str | None
    app_id: str | None
    price_usdc: str
    seller_address: str
    buyer_address: str
    chain_id: int


def truncate_address(address: str) -> str:
    if len(address) <= 13:
        return address
    return f"{address[:6]}...{address[-4:]}"


def format_uses(max_uses: int) -> str:
    if max_uses == UNLIMITED_USES:
        return "Unlimited"
    if max_uses == 1:
        return "Single use"
    return f"{max_uses} uses"


def network_label(chain_id: int) -> str:
    if chain_id == BASE_MAINNET_CHAIN_ID:
        return "Base Mainnet"
    if chain_id == BASE_SEPOLIA_CHAIN_ID:
        return "Base Sepolia"
    return f"Chain {chain_id}"


def webhook_url_for_chain(s: Settings, chain_id: int) -> str | None:
    if chain_id == BASE_MAINNET_CHAIN_ID:
        return s.discord_webhook_mainnet
    if chain_id == BASE_SEPOLIA_CHAIN_ID:
        return s.discord_webhook_testnet
    return None


def _app_display_name(app_name: str | None, app_id: str | None) -> str:
    return app_name or app_id or "Unknown App"


def _listing_url(base_url: str, slug: str) -> str:
    return f"{base_url.rstrip('/')}/listing/{slug}"


def new_listing_embed(data: ListingNotification, *, base_url: str, now: datetime | None = None) -> dict[str, Any]:
    return {
        "title": f"New Listing: {_app_display_name(data.app_name, data.app_id)}",
        "color": COLOR_GREEN,
        "url": _listing_url(base_url, data.slug),
        "fields": [
            {"name": "Price", "value": f"{data.price_usdc} USDC", "inline": True},
            {"name": "Seller", "value": truncate_address(data.seller_address), "inline": True},
            {"name": "Type", "value": "Access Code" if data.listing_type == "access_code" else "Invite Link", "inline": True},
            {"name": "Uses", "value": format_uses(data.max_uses), "inline": True},
        ],
        "footer": {"text": network_label(data.chain_id)},
        "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
    }


def sale_embed(data: SaleNotification, *, base_url: str, now: datetime | None = None) -> dict[str, Any]:
    return {
        "title": f"Sale: {_app_display_name(data.app_name, data.app_id)}",
        "color": COLOR_BLUE,
        "url": _listing_url(base_url, data.slug),
        "fields": [
            {"name": "Price", "value": f"{data.price_usdc} USDC", "inline": True},
            {"name": "Buyer", "value": truncate_address(data.buyer_address), "inline": True},
            {"name": "Seller", "value": truncate_address(data.seller_address), "inline": True},
        ],
        "footer": {"text": network_label(data.chain_id)},
        "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
    }


def listing_notification(*, slug: str, listing_type: str, app_name: str | None, app_id: str | None,
                         app_url: str | None, price_usdc: Decimal, seller_address: str, max_uses: int,
                         chain_id: int) -> ListingNotification:
    return ListingNotification(
        slug=slug,
        listing_type=listing_type,
        app_name=app_name,
        app_id=app_id,
        app_url=app_url if listing_type == "access_code" else None,
        price_usdc=format_price(Decimal(price_usdc)),
        seller_address=seller_address,
        max_uses=max_uses,
        chain_id=chain_id,
    )


def sale_notification(*, slug: str, app_name: str | None, app_id: str | None, price_usdc: Decimal,
                      seller_address: str, buyer_address: str, chain_id: int) -> SaleNotification:
    return SaleNotification(
        slug=slug,
        app_name=app_name,
        app_id=app_id,
        price_usdc=format_price(Decimal(price_usdc)),
        seller_address=seller_address,
        buyer_address=buyer_address,
        chain_id=chain_id,
    )


def emit(db: AsyncSession, data: ListingNotification | SaleNotification) -> OutboxEvent:
    """Add the outbox row to the caller's session; committing is the caller's job."""
    event_type = EVENT_LISTING_CREATED if isinstance(data, ListingNotification) else EVENT_LISTING_SOLD
    ev = OutboxEvent(
        aggregate_type="listing",
        aggregate_id=data.slug,
        event_type=event_type,
        payload=asdict(data),
        status="pending",
        attempts=0,
    )
    db.add(ev)
    return ev


async def emit_after_commit(db: AsyncSession, data: ListingNotification | SaleNotification) -> None:
    """
    Queue a notification in its own small transaction.

    Used where the business change is already committed; a failure here is logged and
    never propagated.
    """
    try:
        emit(db, data)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.warning("notifications: failed to queue %s for %s", type(data).__name__, data.slug, exc_info=True)


def build_webhook_payload(event_type: str, payload: dict[str, Any], *, base_url: str) -> dict[str, Any]:
    if event_type == EVENT_LISTING_CREATED:
        embed = new_listing_embed(ListingNotification(**payload), base_url=base_url)
    elif event_type == EVENT_LISTING_SOLD:
        embed = sale_embed(SaleNotification(**payload), base_url=base_url)
    else:
        raise ValueError(f"unknown notification event {event_type}")
    return {"embeds": [embed]}


async def deliver(
    http: MarketHttpClient,
    s: Settings,
    *,
    event_type: str,
    payload: dict[str, Any],
) -> HttpResult | None:
    """Post one event to its channel. Returns None when no webhook is configured for the chain."""
    url = webhook_url_for_chain(s, int(payload.get("chain_id", 0)))
    if not url:
        log.info("notifications: webhook not configured for chain %s, skipping", payload.get("chain_id"))
        return None
    body = build_webhook_payload(event_type, payload, base_url=s.public_base_url)
    return await http.post_json(url=url, json_body=body)
