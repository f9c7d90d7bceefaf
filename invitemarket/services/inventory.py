"""
Atomic inventory consumption shared by live purchases and operator reconciliation.

A unit is taken with one conditional UPDATE so two buyers racing for the last unit can
never both succeed: the row only matches while it is active and under its cap, and the
same statement flips it to "sold" when the cap is reached.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import and_, case, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from invitemarket.models.listing import Listing, UNLIMITED_USES


@dataclass(frozen=True)
class ConsumedUnit:
    listing_id: str
    slug: str
    listing_type: str
    secret_ciphertext: str
    app_id: str | None
    app_name: str | None
    price_usdc: Decimal
    seller_address: str
    chain_id: int
    status: str
    purchase_count: int
    max_uses: int


async def consume_unit(
    db: AsyncSession,
    *,
    slug: str,
    chain_id: int,
    actor: str,
    expected_price: Decimal | None = None,
) -> ConsumedUnit | None:
    """
    Take one unit of `slug` inside the caller's transaction.

    Returns the post-update row, or None when the listing is missing, inactive,
    on another chain, or already at its cap. With `expected_price` the row must
    also still carry the price the buyer paid. Nothing is committed here.
    """
    new_count = Listing.purchase_count + 1
    reaches_cap = and_(Listing.max_uses != UNLIMITED_USES, new_count >= Listing.max_uses)

    conditions = [
        Listing.slug == slug,
        Listing.chain_id == chain_id,
        Listing.status == "active",
        or_(Listing.max_uses == UNLIMITED_USES, Listing.purchase_count < Listing.max_uses),
    ]
    if expected_price is not None:
        conditions.append(Listing.price_usdc == expected_price)

    stmt = (
        update(Listing)
        .where(*conditions)
        .values(
            purchase_count=new_count,
            status=case((reaches_cap, "sold"), else_=Listing.status),
            version=Listing.version + 1,
            updated_at=func.now(),
            updated_by=actor,
        )
        .returning(
            Listing.id,
            Listing.slug,
            Listing.listing_type,
            Listing.secret_ciphertext,
            Listing.app_id,
            Listing.app_name,
            Listing.price_usdc,
            Listing.seller_address,
            Listing.chain_id,
            Listing.status,
            Listing.purchase_count,
            Listing.max_uses,
        )
        .execution_options(synchronize_session=False)
    )

    row = (await db.execute(stmt)).one_or_none()
    if row is None:
        return None

    return ConsumedUnit(
        listing_id=row.id,
        slug=row.slug,
        listing_type=row.listing_type,
        secret_ciphertext=row.secret_ciphertext,
        app_id=row.app_id,
        app_name=row.app_name,
        price_usdc=row.price_usdc,
        seller_address=row.seller_address,
        chain_id=row.chain_id,
        status=row.status,
        purchase_count=row.purchase_count,
        max_uses=row.max_uses,
    )
