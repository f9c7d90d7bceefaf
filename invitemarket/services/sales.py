from __future__ import annotations

import base64
import binascii
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.core.crypto import SecretCipher
from invitemarket.core.errors import NotFoundOrNotOwned, ValidationError
from invitemarket.models.listing import Listing
from invitemarket.models.transaction import Transaction
from invitemarket.schemas.sales import SaleOut
from invitemarket.services.listings import disclosure_body, secret_from_ciphertext
from invitemarket.services.signature import SignaturePolicy, format_price, normalize_address, verify_personal_message


def to_sale_out(txn: Transaction) -> SaleOut:
    return SaleOut(
        id=txn.id,
        listing_slug=txn.listing_slug,
        seller_address=txn.seller_address,
        buyer_address=txn.buyer_address,
        price_usdc=format_price(Decimal(txn.price_usdc)),
        app_id=txn.app_id,
        chain_id=txn.chain_id,
        created_at=txn.created_at,
    )


async def list_sales(
    *,
    db: AsyncSession,
    chain_id: int,
    slug: str | None = None,
    limit: int = 50,
    skip: int = 0,
) -> tuple[list[Transaction], int]:
    where = [Transaction.chain_id == chain_id]
    if slug:
        where.append(Transaction.listing_slug == slug)

    total = (await db.execute(select(func.count()).select_from(Transaction).where(*where))).scalar_one()
    rows = (await db.execute(
        select(Transaction)
        .where(*where)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .offset(skip)
        .limit(limit)
    )).scalars().all()
    return list(rows), int(total)


async def seller_stats(*, db: AsyncSession, seller_address: str, chain_id: int) -> tuple[int, Decimal]:
    seller = normalize_address(seller_address, field="address")
    count, revenue = (await db.execute(
        select(func.count(Transaction.id), func.coalesce(func.sum(Transaction.price_usdc), 0))
        .where(Transaction.seller_address == seller, Transaction.chain_id == chain_id)
    )).one()
    return int(count), Decimal(revenue)


async def buyer_purchases(*, db: AsyncSession, buyer_address: str, chain_id: int) -> list[Transaction]:
    buyer = normalize_address(buyer_address, field="address")
    rows = (await db.execute(
        select(Transaction)
        .where(Transaction.buyer_address == buyer, Transaction.chain_id == chain_id)
        .order_by(Transaction.created_at.desc())
    )).scalars().all()
    return list(rows)


def _decode_message(encoded: str) -> str:
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise ValidationError("message must be base64-encoded UTF-8")


async def reveal_purchase(
    *,
    db: AsyncSession,
    cipher: SecretCipher,
    transaction_id: str,
    encoded_message: str,
    signature: str,
    chain_id: int,
    policy: SignaturePolicy,
) -> dict:
    """Re-disclose a purchased secret to the wallet that bought it."""
    txn = (await db.execute(select(Transaction).where(Transaction.id == transaction_id))).scalar_one_or_none()
    if txn is None or txn.chain_id != chain_id:
        raise NotFoundOrNotOwned("Transaction not found")

    verify_personal_message(
        message=_decode_message(encoded_message),
        signature=signature,
        expected_address=txn.buyer_address,
        policy=policy,
    )

    listing = (await db.execute(
        select(Listing).where(Listing.slug == txn.listing_slug, Listing.chain_id == chain_id)
    )).scalar_one_or_none()
    if listing is None:
        raise NotFoundOrNotOwned("Listing not found")

    body = {"success": True}
    body.update(disclosure_body(secret_from_ciphertext(cipher, listing.secret_ciphertext)))
    return body
