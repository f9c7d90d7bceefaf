"""
Listing store: seller-side create / update / cancel and the public read paths.

Secrets (invite URLs, access codes) are held as a Fernet token of a tagged variant and only
leave this module through `get_listing(..., include_secrets=True)` or `secret_from_ciphertext`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from urllib.parse import urlparse

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from invitemarket.core.crypto import SecretCipher
from invitemarket.core.errors import (
    ConcurrentModification,
    InvalidInventoryChange,
    NotFoundOrNotOwned,
    PersistenceFailure,
    ValidationError,
)
from invitemarket.core.ids import gen_slug
from invitemarket.models.listing import Listing, UNLIMITED_USES
from invitemarket.schemas.listing import ListingCreate, ListingOut, ListingUpdate
from invitemarket.services.signature import format_price, normalize_address


log = logging.getLogger(__name__)

SLUG_ATTEMPTS = 5
PRICE_DECIMALS = 6


# --- secret variants ---

@dataclass(frozen=True)
class InviteLink:
    url: str


@dataclass(frozen=True)
class AccessCode:
    app_url: str
    code: str


ListingSecret = InviteLink | AccessCode


def _secret_to_dict(secret: ListingSecret) -> dict:
    if isinstance(secret, InviteLink):
        return {"kind": "invite_link", "url": secret.url}
    return {"kind": "access_code", "app_url": secret.app_url, "code": secret.code}


def secret_from_ciphertext(cipher: SecretCipher, token: str) -> ListingSecret:
    data = cipher.decrypt_json(token)
    if data.get("kind") == "access_code":
        return AccessCode(app_url=data["app_url"], code=data["code"])
    return InviteLink(url=data["url"])


def disclosure_body(secret: ListingSecret) -> dict:
    """Wire shape of a disclosed secret (purchase response and buyer reveal)."""
    if isinstance(secret, AccessCode):
        return {"listingType": "access_code", "appUrl": secret.app_url, "accessCode": secret.code}
    return {"listingType": "invite_link", "inviteUrl": secret.url}


# --- validation ---

@dataclass(frozen=True)
class NewListing:
    secret: ListingSecret
    price_usdc: Decimal
    seller_address: str
    app_id: str | None
    app_name: str | None
    max_uses: int
    description: str | None
    chain_id: int


@dataclass(frozen=True)
class ListingChanges:
    price_usdc: Decimal | None = None
    invite_url: str | None = None
    app_url: str | None = None
    access_code: str | None = None
    app_id: str | None = None
    app_name: str | None = None
    max_uses: int | None = None
    description: str | None = None

    def is_empty(self) -> bool:
        return all(v is None for v in self.__dict__.values())


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_price(value: Decimal) -> Decimal:
    try:
        price = Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValidationError("Invalid price")
    if not price.is_finite() or price <= 0:
        raise ValidationError("Price must be greater than 0")
    if -price.normalize().as_tuple().exponent > PRICE_DECIMALS:
        raise ValidationError(f"Price cannot have more than {PRICE_DECIMALS} decimal places")
    return price


def validate_max_uses(value: int) -> int:
    if value != UNLIMITED_USES and value < 1:
        raise ValidationError("maxUses must be -1 (unlimited) or a positive integer")
    return value


def _validate_url(value: str, *, field: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"{field} must be a valid http(s) URL")
    return value


def validate_new_listing(payload: ListingCreate, *, expected_chain_id: int) -> NewListing:
    if payload.chain_id != expected_chain_id:
        raise ValidationError(f"Chain ID mismatch. Expected {expected_chain_id}")

    seller = normalize_address(payload.seller_address, field="sellerAddress")
    price = validate_price(payload.price_usdc)
    max_uses = validate_max_uses(payload.max_uses)

    app_id = _blank_to_none(payload.app_id)
    app_name = _blank_to_none(payload.app_name)
    if not app_id and not app_name:
        raise ValidationError("Either appId or appName is required")

    if payload.listing_type == "access_code":
        app_url = _blank_to_none(payload.app_url)
        code = _blank_to_none(payload.access_code)
        if not app_url or not code:
            raise ValidationError("appUrl and accessCode are required for access_code listings")
        if payload.invite_url:
            raise ValidationError("inviteUrl does not apply to access_code listings")
        secret: ListingSecret = AccessCode(app_url=_validate_url(app_url, field="appUrl"), code=code)
    else:
        url = _blank_to_none(payload.invite_url)
        if not url:
            raise ValidationError("inviteUrl is required for invite_link listings")
        if payload.access_code or payload.app_url:
            raise ValidationError("appUrl/accessCode do not apply to invite_link listings")
        secret = InviteLink(url=_validate_url(url, field="inviteUrl"))

    return NewListing(
        secret=secret,
        price_usdc=price,
        seller_address=seller,
        app_id=app_id,
        app_name=app_name,
        max_uses=max_uses,
        description=_blank_to_none(payload.description),
        chain_id=payload.chain_id,
    )


def validate_listing_changes(payload: ListingUpdate, *, expected_chain_id: int) -> ListingChanges:
    if payload.chain_id != expected_chain_id:
        raise ValidationError(f"Chain ID mismatch. Expected {expected_chain_id}")
    normalize_address(payload.seller_address, field="sellerAddress")

    changes = ListingChanges(
        price_usdc=validate_price(payload.price_usdc) if payload.price_usdc is not None else None,
        invite_url=_blank_to_none(payload.invite_url),
        app_url=_blank_to_none(payload.app_url),
        access_code=_blank_to_none(payload.access_code),
        app_id=_blank_to_none(payload.app_id),
        app_name=_blank_to_none(payload.app_name),
        max_uses=validate_max_uses(payload.max_uses) if payload.max_uses is not None else None,
        description=_blank_to_none(payload.description),
    )
    if changes.is_empty():
        raise ValidationError("No changes requested")
    if changes.invite_url:
        _validate_url(changes.invite_url, field="inviteUrl")
    if changes.app_url:
        _validate_url(changes.app_url, field="appUrl")
    return changes


def apply_max_uses_change(current: int, requested: int) -> int:
    """
    Inventory may only grow. Unlimited is always allowed; a finite cap may not shrink and
    an unlimited listing may not become finite.
    """
    if requested == UNLIMITED_USES:
        return requested
    if current == UNLIMITED_USES:
        raise InvalidInventoryChange("Cannot change an unlimited listing to a finite number of uses")
    if requested < current:
        raise InvalidInventoryChange(
            "maxUses can only be increased",
            details={"current": current, "requested": requested},
        )
    return requested


# --- writes ---

async def _allocate_slug(db: AsyncSession) -> str:
    for _ in range(SLUG_ATTEMPTS):
        slug = gen_slug()
        taken = (await db.execute(select(Listing.id).where(Listing.slug == slug))).first()
        if not taken:
            return slug
    raise PersistenceFailure("Failed to generate unique slug")


async def create_listing(*, db: AsyncSession, cipher: SecretCipher, new: NewListing) -> Listing:
    slug = await _allocate_slug(db)

    listing = Listing(
        slug=slug,
        listing_type="access_code" if isinstance(new.secret, AccessCode) else "invite_link",
        secret_ciphertext=cipher.encrypt_json(_secret_to_dict(new.secret)),
        app_url=new.secret.app_url if isinstance(new.secret, AccessCode) else None,
        app_id=new.app_id,
        app_name=new.app_name,
        description=new.description,
        price_usdc=new.price_usdc,
        seller_address=new.seller_address,
        chain_id=new.chain_id,
        status="active",
        max_uses=new.max_uses,
        purchase_count=0,
        created_by=new.seller_address,
        updated_by=new.seller_address,
    )
    db.add(listing)
    await db.flush()
    return listing


async def _owned_active_listing(db: AsyncSession, *, slug: str, signer: str, chain_id: int) -> Listing:
    listing = (await db.execute(
        select(Listing).where(
            Listing.slug == slug,
            Listing.seller_address == signer,
            Listing.chain_id == chain_id,
        )
    )).scalar_one_or_none()
    if listing is None or listing.status != "active":
        raise NotFoundOrNotOwned("Listing not found or you are not the seller")
    return listing


async def update_listing(
    *,
    db: AsyncSession,
    cipher: SecretCipher,
    slug: str,
    signer: str,
    chain_id: int,
    changes: ListingChanges,
) -> Listing:
    """
    Apply a seller's signed changes. The row version is compared on write, so a purchase
    landing between read and write surfaces as ConcurrentModification instead of being lost.
    """
    listing = await _owned_active_listing(db, slug=slug, signer=signer, chain_id=chain_id)

    if listing.listing_type == "invite_link":
        if changes.access_code or changes.app_url:
            raise ValidationError("appUrl/accessCode do not apply to invite_link listings")
        if changes.invite_url:
            listing.secret_ciphertext = cipher.encrypt_json(_secret_to_dict(InviteLink(url=changes.invite_url)))
    else:
        if changes.invite_url:
            raise ValidationError("inviteUrl does not apply to access_code listings")
        if changes.access_code or changes.app_url:
            current = secret_from_ciphertext(cipher, listing.secret_ciphertext)
            if not isinstance(current, AccessCode):
                raise PersistenceFailure("Stored secret does not match listing type")
            replacement = AccessCode(
                app_url=changes.app_url or current.app_url,
                code=changes.access_code or current.code,
            )
            listing.secret_ciphertext = cipher.encrypt_json(_secret_to_dict(replacement))
            listing.app_url = replacement.app_url

    if changes.price_usdc is not None:
        listing.price_usdc = changes.price_usdc
    if changes.app_id is not None:
        listing.app_id = changes.app_id
    if changes.app_name is not None:
        listing.app_name = changes.app_name
    if changes.description is not None:
        listing.description = changes.description
    if changes.max_uses is not None:
        listing.max_uses = apply_max_uses_change(listing.max_uses, changes.max_uses)

    listing.updated_by = signer

    try:
        await db.flush()
    except StaleDataError:
        await db.rollback()
        log.info("update_listing: version conflict on %s", slug)
        raise ConcurrentModification("Listing changed while updating. Please sign and submit again.")
    return listing


async def cancel_listing(*, db: AsyncSession, slug: str, signer: str, chain_id: int) -> Listing:
    listing = await _owned_active_listing(db, slug=slug, signer=signer, chain_id=chain_id)
    listing.status = "cancelled"
    listing.updated_by = signer
    try:
        await db.flush()
    except StaleDataError:
        await db.rollback()
        raise ConcurrentModification("Listing changed while cancelling. Please sign and submit again.")
    return listing


# --- reads ---

def to_public(listing: Listing) -> ListingOut:
    return ListingOut(
        slug=listing.slug,
        listing_type=listing.listing_type,
        app_url=listing.app_url,
        app_id=listing.app_id,
        app_name=listing.app_name,
        description=listing.description,
        price_usdc=format_price(Decimal(listing.price_usdc)),
        seller_address=listing.seller_address,
        chain_id=listing.chain_id,
        status=listing.status,
        max_uses=listing.max_uses,
        purchase_count=listing.purchase_count,
        available=listing.is_available,
        created_at=listing.created_at,
        updated_at=listing.updated_at,
    )


@dataclass(frozen=True)
class ListingView:
    listing: Listing
    secret: ListingSecret | None = None


async def get_listing(
    *,
    db: AsyncSession,
    slug: str,
    cipher: SecretCipher | None = None,
    include_secrets: bool = False,
) -> ListingView | None:
    listing = (await db.execute(select(Listing).where(Listing.slug == slug))).scalar_one_or_none()
    if listing is None:
        return None
    if not include_secrets:
        return ListingView(listing=listing)
    if cipher is None:
        raise ValueError("cipher is required when include_secrets=True")
    return ListingView(listing=listing, secret=secret_from_ciphertext(cipher, listing.secret_ciphertext))


async def list_listings(
    *,
    db: AsyncSession,
    chain_id: int,
    seller_address: str | None = None,
    include_inactive: bool = False,
    limit: int = 50,
    skip: int = 0,
) -> list[Listing]:
    stmt = select(Listing).where(Listing.chain_id == chain_id)
    if seller_address:
        stmt = stmt.where(Listing.seller_address == seller_address)
    if not include_inactive:
        stmt = stmt.where(Listing.status == "active")
    stmt = stmt.order_by(Listing.created_at.desc(), Listing.id.desc()).offset(skip).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def lowest_price(
    *,
    db: AsyncSession,
    chain_id: int,
    app_id: str | None = None,
    app_name: str | None = None,
) -> Decimal | None:
    """Cheapest active listing for an app, matched by id first and name otherwise."""
    if not app_id and not app_name:
        raise ValidationError("appId or appName is required")

    stmt = select(func.min(Listing.price_usdc)).where(
        Listing.chain_id == chain_id,
        Listing.status == "active",
    )
    if app_id:
        stmt = stmt.where(Listing.app_id == app_id)
    else:
        stmt = stmt.where(func.lower(Listing.app_name) == app_name.lower())
    value = (await db.execute(stmt)).scalar_one_or_none()
    return Decimal(value) if value is not None else None


@dataclass(frozen=True)
class AppSummary:
    id: str
    name: str
    total_listings: int
    active_listings: int
    lowest_price: Decimal | None


async def app_summaries(*, db: AsyncSession, chain_id: int) -> list[AppSummary]:
    """
    One row per app across every listing on the chain, keyed by app id and falling back to
    the app name. Busiest apps first: active listings, then total listings.
    """
    key = func.coalesce(Listing.app_id, Listing.app_name)
    is_active = Listing.status == "active"
    active = func.sum(case((is_active, 1), else_=0))
    stmt = (
        select(
            key.label("key"),
            func.max(Listing.app_name).label("name"),
            func.count(Listing.id).label("total"),
            active.label("active"),
            func.min(case((is_active, Listing.price_usdc), else_=None)).label("lowest"),
        )
        .where(Listing.chain_id == chain_id, key.is_not(None))
        .group_by(key)
        .order_by(active.desc(), func.count(Listing.id).desc(), key)
    )
    return [
        AppSummary(
            id=row.key,
            name=row.name or row.key,
            total_listings=int(row.total),
            active_listings=int(row.active or 0),
            lowest_price=Decimal(str(row.lowest)) if row.lowest is not None else None,
        )
        for row in (await db.execute(stmt)).all()
    ]
