from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.api.deps import get_cipher, get_signature_policy
from invitemarket.core.config import settings
from invitemarket.core.crypto import SecretCipher
from invitemarket.core.db import get_db
from invitemarket.core.errors import ListingUnavailable, ValidationError
from invitemarket.schemas.listing import (
    AppListOut,
    AppSummaryOut,
    ListingCancel,
    ListingCreate,
    ListingEnvelope,
    ListingListOut,
    ListingUpdate,
    LowestPriceOut,
)
from invitemarket.services import notifications
from invitemarket.services.audit import audit
from invitemarket.services.idempotency import get_or_reserve_idempotency, store_idempotency_response
from invitemarket.services.listings import (
    ListingChanges,
    app_summaries,
    cancel_listing,
    create_listing,
    get_listing,
    list_listings,
    lowest_price,
    to_public,
    update_listing,
    validate_listing_changes,
    validate_new_listing,
)
from invitemarket.services.signature import (
    SignaturePolicy,
    cancel_listing_message,
    create_listing_message,
    format_price,
    normalize_address,
    update_listing_message,
    verify_typed_signature,
)

router = APIRouter()


def _replayed(response: dict) -> JSONResponse:
    # same signed payload seen before: hand back what it produced the first time
    return JSONResponse(content=response, status_code=200)


def _envelope(listing) -> dict:
    return ListingEnvelope(listing=to_public(listing)).model_dump(mode="json", by_alias=True)


def _change_summary(changes: ListingChanges) -> dict:
    # audit detail; secret fields are masked by the audit redactor
    out = {}
    for key, value in changes.__dict__.items():
        if value is None:
            continue
        out[key] = format_price(value) if isinstance(value, Decimal) else value
    return out


@router.get("/listings", response_model=ListingListOut)
async def get_listings(
    seller: str | None = Query(default=None),
    include_inactive: bool = Query(default=False, alias="includeInactive"),
    limit: int = Query(default=50, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> ListingListOut:
    seller_address = normalize_address(seller, field="seller") if seller else None
    rows = await list_listings(
        db=db,
        chain_id=settings.chain_id,
        seller_address=seller_address,
        include_inactive=include_inactive,
        limit=limit,
        skip=skip,
    )
    return ListingListOut(listings=[to_public(r) for r in rows])


@router.get("/listings/lowest-price", response_model=LowestPriceOut)
async def get_lowest_price(
    app_id: str | None = Query(default=None, alias="appId"),
    app_name: str | None = Query(default=None, alias="appName"),
    db: AsyncSession = Depends(get_db),
) -> LowestPriceOut:
    value = await lowest_price(db=db, chain_id=settings.chain_id, app_id=app_id, app_name=app_name)
    return LowestPriceOut(lowest_price=format_price(value) if value is not None else None)


@router.get("/apps", response_model=AppListOut)
async def get_apps(db: AsyncSession = Depends(get_db)) -> AppListOut:
    rows = await app_summaries(db=db, chain_id=settings.chain_id)
    apps = [
        AppSummaryOut(
            id=r.id,
            name=r.name,
            total_listings=r.total_listings,
            active_listings=r.active_listings,
            lowest_price=format_price(r.lowest_price) if r.lowest_price is not None else None,
        )
        for r in rows
    ]
    return AppListOut(apps=apps, total_apps=len(apps))


@router.get("/listings/{slug}", response_model=ListingEnvelope)
async def get_listing_by_slug(slug: str, db: AsyncSession = Depends(get_db)) -> ListingEnvelope:
    view = await get_listing(db=db, slug=slug)
    if view is None or view.listing.chain_id != settings.chain_id:
        raise ListingUnavailable("Listing not found")
    return ListingEnvelope(listing=to_public(view.listing))


@router.post("/listings", response_model=ListingEnvelope, status_code=201)
async def create_listing_endpoint(
    payload: ListingCreate,
    db: AsyncSession = Depends(get_db),
    cipher: SecretCipher = Depends(get_cipher),
    policy: SignaturePolicy = Depends(get_signature_policy),
):
    new = validate_new_listing(payload, expected_chain_id=settings.chain_id)

    verified = verify_typed_signature(
        primary_type="CreateListing",
        message=create_listing_message(
            listing_type=payload.listing_type,
            invite_url=payload.invite_url,
            app_url=payload.app_url,
            access_code=payload.access_code,
            price_usdc=payload.price_usdc,
            seller_address=payload.seller_address,
            app_id=payload.app_id,
            app_name=payload.app_name,
            max_uses=payload.max_uses,
            description=payload.description,
            nonce=payload.nonce,
        ),
        signer_address=payload.seller_address,
        signature=payload.signature,
        chain_id=payload.chain_id,
        policy=policy,
    )

    existing = await get_or_reserve_idempotency(
        db=db,
        key=verified.digest,
        signer_address=verified.signer,
        operation="CreateListing",
        request_body=payload.model_dump(mode="json", exclude={"signature"}),
    )
    if existing:
        return _replayed(existing.response)

    listing = await create_listing(db=db, cipher=cipher, new=new)

    notifications.emit(db, notifications.listing_notification(
        slug=listing.slug,
        listing_type=listing.listing_type,
        app_name=listing.app_name,
        app_id=listing.app_id,
        app_url=listing.app_url,
        price_usdc=listing.price_usdc,
        seller_address=listing.seller_address,
        max_uses=listing.max_uses,
        chain_id=listing.chain_id,
    ))
    await audit(
        db,
        actor=verified.signer,
        action="listing.created",
        target_type="listing",
        target_id=listing.slug,
        detail={"price_usdc": format_price(listing.price_usdc), "max_uses": listing.max_uses},
    )

    response = _envelope(listing)
    await store_idempotency_response(db=db, key=verified.digest, response=response)
    await db.commit()
    return ListingEnvelope(listing=to_public(listing))


@router.patch("/listings/{slug}", response_model=ListingEnvelope)
async def update_listing_endpoint(
    slug: str,
    payload: ListingUpdate,
    db: AsyncSession = Depends(get_db),
    cipher: SecretCipher = Depends(get_cipher),
    policy: SignaturePolicy = Depends(get_signature_policy),
):
    changes = validate_listing_changes(payload, expected_chain_id=settings.chain_id)

    verified = verify_typed_signature(
        primary_type="UpdateListing",
        message=update_listing_message(
            slug=slug,
            seller_address=payload.seller_address,
            nonce=payload.nonce,
            invite_url=payload.invite_url,
            app_url=payload.app_url,
            access_code=payload.access_code,
            price_usdc=payload.price_usdc,
            app_id=payload.app_id,
            app_name=payload.app_name,
            max_uses=payload.max_uses,
            description=payload.description,
        ),
        signer_address=payload.seller_address,
        signature=payload.signature,
        chain_id=payload.chain_id,
        policy=policy,
    )

    existing = await get_or_reserve_idempotency(
        db=db,
        key=verified.digest,
        signer_address=verified.signer,
        operation="UpdateListing",
        request_body={"slug": slug, **payload.model_dump(mode="json", exclude={"signature"})},
    )
    if existing:
        return _replayed(existing.response)

    listing = await update_listing(
        db=db,
        cipher=cipher,
        slug=slug,
        signer=verified.signer,
        chain_id=payload.chain_id,
        changes=changes,
    )
    await audit(
        db,
        actor=verified.signer,
        action="listing.updated",
        target_type="listing",
        target_id=slug,
        detail=_change_summary(changes),
    )

    response = _envelope(listing)
    await store_idempotency_response(db=db, key=verified.digest, response=response)
    await db.commit()
    return ListingEnvelope(listing=to_public(listing))


@router.post("/listings/{slug}/cancel", response_model=ListingEnvelope)
async def cancel_listing_endpoint(
    slug: str,
    payload: ListingCancel,
    db: AsyncSession = Depends(get_db),
    policy: SignaturePolicy = Depends(get_signature_policy),
):
    if payload.chain_id != settings.chain_id:
        raise ValidationError(f"Chain ID mismatch. Expected {settings.chain_id}")

    verified = verify_typed_signature(
        primary_type="CancelListing",
        message=cancel_listing_message(slug=slug, seller_address=payload.seller_address, nonce=payload.nonce),
        signer_address=payload.seller_address,
        signature=payload.signature,
        chain_id=payload.chain_id,
        policy=policy,
    )

    existing = await get_or_reserve_idempotency(
        db=db,
        key=verified.digest,
        signer_address=verified.signer,
        operation="CancelListing",
        request_body={"slug": slug, **payload.model_dump(mode="json", exclude={"signature"})},
    )
    if existing:
        return _replayed(existing.response)

    listing = await cancel_listing(db=db, slug=slug, signer=verified.signer, chain_id=payload.chain_id)
    await audit(db, actor=verified.signer, action="listing.cancelled", target_type="listing", target_id=slug)

    response = _envelope(listing)
    await store_idempotency_response(db=db, key=verified.digest, response=response)
    await db.commit()
    return ListingEnvelope(listing=to_public(listing))
