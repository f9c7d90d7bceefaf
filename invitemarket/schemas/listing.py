from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field

from invitemarket.schemas.common import CamelModel


class ListingCreate(CamelModel):
    listing_type: Literal["invite_link", "access_code"] = "invite_link"
    invite_url: str | None = Field(default=None, max_length=2048)
    app_url: str | None = Field(default=None, max_length=2048)
    access_code: str | None = Field(default=None, max_length=512)

    price_usdc: Decimal
    seller_address: str
    app_id: str | None = Field(default=None, max_length=120)
    app_name: str | None = Field(default=None, max_length=120)
    max_uses: int = 1
    description: str | None = Field(default=None, max_length=500)

    nonce: int
    chain_id: int
    signature: str


class ListingUpdate(CamelModel):
    seller_address: str

    # omitted or "" means "leave unchanged"
    price_usdc: Decimal | None = None
    invite_url: str | None = Field(default=None, max_length=2048)
    app_url: str | None = Field(default=None, max_length=2048)
    access_code: str | None = Field(default=None, max_length=512)
    app_id: str | None = Field(default=None, max_length=120)
    app_name: str | None = Field(default=None, max_length=120)
    max_uses: int | None = None
    description: str | None = Field(default=None, max_length=500)

    nonce: int
    chain_id: int
    signature: str


class ListingCancel(CamelModel):
    seller_address: str
    nonce: int
    chain_id: int
    signature: str


class ListingOut(CamelModel):
    """Public projection. Never carries invite URLs or access codes."""

    slug: str
    listing_type: str
    app_url: str | None
    app_id: str | None
    app_name: str | None
    description: str | None
    price_usdc: str
    seller_address: str
    chain_id: int
    status: str
    max_uses: int
    purchase_count: int
    available: bool
    created_at: datetime | None
    updated_at: datetime | None


class ListingListOut(CamelModel):
    success: bool = True
    listings: list[ListingOut]


class ListingEnvelope(CamelModel):
    success: bool = True
    listing: ListingOut


class LowestPriceOut(CamelModel):
    success: bool = True
    lowest_price: str | None


class AppSummaryOut(CamelModel):
    id: str
    name: str
    total_listings: int
    active_listings: int
    lowest_price: str | None


class AppListOut(CamelModel):
    success: bool = True
    apps: list[AppSummaryOut]
    total_apps: int
