from datetime import datetime

from pydantic import Field

from invitemarket.schemas.common import CamelModel


class SaleOut(CamelModel):
    id: str
    listing_slug: str
    seller_address: str
    buyer_address: str
    price_usdc: str
    app_id: str | None
    chain_id: int
    created_at: datetime | None


class Pagination(CamelModel):
    total: int
    limit: int
    skip: int
    has_more: bool


class SalesPageOut(CamelModel):
    success: bool = True
    transactions: list[SaleOut]
    pagination: Pagination


class SellerStats(CamelModel):
    sales_count: int
    total_revenue: str


class SellerStatsOut(CamelModel):
    success: bool = True
    stats: SellerStats


class BuyerPurchasesOut(CamelModel):
    success: bool = True
    purchases: list[SaleOut]


class RevealRequest(CamelModel):
    transaction_id: str
    signature: str
    # base64 of the exact text the buyer signed
    message: str = Field(max_length=4096)
