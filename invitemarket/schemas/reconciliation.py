from datetime import datetime
from decimal import Decimal

from invitemarket.schemas.common import CamelModel


class ReconcileSaleIn(CamelModel):
    listing_slug: str
    buyer_address: str
    seller_address: str
    price_usdc: Decimal
    chain_id: int
    timestamp: datetime
    tx_hash: str | None = None
    dry_run: bool = False


class ReconcileSaleOut(CamelModel):
    status: str
    transaction_id: str | None
    listing_slug: str
    purchase_count: int
    max_uses: int
    listing_status: str
