from decimal import Decimal

from sqlalchemy import CheckConstraint, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from invitemarket.core.ids import gen_id

from invitemarket.models.base import Base, AuditMixin

LISTING_TYPES = ("invite_link", "access_code")
LISTING_STATUSES = ("active", "sold", "cancelled")

UNLIMITED_USES = -1


class Listing(AuditMixin, Base):
    __tablename__ = "listings"
    __table_args__ = (
        CheckConstraint("listing_type IN ('invite_link', 'access_code')", name="ck_listing_type"),
        CheckConstraint("status IN ('active', 'sold', 'cancelled')", name="ck_listing_status"),
        CheckConstraint("price_usdc > 0", name="ck_listing_price_positive"),
        CheckConstraint("max_uses = -1 OR max_uses > 0", name="ck_listing_max_uses"),
        CheckConstraint("purchase_count >= 0", name="ck_listing_purchase_count"),
        CheckConstraint(
            "max_uses = -1 OR purchase_count <= max_uses", name="ck_listing_purchase_within_cap"
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("lst"))
    slug: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)

    # "invite_link" | "access_code"
    listing_type: Mapped[str] = mapped_column(String(20), nullable=False, default="invite_link")

    # Fernet token of the tagged secret ({"kind": "invite_link", "url": ...} etc.)
    secret_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)

    # public, only meaningful for access_code
    app_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    app_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    app_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    price_usdc: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    seller_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    # "active" | "sold" | "cancelled"
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    max_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    purchase_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # bumped by every mutation, purchases included
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # eager_defaults: server-side timestamps come back on flush (no lazy load under asyncio)
    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    @property
    def is_available(self) -> bool:
        if self.status != "active":
            return False
        return self.max_uses == UNLIMITED_USES or self.purchase_count < self.max_uses
