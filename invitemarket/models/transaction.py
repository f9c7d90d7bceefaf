from decimal import Decimal

from sqlalchemy import Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from invitemarket.core.ids import gen_id

from invitemarket.models.base import Base


class Transaction(Base):
    """Append-only sales ledger. Rows are never updated or deleted."""

    __tablename__ = "transactions"
    __table_args__ = (
        # reconciliation lookup: slug + buyer + chain around a timestamp
        Index("ix_transactions_slug_buyer_chain", "listing_slug", "buyer_address", "chain_id", "created_at"),
    )

    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("txn"))

    listing_slug: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    seller_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    buyer_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)

    price_usdc: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    app_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    # on-chain settlement tx hash from the facilitator receipt, when known
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # "purchase" | "reconciliation"
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="purchase")

    created_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
