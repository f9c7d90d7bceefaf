from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from invitemarket.core.ids import gen_id

from invitemarket.models.base import Base, JSONType


class IdempotencyKey(Base):
    """
    One row per accepted signed mutation, keyed by its EIP-712 digest.
    A replayed signature returns the stored response instead of re-applying.
    """

    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("key", name="uq_idempotency_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("idm"))

    signer_address: Mapped[str] = mapped_column(String(42), nullable=False)
    operation: Mapped[str] = mapped_column(String(40), nullable=False)  # CreateListing / UpdateListing / CancelListing

    key: Mapped[str] = mapped_column(String(80), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(80), nullable=False)

    # Stored response (so retries return the same thing)
    response: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=func.now())
