from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from invitemarket.models.base import Base


class ResolvedAddress(Base):
    __tablename__ = "resolved_addresses"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)  # lowercase
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    resolved_type: Mapped[str] = mapped_column(String(20), nullable=False)  # farcaster / ens
    resolved_at: Mapped[str] = mapped_column(DateTime(timezone=True), nullable=False)
