from pydantic import BaseModel, Field

from invitemarket.schemas.common import CamelModel


class ResolveAddressesIn(BaseModel):
    addresses: list[str] = Field(default_factory=list)


class ResolvedAddressOut(CamelModel):
    display_name: str
    avatar_url: str | None
    resolved_type: str
