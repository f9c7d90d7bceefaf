from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.api.deps import get_identity_resolver
from invitemarket.core.db import get_db
from invitemarket.schemas.identity import ResolveAddressesIn, ResolvedAddressOut
from invitemarket.services.identity import IdentityResolver

router = APIRouter()


@router.post("/resolve-addresses", response_model=list[ResolvedAddressOut | None])
async def resolve_addresses(
    payload: ResolveAddressesIn,
    db: AsyncSession = Depends(get_db),
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> list[ResolvedAddressOut | None]:
    resolved = await resolver.resolve(db, payload.addresses)
    return [
        ResolvedAddressOut(
            display_name=r.display_name,
            avatar_url=r.avatar_url,
            resolved_type=r.resolved_type,
        ) if r else None
        for r in resolved
    ]
