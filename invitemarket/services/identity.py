"""
Display-name lookup for wallet addresses (Farcaster first, then ENS).

Purely cosmetic: every source failure degrades to "unresolved" and nothing here is ever
used for authorisation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from web3 import AsyncWeb3

from invitemarket.core.errors import ValidationError
from invitemarket.models.resolved_address import ResolvedAddress
from invitemarket.services.http_client import MarketHttpClient
from invitemarket.services.signature import normalize_address


log = logging.getLogger(__name__)

MAX_ADDRESSES = 100


@dataclass(frozen=True)
class ResolvedIdentity:
    display_name: str
    avatar_url: str | None
    resolved_type: str


class NameSource(Protocol):
    name: str

    async def resolve_many(self, addresses: list[str]) -> dict[str, ResolvedIdentity]:
        ...


class FarcasterSource:
    """Neynar bulk-by-address lookup; one HTTP call per batch."""

    name = "farcaster"

    def __init__(self, *, http: MarketHttpClient, api_key: str, base_url: str = "https://api.neynar.com"):
        self._http = http
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")

    async def resolve_many(self, addresses: list[str]) -> dict[str, ResolvedIdentity]:
        if not addresses:
            return {}
        res = await self._http.get_json(
            url=f"{self._base_url}/v2/farcaster/user/bulk-by-address",
            headers={"api_key": self._api_key},
            params={"addresses": ",".join(addresses)},
        )
        if not res.ok:
            log.warning("identity: neynar lookup failed (%s)", res.error_code)
            return {}

        out: dict[str, ResolvedIdentity] = {}
        for address, users in res.detail.items():
            if not isinstance(users, list) or not users:
                continue
            user = users[0]  # primary profile
            if not user.get("username"):
                continue
            out[address.lower()] = ResolvedIdentity(
                display_name=user["username"],
                avatar_url=user.get("pfp_url") or None,
                resolved_type=self.name,
            )
        return out


class EnsSource:
    """Reverse ENS on Ethereum mainnet via web3."""

    name = "ens"

    def __init__(self, *, rpc_url: str):
        self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))

    async def _one(self, address: str) -> ResolvedIdentity | None:
        name = await self._w3.ens.name(self._w3.to_checksum_address(address))
        if not name:
            return None
        try:
            avatar = await self._w3.ens.get_text(name, "avatar")
        except Exception:
            avatar = None
        return ResolvedIdentity(display_name=name, avatar_url=avatar or None, resolved_type=self.name)

    async def resolve_many(self, addresses: list[str]) -> dict[str, ResolvedIdentity]:
        results = await asyncio.gather(*(self._one(a) for a in addresses), return_exceptions=True)
        out: dict[str, ResolvedIdentity] = {}
        for address, result in zip(addresses, results):
            if isinstance(result, BaseException):
                log.debug("identity: ens lookup failed for %s: %s", address, result)
                continue
            if result is not None:
                out[address] = result
        return out


class IdentityResolver:
    def __init__(self, sources: list[NameSource], *, cache_days: int = 2):
        self._sources = sources
        self._ttl = timedelta(days=cache_days)

    async def resolve(self, db: AsyncSession, addresses: list[str]) -> list[ResolvedIdentity | None]:
        """One entry per input address, in input order; None where nothing resolved."""
        if len(addresses) > MAX_ADDRESSES:
            raise ValidationError(f"Too many addresses: maximum {MAX_ADDRESSES} per request")
        normalized = [normalize_address(a) for a in addresses]
        if not normalized:
            return []

        now = datetime.now(timezone.utc)
        unique = list(dict.fromkeys(normalized))

        cached_rows = (await db.execute(
            select(ResolvedAddress).where(
                ResolvedAddress.address.in_(unique),
                ResolvedAddress.resolved_at >= now - self._ttl,
            )
        )).scalars().all()
        found: dict[str, ResolvedIdentity] = {
            r.address: ResolvedIdentity(r.display_name, r.avatar_url, r.resolved_type) for r in cached_rows
        }

        pending = [a for a in unique if a not in found]
        fresh: dict[str, ResolvedIdentity] = {}
        for source in self._sources:
            if not pending:
                break
            try:
                hits = await source.resolve_many(pending)
            except Exception:
                log.warning("identity: source %s failed", source.name, exc_info=True)
                continue
            fresh.update(hits)
            pending = [a for a in pending if a not in hits]

        if fresh:
            await self._store(db, fresh, now)
        found.update(fresh)
        return [found.get(a) for a in normalized]

    async def _store(self, db: AsyncSession, fresh: dict[str, ResolvedIdentity], now: datetime) -> None:
        try:
            for address, ident in fresh.items():
                await db.merge(ResolvedAddress(
                    address=address,
                    display_name=ident.display_name,
                    avatar_url=ident.avatar_url,
                    resolved_type=ident.resolved_type,
                    resolved_at=now,
                ))
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            log.warning("identity: cache write failed", exc_info=True)


def build_identity_resolver(
    *,
    http: MarketHttpClient,
    neynar_api_key: str | None,
    neynar_base_url: str,
    mainnet_rpc_url: str | None,
    cache_days: int,
) -> IdentityResolver:
    sources: list[NameSource] = []
    if neynar_api_key:
        sources.append(FarcasterSource(http=http, api_key=neynar_api_key, base_url=neynar_base_url))
    if mainnet_rpc_url:
        sources.append(EnsSource(rpc_url=mainnet_rpc_url))
    return IdentityResolver(sources, cache_days=cache_days)
