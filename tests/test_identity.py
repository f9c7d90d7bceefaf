from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import select

from invitemarket.core.errors import ValidationError
from invitemarket.models.resolved_address import ResolvedAddress
from invitemarket.services.http_client import MarketHttpClient
from invitemarket.services.identity import FarcasterSource, IdentityResolver, ResolvedIdentity

ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
CAROL = "0x" + "cc" * 20


class StubSource:
    def __init__(self, name: str, known: dict[str, str], *, broken: bool = False):
        self.name = name
        self._known = known
        self._broken = broken
        self.asked: list[list[str]] = []

    async def resolve_many(self, addresses):
        self.asked.append(list(addresses))
        if self._broken:
            raise RuntimeError("upstream down")
        return {
            a: ResolvedIdentity(display_name=self._known[a], avatar_url=None, resolved_type=self.name)
            for a in addresses
            if a in self._known
        }


@pytest.mark.asyncio
async def test_resolve_keeps_input_order_and_falls_through_sources(db_session):
    farcaster = StubSource("farcaster", {ALICE: "alice"})
    ens = StubSource("ens", {BOB: "bob.eth", ALICE: "alice.eth"})
    resolver = IdentityResolver([farcaster, ens])

    out = await resolver.resolve(db_session, [BOB, ALICE.upper().replace("0X", "0x"), CAROL])

    assert [r.display_name if r else None for r in out] == ["bob.eth", "alice", None]
    assert out[1].resolved_type == "farcaster"
    # ens only sees what farcaster could not resolve
    assert ens.asked == [[BOB, CAROL]]


@pytest.mark.asyncio
async def test_resolved_names_are_cached(db_session, session_factory):
    source = StubSource("farcaster", {ALICE: "alice"})
    resolver = IdentityResolver([source], cache_days=2)

    await resolver.resolve(db_session, [ALICE])
    async with session_factory() as db:
        again = await resolver.resolve(db, [ALICE])

    assert again[0].display_name == "alice"
    assert len(source.asked) == 1


@pytest.mark.asyncio
async def test_stale_cache_entries_are_refreshed(db_session):
    db_session.add(ResolvedAddress(
        address=ALICE,
        display_name="old-alice",
        avatar_url=None,
        resolved_type="farcaster",
        resolved_at=datetime.now(timezone.utc) - timedelta(days=5),
    ))
    await db_session.commit()

    source = StubSource("farcaster", {ALICE: "alice"})
    out = await IdentityResolver([source], cache_days=2).resolve(db_session, [ALICE])

    assert out[0].display_name == "alice"
    row = (await db_session.execute(select(ResolvedAddress).where(ResolvedAddress.address == ALICE))).scalar_one()
    assert row.display_name == "alice"


@pytest.mark.asyncio
async def test_failing_source_degrades_to_unresolved(db_session):
    resolver = IdentityResolver([StubSource("farcaster", {}, broken=True)])
    assert await resolver.resolve(db_session, [ALICE]) == [None]


@pytest.mark.asyncio
async def test_resolve_validates_input(db_session):
    resolver = IdentityResolver([])
    with pytest.raises(ValidationError):
        await resolver.resolve(db_session, ["0x" + f"{i:040x}" for i in range(101)])
    with pytest.raises(ValidationError):
        await resolver.resolve(db_session, ["not-an-address"])
    assert await resolver.resolve(db_session, []) == []


@pytest.mark.asyncio
async def test_farcaster_source_reads_bulk_response():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={
            ALICE: [{"username": "alice", "pfp_url": "https://img.test/a.png"}],
            BOB: [],
        })

    http = MarketHttpClient(transport=httpx.MockTransport(handler))
    source = FarcasterSource(http=http, api_key="neynar-key", base_url="https://neynar.test/")
    hits = await source.resolve_many([ALICE, BOB])
    await http.aclose()

    assert seen[0].url.path == "/v2/farcaster/user/bulk-by-address"
    assert seen[0].headers["api_key"] == "neynar-key"
    assert seen[0].url.params["addresses"] == f"{ALICE},{BOB}"
    assert hits == {ALICE: ResolvedIdentity("alice", "https://img.test/a.png", "farcaster")}


@pytest.mark.asyncio
async def test_farcaster_source_swallows_http_errors():
    http = MarketHttpClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    source = FarcasterSource(http=http, api_key="k")
    assert await source.resolve_many([ALICE]) == {}
    await http.aclose()


@pytest.mark.asyncio
async def test_resolve_addresses_endpoint(client, identity_resolver, monkeypatch):
    monkeypatch.setattr(identity_resolver, "_sources", [StubSource("ens", {BOB: "bob.eth"})])

    r = await client.post("/v1/resolve-addresses", json={"addresses": [ALICE, BOB]})
    assert r.status_code == 200, r.text
    assert r.json() == [None, {"displayName": "bob.eth", "avatarUrl": None, "resolvedType": "ens"}]

    r = await client.post("/v1/resolve-addresses", json={"addresses": ["bad"]})
    assert r.status_code == 400
