from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from invitemarket.core.errors import NotFoundOrNotOwned, ReconciliationAborted
from invitemarket.models.audit_log import AuditLog
from invitemarket.models.listing import Listing
from invitemarket.models.transaction import Transaction
from invitemarket.services.reconciliation import SaleEvent, reconcile_sale

from fixtures_seed import BUYER, OTHER_SELLER, SELLER

ADMIN = {"X-Internal-Admin-Key": "test-internal"}
SETTLED_AT = datetime(2025, 1, 30, 12, 0, tzinfo=timezone.utc)


def _event(slug: str, **overrides) -> SaleEvent:
    values = dict(
        listing_slug=slug,
        buyer_address=BUYER.address,
        seller_address=SELLER.address,
        price_usdc=Decimal("5"),
        chain_id=84532,
        timestamp=SETTLED_AT,
        tx_hash="0x" + "cd" * 32,
    )
    values.update(overrides)
    return SaleEvent(**values)


@pytest.mark.asyncio
async def test_reconcile_records_once(seed_listing, session_factory):
    slug = await seed_listing(max_uses=2)

    async with session_factory() as db:
        first = await reconcile_sale(db, _event(slug))
    assert first.status == "recorded"
    assert first.purchase_count == 1
    assert first.listing_status == "active"

    # re-running the same event (a few seconds off) is a no-op
    async with session_factory() as db:
        again = await reconcile_sale(db, _event(slug, timestamp=SETTLED_AT + timedelta(seconds=20)))
    assert again.status == "already_recorded"
    assert again.transaction_id == first.transaction_id

    async with session_factory() as db:
        txns = (await db.execute(select(Transaction))).scalars().all()
        listing = (await db.execute(select(Listing).where(Listing.slug == slug))).scalar_one()
        audits = (await db.execute(
            select(func.count()).select_from(AuditLog).where(AuditLog.action == "reconciliation.recorded")
        )).scalar_one()
    assert len(txns) == 1
    assert txns[0].source == "reconciliation"
    assert txns[0].buyer_address == BUYER.address.lower()
    assert listing.purchase_count == 1
    assert audits == 1


@pytest.mark.asyncio
async def test_reconcile_outside_window_is_a_new_sale(seed_listing, session_factory):
    slug = await seed_listing(max_uses=-1)

    async with session_factory() as db:
        await reconcile_sale(db, _event(slug))
    async with session_factory() as db:
        later = await reconcile_sale(db, _event(slug, timestamp=SETTLED_AT + timedelta(minutes=10)))
    assert later.status == "recorded"
    assert later.purchase_count == 2


@pytest.mark.asyncio
async def test_reconcile_stores_and_matches_offset_timestamps_in_utc(seed_listing, session_factory):
    slug = await seed_listing(max_uses=-1)
    in_berlin = SETTLED_AT.astimezone(timezone(timedelta(hours=2)))
    assert in_berlin.hour == 14

    async with session_factory() as db:
        first = await reconcile_sale(db, _event(slug, timestamp=in_berlin))
    assert first.status == "recorded"

    async with session_factory() as db:
        again = await reconcile_sale(db, _event(slug, timestamp=SETTLED_AT + timedelta(seconds=20)))
    assert again.status == "already_recorded"
    assert again.transaction_id == first.transaction_id

    async with session_factory() as db:
        txn = (await db.execute(select(Transaction))).scalar_one()
    assert txn.created_at.replace(tzinfo=None) == SETTLED_AT.replace(tzinfo=None)


@pytest.mark.asyncio
async def test_reconcile_aborts_on_seller_mismatch(seed_listing, session_factory):
    slug = await seed_listing()
    async with session_factory() as db:
        with pytest.raises(ReconciliationAborted):
            await reconcile_sale(db, _event(slug, seller_address=OTHER_SELLER.address))


@pytest.mark.asyncio
async def test_reconcile_aborts_without_inventory(seed_listing, session_factory):
    slug = await seed_listing(max_uses=1)
    async with session_factory() as db:
        await reconcile_sale(db, _event(slug))

    other_buyer = "0x" + "ef" * 20
    async with session_factory() as db:
        with pytest.raises(ReconciliationAborted):
            await reconcile_sale(db, _event(slug, buyer_address=other_buyer))

    async with session_factory() as db:
        count = (await db.execute(select(func.count()).select_from(Transaction))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_reconcile_unknown_listing(session_factory):
    async with session_factory() as db:
        with pytest.raises(NotFoundOrNotOwned):
            await reconcile_sale(db, _event("missing1"))


@pytest.mark.asyncio
async def test_reconcile_endpoint_dry_run_then_record(client, seed_listing, session_factory):
    slug = await seed_listing(max_uses=1)
    payload = {
        "listingSlug": slug,
        "buyerAddress": BUYER.address,
        "sellerAddress": SELLER.address,
        "priceUsdc": "5",
        "chainId": 84532,
        "timestamp": SETTLED_AT.isoformat(),
        "txHash": None,
        "dryRun": True,
    }

    r = await client.post("/v1/internal/reconciliations", json=payload)
    assert r.status_code == 403

    r = await client.post("/v1/internal/reconciliations", json=payload, headers=ADMIN)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "would_record"
    assert r.json()["transactionId"] is None

    async with session_factory() as db:
        assert (await db.execute(select(func.count()).select_from(Transaction))).scalar_one() == 0

    r = await client.post("/v1/internal/reconciliations", json={**payload, "dryRun": False}, headers=ADMIN)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "recorded"
    assert body["listingStatus"] == "sold"
    assert body["purchaseCount"] == 1

    r = await client.post(
        "/v1/internal/reconciliations",
        json={**payload, "buyerAddress": "0x" + "ef" * 20, "dryRun": False},
        headers=ADMIN,
    )
    assert r.status_code == 409, r.text
    assert r.json()["error"] == "reconciliation_aborted"
