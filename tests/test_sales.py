import pytest

from fixtures_seed import BUYER, OTHER_BUYER, SELLER, reveal_body


async def _buy(client, slug, buyer=BUYER) -> dict:
    r = await client.post(f"/v1/purchase/{slug}", headers={"X-PAYMENT": buyer.address})
    assert r.status_code == 200, r.text
    return r.json()


@pytest.mark.asyncio
async def test_sales_feed_and_stats(client, seed_listing):
    first = await seed_listing(price="5", max_uses=-1)
    second = await seed_listing(price="2.5")

    await _buy(client, first)
    await _buy(client, first, OTHER_BUYER)
    await _buy(client, second)

    r = await client.get("/v1/sales", params={"limit": 2})
    assert r.status_code == 200, r.text
    page = r.json()
    assert len(page["transactions"]) == 2
    assert page["pagination"] == {"total": 3, "limit": 2, "skip": 0, "hasMore": True}

    r = await client.get("/v1/sales", params={"slug": second})
    assert [t["listingSlug"] for t in r.json()["transactions"]] == [second]
    assert r.json()["transactions"][0]["priceUsdc"] == "2.5"

    r = await client.get(f"/v1/sellers/{SELLER.address}/stats")
    assert r.status_code == 200, r.text
    assert r.json()["stats"] == {"salesCount": 3, "totalRevenue": "12.5"}

    r = await client.get(f"/v1/buyers/{BUYER.address}/purchases")
    assert r.status_code == 200, r.text
    purchases = r.json()["purchases"]
    assert sorted(p["listingSlug"] for p in purchases) == sorted([first, second])
    assert all("inviteUrl" not in p for p in purchases)


@pytest.mark.asyncio
async def test_seller_stats_rejects_bad_address(client):
    r = await client.get("/v1/sellers/not-an-address/stats")
    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_buyer_can_reveal_purchased_secret(client, seed_listing):
    slug = await seed_listing()
    sale = await _buy(client, slug)

    r = await client.post("/v1/buyers/reveal", json=reveal_body(sale["transactionId"]))
    assert r.status_code == 200, r.text
    assert r.json()["inviteUrl"] == "https://app.example/invite/abc123"


@pytest.mark.asyncio
async def test_reveal_rejects_other_wallets_and_unknown_transactions(client, seed_listing):
    slug = await seed_listing()
    sale = await _buy(client, slug)

    r = await client.post("/v1/buyers/reveal", json=reveal_body(sale["transactionId"], account=OTHER_BUYER))
    assert r.status_code == 401, r.text
    assert r.json()["error"] == "invalid_signature"
    assert "inviteUrl" not in r.json()

    r = await client.post("/v1/buyers/reveal", json=reveal_body("txn_missing"))
    assert r.status_code == 404, r.text


@pytest.mark.asyncio
async def test_reveal_rejects_stale_message(client, seed_listing):
    slug = await seed_listing()
    sale = await _buy(client, slug)

    body = reveal_body(sale["transactionId"], timestamp=1_600_000_000_000)
    r = await client.post("/v1/buyers/reveal", json=body)
    assert r.status_code == 401, r.text
    assert r.json()["error"] == "signature_expired"
