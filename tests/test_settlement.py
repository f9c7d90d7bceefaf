import base64
import json
from decimal import Decimal

import httpx
import pytest

from invitemarket.services.http_client import MarketHttpClient
from invitemarket.services.settlement import (
    SettlementReceipt,
    X402FacilitatorAdapter,
    decode_payment_header,
    network_for_chain,
    to_atomic_units,
)

FACILITATOR = "https://facilitator.test"
PAY_TO = "0x" + "11" * 20
PAYER = "0x" + "33" * 20


def _proof(network: str = "base-sepolia") -> str:
    payload = {
        "x402Version": 1,
        "scheme": "exact",
        "network": network,
        "payload": {"signature": "0xsig", "authorization": {"from": PAYER, "to": PAY_TO, "value": "5000000"}},
    }
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def _adapter(handler) -> tuple[X402FacilitatorAdapter, MarketHttpClient]:
    http = MarketHttpClient(transport=httpx.MockTransport(handler))
    return X402FacilitatorAdapter(http=http, facilitator_url=FACILITATOR + "/", api_key="k"), http


async def _settle(adapter, proof):
    return await adapter.settle(
        resource="https://invite.test/v1/purchase/abc12345",
        method="POST",
        payment_proof=proof,
        pay_to=PAY_TO,
        chain_id=84532,
        price=Decimal("5"),
        description="Purchase invite for Example App",
    )


def test_amounts_and_networks():
    assert to_atomic_units(Decimal("5")) == 5_000_000
    assert to_atomic_units(Decimal("0.000001")) == 1
    assert network_for_chain(8453).usdc_name == "USD Coin"
    assert network_for_chain(84532).name == "base-sepolia"
    with pytest.raises(ValueError):
        network_for_chain(1)


def test_receipt_header_is_base64_json():
    receipt = SettlementReceipt(payer=PAYER, transaction="0xabc", network="base")
    decoded = json.loads(base64.b64decode(receipt.header_value()))
    assert decoded == {"success": True, "payer": PAYER, "transaction": "0xabc", "network": "base"}


def test_decode_payment_header_rejects_garbage():
    with pytest.raises(ValueError):
        decode_payment_header("not base64!")
    with pytest.raises(ValueError):
        decode_payment_header(base64.b64encode(b"[1, 2]").decode())


@pytest.mark.asyncio
async def test_missing_proof_returns_requirements_without_calling_facilitator():
    calls = []
    adapter, http = _adapter(lambda request: calls.append(request) or httpx.Response(500))

    result = await _settle(adapter, None)
    await http.aclose()

    assert calls == []
    assert result.status == 402
    assert not result.ok
    req = result.response_body["accepts"][0]
    assert req["maxAmountRequired"] == "5000000"
    assert req["network"] == "base-sepolia"
    assert req["payTo"] == PAY_TO
    assert req["asset"] == "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


@pytest.mark.asyncio
async def test_network_mismatch_is_rejected_locally():
    calls = []
    adapter, http = _adapter(lambda request: calls.append(request) or httpx.Response(500))

    result = await _settle(adapter, _proof(network="base"))
    await http.aclose()

    assert calls == []
    assert result.status == 402
    assert result.response_body["error"] == "network mismatch"


@pytest.mark.asyncio
async def test_verify_then_settle_success():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/verify":
            return httpx.Response(200, json={"isValid": True, "payer": PAYER})
        return httpx.Response(200, json={"success": True, "transaction": "0xfeed", "network": "base-sepolia", "payer": PAYER})

    adapter, http = _adapter(handler)
    result = await _settle(adapter, _proof())
    await http.aclose()

    assert [r.url.path for r in seen] == ["/verify", "/settle"]
    assert seen[0].headers["Authorization"] == "Bearer k"
    sent = json.loads(seen[0].content)
    assert sent["paymentRequirements"]["maxAmountRequired"] == "5000000"
    assert sent["paymentPayload"]["network"] == "base-sepolia"

    assert result.ok
    assert result.receipt == SettlementReceipt(payer=PAYER, transaction="0xfeed", network="base-sepolia")


@pytest.mark.asyncio
async def test_invalid_payment_passes_facilitator_reason_through():
    adapter, http = _adapter(lambda request: httpx.Response(200, json={"isValid": False, "invalidReason": "insufficient_funds"}))
    result = await _settle(adapter, _proof())
    await http.aclose()

    assert result.status == 402
    assert result.response_body["error"] == "insufficient_funds"


@pytest.mark.asyncio
async def test_failed_settle_and_facilitator_outage():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/verify":
            return httpx.Response(200, json={"isValid": True})
        return httpx.Response(200, json={"success": False, "errorReason": "authorization_expired"})

    adapter, http = _adapter(handler)
    result = await _settle(adapter, _proof())
    await http.aclose()
    assert result.status == 402
    assert result.response_body["error"] == "authorization_expired"

    adapter, http = _adapter(lambda request: httpx.Response(503))
    result = await _settle(adapter, _proof())
    await http.aclose()
    assert result.status == 502
    assert result.receipt is None


@pytest.mark.asyncio
async def test_payer_falls_back_to_authorization():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/verify":
            return httpx.Response(200, json={"isValid": True})
        return httpx.Response(200, json={"success": True, "transaction": "0xfeed"})

    adapter, http = _adapter(handler)
    result = await _settle(adapter, _proof())
    await http.aclose()

    assert result.receipt.payer == PAYER
    assert result.receipt.network == "base-sepolia"
