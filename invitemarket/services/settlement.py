"""
Settlement adapter: turns an X-PAYMENT proof into either a receipt or a response to pass back.

The default implementation speaks x402 v1 to a hosted facilitator (`/verify` then `/settle`).
The orchestrator only depends on the `SettlementAdapter` protocol so tests and other
payment rails can swap it out.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from invitemarket.core.config import BASE_MAINNET_CHAIN_ID, BASE_SEPOLIA_CHAIN_ID
from invitemarket.services.http_client import MarketHttpClient


log = logging.getLogger(__name__)

X402_VERSION = 1
USDC_DECIMALS = 6


@dataclass(frozen=True)
class X402Network:
    name: str
    usdc_address: str
    # EIP-712 domain of the USDC contract, needed by wallets signing transferWithAuthorization
    usdc_name: str
    usdc_version: str = "2"


NETWORKS: dict[int, X402Network] = {
    BASE_MAINNET_CHAIN_ID: X402Network("base", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "USD Coin"),
    BASE_SEPOLIA_CHAIN_ID: X402Network("base-sepolia", "0x036CbD53842c5426634e7929541eC2318f3dCF7e", "USDC"),
}


def network_for_chain(chain_id: int) -> X402Network:
    try:
        return NETWORKS[chain_id]
    except KeyError:
        raise ValueError(f"unsupported chain id {chain_id}")


def to_atomic_units(price: Decimal) -> int:
    return int((price * (10 ** USDC_DECIMALS)).to_integral_value())


@dataclass(frozen=True)
class SettlementReceipt:
    payer: str
    transaction: str | None
    network: str

    def to_dict(self) -> dict[str, Any]:
        return {"success": True, "payer": self.payer, "transaction": self.transaction, "network": self.network}

    def header_value(self) -> str:
        """Base64 JSON, as sent back in X-PAYMENT-RESPONSE."""
        raw = json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")


@dataclass(frozen=True)
class SettlementResult:
    status: int
    receipt: SettlementReceipt | None = None
    response_body: dict[str, Any] = field(default_factory=dict)
    response_headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == 200 and self.receipt is not None


class SettlementAdapter(Protocol):
    async def settle(
        self,
        *,
        resource: str,
        method: str,
        payment_proof: str | None,
        pay_to: str,
        chain_id: int,
        price: Decimal,
        description: str = "",
    ) -> SettlementResult:
        ...


def decode_payment_header(value: str) -> dict[str, Any]:
    try:
        data = json.loads(base64.b64decode(value, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise ValueError("X-PAYMENT header is not base64 JSON")
    if not isinstance(data, dict):
        raise ValueError("X-PAYMENT header is not a JSON object")
    return data


class X402FacilitatorAdapter:
    def __init__(
        self,
        *,
        http: MarketHttpClient,
        facilitator_url: str,
        api_key: str | None = None,
        max_timeout_seconds: int = 300,
    ):
        self._http = http
        self._base_url = facilitator_url.rstrip("/")
        self._api_key = api_key
        self._max_timeout_seconds = max_timeout_seconds

    def payment_requirements(
        self,
        *,
        resource: str,
        pay_to: str,
        chain_id: int,
        price: Decimal,
        description: str = "",
    ) -> dict[str, Any]:
        network = network_for_chain(chain_id)
        return {
            "scheme": "exact",
            "network": network.name,
            "maxAmountRequired": str(to_atomic_units(price)),
            "resource": resource,
            "description": description,
            "mimeType": "application/json",
            "payTo": pay_to,
            "maxTimeoutSeconds": self._max_timeout_seconds,
            "asset": network.usdc_address,
            "extra": {"name": network.usdc_name, "version": network.usdc_version},
        }

    def _challenge(self, requirements: dict[str, Any], error: str, *, status: int = 402) -> SettlementResult:
        return SettlementResult(
            status=status,
            response_body={"x402Version": X402_VERSION, "error": error, "accepts": [requirements]},
        )

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    async def settle(
        self,
        *,
        resource: str,
        method: str,
        payment_proof: str | None,
        pay_to: str,
        chain_id: int,
        price: Decimal,
        description: str = "",
    ) -> SettlementResult:
        requirements = self.payment_requirements(
            resource=resource, pay_to=pay_to, chain_id=chain_id, price=price, description=description
        )

        if not payment_proof:
            return self._challenge(requirements, "X-PAYMENT header is required")

        try:
            payload = decode_payment_header(payment_proof)
        except ValueError as e:
            return self._challenge(requirements, str(e))

        if payload.get("network") != requirements["network"]:
            return self._challenge(requirements, "network mismatch")

        body = {"x402Version": X402_VERSION, "paymentPayload": payload, "paymentRequirements": requirements}

        verified = await self._http.post_json(url=f"{self._base_url}/verify", headers=self._headers(), json_body=body)
        if not verified.ok:
            log.warning(
                "settlement: verify call failed %s %s (%s %s)", method, resource, verified.status_code, verified.error_code
            )
            return self._challenge(requirements, "facilitator verify failed", status=502 if verified.retryable else 402)
        if not verified.detail.get("isValid"):
            return self._challenge(requirements, verified.detail.get("invalidReason") or "invalid payment")

        settled = await self._http.post_json(url=f"{self._base_url}/settle", headers=self._headers(), json_body=body)
        if not settled.ok:
            log.error(
                "settlement: settle call failed %s %s (%s %s)", method, resource, settled.status_code, settled.error_code
            )
            return self._challenge(requirements, "facilitator settle failed", status=502 if settled.retryable else 402)
        if not settled.detail.get("success"):
            return self._challenge(requirements, settled.detail.get("errorReason") or "settlement failed")

        payer = settled.detail.get("payer") or verified.detail.get("payer")
        if not payer:
            payer = ((payload.get("payload") or {}).get("authorization") or {}).get("from")
        if not payer:
            return self._challenge(requirements, "facilitator did not report a payer")

        receipt = SettlementReceipt(
            payer=str(payer).lower(),
            transaction=settled.detail.get("transaction"),
            network=settled.detail.get("network") or requirements["network"],
        )
        return SettlementResult(status=200, receipt=receipt)
