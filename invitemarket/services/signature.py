"""
Wallet-signature verification for listing mutations and buyer reveals.

Listing mutations are authorised by EIP-712 typed data bound to the market's domain and
the target chain. Every schema carries the exact field values being changed plus a
millisecond `nonce`, so a captured signature is only good for that one change and only
inside the freshness window.

Nothing here touches storage; callers pair the returned digest with the idempotency guard.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Literal

from eth_account import Account
from eth_account.messages import SignableMessage, encode_defunct, encode_typed_data
from eth_utils import keccak, to_checksum_address

from invitemarket.core.errors import InvalidSignature, InvalidTimestamp, SignatureExpired, ValidationError


EIP712_DOMAIN_NAME = "Invite Markets"
EIP712_DOMAIN_VERSION = "1"

PrimaryType = Literal["CreateListing", "UpdateListing", "CancelListing"]

_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
]

EIP712_TYPES: dict[str, list[dict[str, str]]] = {
    "CreateListing": [
        {"name": "listingType", "type": "string"},
        {"name": "inviteUrl", "type": "string"},
        {"name": "appUrl", "type": "string"},
        {"name": "accessCode", "type": "string"},
        {"name": "priceUsdc", "type": "string"},
        {"name": "sellerAddress", "type": "address"},
        {"name": "appId", "type": "string"},
        {"name": "appName", "type": "string"},
        {"name": "maxUses", "type": "string"},
        {"name": "description", "type": "string"},
        {"name": "nonce", "type": "uint256"},
    ],
    "UpdateListing": [
        {"name": "slug", "type": "string"},
        {"name": "inviteUrl", "type": "string"},
        {"name": "appUrl", "type": "string"},
        {"name": "accessCode", "type": "string"},
        {"name": "priceUsdc", "type": "string"},
        {"name": "sellerAddress", "type": "address"},
        {"name": "appId", "type": "string"},
        {"name": "appName", "type": "string"},
        {"name": "maxUses", "type": "string"},
        {"name": "description", "type": "string"},
        {"name": "nonce", "type": "uint256"},
    ],
    "CancelListing": [
        {"name": "slug", "type": "string"},
        {"name": "sellerAddress", "type": "address"},
        {"name": "nonce", "type": "uint256"},
    ],
}

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_TIMESTAMP_RE = re.compile(r"Timestamp: (\d+)")
_MESSAGE_ADDRESS_RE = re.compile(r"Address: (0x[a-fA-F0-9]+)", re.IGNORECASE)


@dataclass(frozen=True)
class SignaturePolicy:
    max_age_seconds: int = 300
    future_skew_seconds: int = 30


@dataclass(frozen=True)
class VerifiedSignature:
    signer: str  # lowercase
    digest: str  # 0x-prefixed keccak of the signed payload
    nonce: int


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_address(value: str | None, *, field: str = "address") -> str:
    if not value or not _ADDRESS_RE.match(value):
        raise ValidationError(f"Invalid Ethereum address format for {field}")
    return value.lower()


def format_price(value: Decimal | None) -> str:
    """Canonical decimal string used in signed messages ("5", "0.75"; never "5.0" or "1E+2")."""
    if value is None:
        return ""
    return format(value.normalize(), "f")


def eip712_domain(chain_id: int) -> dict[str, Any]:
    return {"name": EIP712_DOMAIN_NAME, "version": EIP712_DOMAIN_VERSION, "chainId": chain_id}


def build_typed_data(primary_type: PrimaryType, message: dict[str, Any], chain_id: int) -> dict[str, Any]:
    # Signers and verifiers must build exactly the same structure
    body = dict(message)
    body["sellerAddress"] = to_checksum_address(body["sellerAddress"])
    body["nonce"] = int(body["nonce"])
    return {
        "types": {"EIP712Domain": _DOMAIN_FIELDS, primary_type: EIP712_TYPES[primary_type]},
        "primaryType": primary_type,
        "domain": eip712_domain(chain_id),
        "message": body,
    }


def _digest(signable: SignableMessage) -> str:
    raw = b"\x19" + signable.version + signable.header + signable.body
    return "0x" + keccak(raw).hex()


def _signature_bytes(signature: str) -> bytes:
    sig = (signature or "").strip()
    if sig.startswith(("0x", "0X")):
        sig = sig[2:]
    try:
        raw = bytes.fromhex(sig)
    except ValueError:
        raise InvalidSignature("Invalid signature. Please sign the message with your wallet.")
    if len(raw) != 65:
        raise InvalidSignature("Invalid signature. Please sign the message with your wallet.")
    return raw


def _recover(signable: SignableMessage, signature: str) -> str:
    raw = _signature_bytes(signature)
    try:
        return Account.recover_message(signable, signature=raw).lower()
    except Exception:
        # eth_keys raises its own error types for out-of-range r/s/v
        raise InvalidSignature("Invalid signature. Please sign the message with your wallet.")


def check_freshness(nonce: int, *, policy: SignaturePolicy, now: int | None = None) -> None:
    current = now_ms() if now is None else now
    if nonce - current > policy.future_skew_seconds * 1000:
        raise InvalidTimestamp("Signature timestamp is in the future. Check your device clock.")
    if current - nonce > policy.max_age_seconds * 1000:
        raise SignatureExpired("Signature expired. Please try again.")


def verify_typed_signature(
    *,
    primary_type: PrimaryType,
    message: dict[str, Any],
    signer_address: str,
    signature: str,
    chain_id: int,
    policy: SignaturePolicy,
    now: int | None = None,
) -> VerifiedSignature:
    """
    Recompute the EIP-712 digest for `message` under the market domain on `chain_id` and
    check it recovers to `signer_address`, then check the nonce is fresh.

    Raises InvalidSignature, SignatureExpired or InvalidTimestamp.
    """
    claimed = normalize_address(signer_address, field="sellerAddress")
    if str(message.get("sellerAddress", "")).lower() != claimed:
        raise InvalidSignature("Signed sellerAddress does not match the claimed signer.")

    try:
        nonce = int(message["nonce"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("nonce must be an integer timestamp in milliseconds")

    signable = encode_typed_data(full_message=build_typed_data(primary_type, message, chain_id))
    recovered = _recover(signable, signature)
    if recovered != claimed:
        raise InvalidSignature("Invalid signature. Please sign the message with your wallet.")

    check_freshness(nonce, policy=policy, now=now)
    return VerifiedSignature(signer=claimed, digest=_digest(signable), nonce=nonce)


def verify_personal_message(
    *,
    message: str,
    signature: str,
    expected_address: str,
    policy: SignaturePolicy,
    now: int | None = None,
) -> str:
    """
    EIP-191 check for buyer-side requests. The message must carry a
    `Timestamp: <ms>` line and, if it names an `Address:`, that must be the signer.
    """
    expected = normalize_address(expected_address)
    recovered = _recover(encode_defunct(text=message), signature)
    if recovered != expected:
        raise InvalidSignature("Invalid signature or unauthorized")

    ts = _TIMESTAMP_RE.search(message)
    if not ts:
        raise ValidationError("Signed message must include a Timestamp line")
    check_freshness(int(ts.group(1)), policy=policy, now=now)

    addr = _MESSAGE_ADDRESS_RE.search(message)
    if addr and addr.group(1).lower() != expected:
        raise InvalidSignature("Invalid signature or unauthorized")

    return expected


# --- message builders shared with clients/tests ---

def create_listing_message(
    *,
    listing_type: str,
    invite_url: str | None,
    app_url: str | None,
    access_code: str | None,
    price_usdc: Decimal,
    seller_address: str,
    app_id: str | None,
    app_name: str | None,
    max_uses: int,
    description: str | None,
    nonce: int,
) -> dict[str, Any]:
    return {
        "listingType": listing_type,
        "inviteUrl": invite_url or "",
        "appUrl": app_url or "",
        "accessCode": access_code or "",
        "priceUsdc": format_price(price_usdc),
        "sellerAddress": seller_address,
        "appId": app_id or "",
        "appName": app_name or "",
        "maxUses": str(max_uses),
        "description": description or "",
        "nonce": nonce,
    }


def update_listing_message(
    *,
    slug: str,
    seller_address: str,
    nonce: int,
    invite_url: str | None = None,
    app_url: str | None = None,
    access_code: str | None = None,
    price_usdc: Decimal | None = None,
    app_id: str | None = None,
    app_name: str | None = None,
    max_uses: int | None = None,
    description: str | None = None,
) -> dict[str, Any]:
    return {
        "slug": slug,
        "inviteUrl": invite_url or "",
        "appUrl": app_url or "",
        "accessCode": access_code or "",
        "priceUsdc": format_price(price_usdc),
        "sellerAddress": seller_address,
        "appId": app_id or "",
        "appName": app_name or "",
        "maxUses": "" if max_uses is None else str(max_uses),
        "description": description or "",
        "nonce": nonce,
    }


def cancel_listing_message(*, slug: str, seller_address: str, nonce: int) -> dict[str, Any]:
    return {"slug": slug, "sellerAddress": seller_address, "nonce": nonce}
