from decimal import Decimal

import pytest

from invitemarket.core.errors import InvalidSignature, InvalidTimestamp, SignatureExpired, ValidationError
from invitemarket.services.signature import (
    SignaturePolicy,
    cancel_listing_message,
    format_price,
    normalize_address,
    verify_personal_message,
    verify_typed_signature,
)
from fixtures_seed import BUYER, OTHER_SELLER, SELLER, sign_personal, sign_typed

POLICY = SignaturePolicy(max_age_seconds=300, future_skew_seconds=30)
NOW = 1_750_000_000_000


def _cancel(nonce=NOW, slug="abc12345"):
    return cancel_listing_message(slug=slug, seller_address=SELLER.address, nonce=nonce)


def test_valid_typed_signature_recovers_seller():
    msg = _cancel()
    sig = sign_typed("CancelListing", msg, chain_id=84532)
    verified = verify_typed_signature(
        primary_type="CancelListing",
        message=msg,
        signer_address=SELLER.address,
        signature=sig,
        chain_id=84532,
        policy=POLICY,
        now=NOW,
    )
    assert verified.signer == SELLER.address.lower()
    assert verified.digest.startswith("0x") and len(verified.digest) == 66
    assert verified.nonce == NOW


def test_tampered_field_is_rejected():
    sig = sign_typed("CancelListing", _cancel(), chain_id=84532)
    with pytest.raises(InvalidSignature):
        verify_typed_signature(
            primary_type="CancelListing",
            message=_cancel(slug="zzz99999"),
            signer_address=SELLER.address,
            signature=sig,
            chain_id=84532,
            policy=POLICY,
            now=NOW,
        )


def test_signature_from_another_chain_is_rejected():
    sig = sign_typed("CancelListing", _cancel(), chain_id=8453)
    with pytest.raises(InvalidSignature):
        verify_typed_signature(
            primary_type="CancelListing",
            message=_cancel(),
            signer_address=SELLER.address,
            signature=sig,
            chain_id=84532,
            policy=POLICY,
            now=NOW,
        )


def test_claimed_signer_must_match():
    msg = cancel_listing_message(slug="abc12345", seller_address=OTHER_SELLER.address, nonce=NOW)
    sig = sign_typed("CancelListing", msg, account=SELLER, chain_id=84532)
    with pytest.raises(InvalidSignature):
        verify_typed_signature(
            primary_type="CancelListing",
            message=msg,
            signer_address=OTHER_SELLER.address,
            signature=sig,
            chain_id=84532,
            policy=POLICY,
            now=NOW,
        )


def test_malformed_signature_is_rejected():
    with pytest.raises(InvalidSignature):
        verify_typed_signature(
            primary_type="CancelListing",
            message=_cancel(),
            signer_address=SELLER.address,
            signature="0xdeadbeef",
            chain_id=84532,
            policy=POLICY,
            now=NOW,
        )


def test_expired_and_future_nonces():
    old = _cancel(nonce=NOW - 301_000)
    with pytest.raises(SignatureExpired):
        verify_typed_signature(
            primary_type="CancelListing",
            message=old,
            signer_address=SELLER.address,
            signature=sign_typed("CancelListing", old, chain_id=84532),
            chain_id=84532,
            policy=POLICY,
            now=NOW,
        )

    future = _cancel(nonce=NOW + 31_000)
    with pytest.raises(InvalidTimestamp):
        verify_typed_signature(
            primary_type="CancelListing",
            message=future,
            signer_address=SELLER.address,
            signature=sign_typed("CancelListing", future, chain_id=84532),
            chain_id=84532,
            policy=POLICY,
            now=NOW,
        )


def test_personal_message_roundtrip_and_address_line():
    text = f"Reveal invite\nAddress: {BUYER.address}\nTimestamp: {NOW}"
    signer = verify_personal_message(
        message=text,
        signature=sign_personal(text),
        expected_address=BUYER.address,
        policy=POLICY,
        now=NOW,
    )
    assert signer == BUYER.address.lower()

    with pytest.raises(InvalidSignature):
        verify_personal_message(
            message=text,
            signature=sign_personal(text, account=OTHER_SELLER),
            expected_address=BUYER.address,
            policy=POLICY,
            now=NOW,
        )


def test_personal_message_requires_timestamp():
    text = "Reveal invite"
    with pytest.raises(ValidationError):
        verify_personal_message(
            message=text,
            signature=sign_personal(text),
            expected_address=BUYER.address,
            policy=POLICY,
            now=NOW,
        )


def test_format_price_is_canonical():
    assert format_price(Decimal("5.00")) == "5"
    assert format_price(Decimal("0.750")) == "0.75"
    assert format_price(Decimal("1E+2")) == "100"


def test_normalize_address():
    assert normalize_address(SELLER.address) == SELLER.address.lower()
    with pytest.raises(ValidationError):
        normalize_address("0x1234")
