import pytest
from sqlalchemy import select

from invitemarket.models.audit_log import AuditLog
from invitemarket.services.audit import audit
from invitemarket.services.redaction import REDACTED, redact_payload


def test_redacts_secret_keys_in_any_spelling():
    out = redact_payload({
        "inviteUrl": "https://app.example/invite/abc",
        "ACCESS-CODE": "BETA-42",
        "nested": [{"x_payment": "eyJ...", "slug": "abc12345"}],
        "price_usdc": "5",
    })
    assert out == {
        "inviteUrl": REDACTED,
        "ACCESS-CODE": REDACTED,
        "nested": [{"x_payment": REDACTED, "slug": "abc12345"}],
        "price_usdc": "5",
    }


def test_extra_keys():
    assert redact_payload({"seed": "words"}, extra_keys={"Seed"}) == {"seed": REDACTED}


@pytest.mark.asyncio
async def test_audit_rows_are_redacted(db_session):
    await audit(
        db_session,
        actor="0xabc",
        action="listing.updated",
        target_type="listing",
        target_id="abc12345",
        detail={"invite_url": "https://app.example/invite/new", "max_uses": 10},
    )
    await db_session.commit()

    row = (await db_session.execute(select(AuditLog))).scalar_one()
    assert row.detail == {"invite_url": REDACTED, "max_uses": 10}
