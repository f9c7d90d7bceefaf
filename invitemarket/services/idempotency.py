"""
Replay guard for signed listing mutations.

The key is the EIP-712 digest of the signed payload, so the same signature can only ever
be applied once. Resubmitting it returns the stored response; reusing it with a body that
hashes differently (fields outside the signature) is a conflict.
"""
import hashlib
import json

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.core.errors import MarketError
from invitemarket.models.idempotency import IdempotencyKey


class IdempotencyConflict(MarketError):
    code = "idempotency_conflict"
    status_code = 409


def _hash_request(operation: str, body: dict) -> str:
    raw = json.dumps({"op": operation, "body": body}, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return "sha256:" + hashlib.sha256(raw).hexdigest()


async def get_or_reserve_idempotency(
    *,
    db: AsyncSession,
    key: str,
    signer_address: str,
    operation: str,
    request_body: dict,
) -> IdempotencyKey | None:
    """
    Returns the existing record if this signed payload was already applied
    (caller should return `existing.response` as-is), else reserves it and returns None.
    """
    req_hash = _hash_request(operation, request_body)

    existing = (await db.execute(select(IdempotencyKey).where(IdempotencyKey.key == key))).scalar_one_or_none()
    if existing:
        if existing.request_hash != req_hash:
            raise IdempotencyConflict("Signature already used for a different request")
        return existing

    # Reserve by inserting an empty response row
    db.add(IdempotencyKey(
        key=key,
        signer_address=signer_address,
        operation=operation,
        request_hash=req_hash,
        response={},
    ))
    # Flush so the unique constraint is enforced inside this transaction
    try:
        await db.flush()
    except IntegrityError:
        # same signature submitted concurrently; the other request owns it
        await db.rollback()
        raise IdempotencyConflict("Signature is already being processed")
    return None


async def store_idempotency_response(*, db: AsyncSession, key: str, response: dict) -> None:
    row = (await db.execute(select(IdempotencyKey).where(IdempotencyKey.key == key))).scalar_one()
    row.response = response
    await db.flush()
