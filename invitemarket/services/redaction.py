"""
Masking for anything that is logged or written to the audit trail.

Keys are compared after lower-casing and dropping "-" and "_", so `inviteUrl`,
`invite_url` and `INVITE-URL` are one key.
"""
from __future__ import annotations

from typing import Any

SENSITIVE_KEYS = frozenset({
    "password", "secret", "token", "apikey", "authorization",
    "inviteurl", "accesscode", "secretciphertext",
    "xpayment", "paymentproof", "signature",
})

REDACTED = "**********"


def _canonical(key: str) -> str:
    return key.lower().replace("-", "").replace("_", "")


def redact_payload(value: Any, *, extra_keys: set[str] | None = None) -> Any:
    sensitive = SENSITIVE_KEYS | {_canonical(k) for k in (extra_keys or ())}

    def _walk(v: Any) -> Any:
        if isinstance(v, dict):
            return {
                k: REDACTED if isinstance(k, str) and _canonical(k) in sensitive else _walk(vv)
                for k, vv in v.items()
            }
        if isinstance(v, (list, tuple)):
            return [_walk(x) for x in v]
        return v

    return _walk(value)
