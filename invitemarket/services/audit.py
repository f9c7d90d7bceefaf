from __future__ import annotations
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.models.audit_log import AuditLog
from invitemarket.services.redaction import redact_payload


async def audit(
    db: AsyncSession,
    *,
    actor: str | None,
    action: str,
    target_type: str | None = None,
    target_id: str | None = None,
    detail: dict | None = None,
) -> None:
    db.add(AuditLog(
        actor=actor,
        action=action,
        target_type=target_type,
        target_id=target_id,
        detail=redact_payload(detail or {}),
    ))
