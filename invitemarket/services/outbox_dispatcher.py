"""
Outbox dispatch: lease due notification rows and hand their ids to Celery.

A row is `pending` until claimed, `processing` while a worker holds its lease, then `done`
or `failed`. Leases that run out (worker crashed mid-delivery) go back to `pending`.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.models.outbox import OutboxEvent
from worker.celery_app import celery


log = logging.getLogger(__name__)

OUTBOX_TASK = "worker.tasks.process_outbox_event"
OUTBOX_QUEUE = "outbox"

_RELEASED = dict(status="pending", lease_id=None, lease_expires_at=None, processing_started_at=None)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def requeue_expired_leases(db: AsyncSession, *, now: datetime | None = None) -> int:
    result = await db.execute(
        update(OutboxEvent)
        .where(
            OutboxEvent.status == "processing",
            OutboxEvent.lease_expires_at.is_not(None),
            OutboxEvent.lease_expires_at < (now or _utcnow()),
        )
        .values(last_error="requeued: lease expired", **_RELEASED)
    )
    requeued = int(result.rowcount or 0)
    if requeued:
        log.warning("outbox: requeued %d events with expired leases", requeued)
    return requeued


async def claim_outbox_event_ids(
    db: AsyncSession,
    batch_size: int = 100,
    lease_minutes: int = 10,
    *,
    now: datetime | None = None,
) -> tuple[str, list[str]]:
    """Lease up to `batch_size` due rows. Postgres skips rows another dispatcher has locked."""
    now = now or _utcnow()
    lease_id = uuid.uuid4().hex

    due = (
        select(OutboxEvent.id)
        .where(
            OutboxEvent.status == "pending",
            or_(OutboxEvent.next_attempt_at.is_(None), OutboxEvent.next_attempt_at <= now),
        )
        .order_by(OutboxEvent.created_at.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )
    ids = list((await db.execute(due)).scalars().all())
    if ids:
        await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(ids))
            .values(
                status="processing",
                processing_started_at=now,
                attempts=OutboxEvent.attempts + 1,
                last_error=None,
                lease_id=lease_id,
                lease_expires_at=now + timedelta(minutes=lease_minutes),
            )
        )
        await db.flush()
    return lease_id, ids


async def dispatch_outbox(db: AsyncSession, batch_size: int = 100, lease_minutes: int = 10) -> int:
    """Returns how many events were handed to the broker."""
    await requeue_expired_leases(db)
    lease_id, ids = await claim_outbox_event_ids(db, batch_size=batch_size, lease_minutes=lease_minutes)

    # workers must see the lease before they get the task
    await db.commit()
    if not ids:
        return 0

    unsent: dict[str, str] = {}
    for outbox_id in ids:
        try:
            celery.send_task(OUTBOX_TASK, args=[outbox_id, lease_id], queue=OUTBOX_QUEUE)
        except Exception as e:
            unsent[outbox_id] = f"{type(e).__name__}: {e}"

    if unsent:
        log.warning("outbox: %d of %d events could not be enqueued", len(unsent), len(ids))
        for outbox_id, reason in unsent.items():
            # an event that never reached the broker does not use up an attempt
            await db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == outbox_id, OutboxEvent.lease_id == lease_id)
                .values(attempts=OutboxEvent.attempts - 1, last_error=f"enqueue failed: {reason}", **_RELEASED)
            )
        await db.commit()

    return len(ids) - len(unsent)
