import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.sql import func

from worker.celery_app import celery
from invitemarket.core.config import settings
import invitemarket.models  # noqa: F401  # ensures Models are registered
from invitemarket.models.outbox import OutboxEvent
from invitemarket.services.http_client import MarketHttpClient
from invitemarket.services.notifications import deliver
from invitemarket.services.retry import MAX_NOTIFICATION_ATTEMPTS, compute_backoff_seconds


log = logging.getLogger(__name__)


async def _finish(db: AsyncSession, outbox_id: str, lease_id: str, **values) -> bool:
    # only the lease holder may move the row out of "processing"
    result = await db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == outbox_id, OutboxEvent.lease_id == lease_id)
        .values(lease_id=None, lease_expires_at=None, **values)
    )
    if result.rowcount == 0:
        await db.rollback()
        return False
    await db.commit()
    return True


async def _retry_or_fail(db: AsyncSession, ev_id: str, lease_id: str, attempts: int, error: str) -> None:
    if attempts >= MAX_NOTIFICATION_ATTEMPTS:
        log.error("outbox: %s failed permanently after %d attempts: %s", ev_id, attempts, error)
        await _finish(db, ev_id, lease_id, status="failed", last_error=error, processed_at=func.now())
        return
    delay = compute_backoff_seconds(attempts)
    await _finish(
        db,
        ev_id,
        lease_id,
        status="pending",
        processing_started_at=None,
        last_error=error,
        next_attempt_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
    )


async def _process_outbox_event(
    outbox_id: str,
    lease_id: str,
    *,
    session_factory: async_sessionmaker | None = None,
    http: MarketHttpClient | None = None,
) -> None:
    engine = None
    if session_factory is None:
        engine = create_async_engine(settings.database_url, pool_pre_ping=True)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
    owns_http = http is None
    if http is None:
        http = MarketHttpClient(timeout_seconds=10.0)

    try:
        async with session_factory() as db:
            ev = (await db.execute(select(OutboxEvent).where(OutboxEvent.id == outbox_id))).scalar_one_or_none()
            if not ev:
                return

            # Lease ownership check
            if ev.lease_id != lease_id or ev.status != "processing":
                # Another dispatcher reclaimed it or it's already done.
                return

            event_type, payload, attempts = ev.event_type, dict(ev.payload), ev.attempts

            try:
                res = await deliver(http, settings, event_type=event_type, payload=payload)
            except ValueError as e:
                # malformed event; retrying will not help
                await _finish(db, outbox_id, lease_id, status="failed", last_error=str(e), processed_at=func.now())
                return

            if res is None or res.ok:
                await _finish(db, outbox_id, lease_id, status="done", processed_at=func.now(), last_error=None)
                return

            error = f"{res.error_code}: {res.error_message}"
            if not res.retryable:
                log.warning("outbox: %s rejected by webhook (%s)", outbox_id, error)
                await _finish(db, outbox_id, lease_id, status="failed", last_error=error, processed_at=func.now())
                return
            await _retry_or_fail(db, outbox_id, lease_id, attempts, error)
    finally:
        if owns_http:
            await http.aclose()
        if engine is not None:
            await engine.dispose()


@celery.task(name="worker.tasks.process_outbox_event", bind=True, max_retries=5)
def process_outbox_event(self, outbox_id: str, lease_id: str) -> None:
    asyncio.run(_process_outbox_event(outbox_id, lease_id))
