from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Mapping

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.domain.job_events.db_models import JobEvent
from clutterscore.infra.logging import clear_log_context, update_log_context
from clutterscore.infra.metrics import metrics
from clutterscore.settings import settings
from clutterscore.shared.clock import utcnow

logger = logging.getLogger(__name__)

PENDING_STATUSES = {"pending", "retry"}

JobHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

# Job-level retries per event name, on top of the first attempt.
EVENT_RETRIES: dict[str, int] = {"audit/run": 2, "playbook/execute": 1}


def max_attempts_for(name: str) -> int:
    retries = EVENT_RETRIES.get(name)
    if retries is None:
        return settings.job_events_max_attempts
    return retries + 1


def _backoff_delay(attempt: int) -> timedelta:
    delay = settings.job_events_base_backoff_seconds * max(1, 2 ** max(0, attempt - 1))
    return timedelta(seconds=delay)


async def enqueue_job_event(
    session: AsyncSession,
    *,
    name: str,
    payload: dict[str, Any],
    dedupe_key: str,
    tenant_id: uuid.UUID | None = None,
    deliver_after: datetime | None = None,
) -> JobEvent:
    """Queue an event in the caller's transaction; a repeated dedupe key returns the existing row."""

    values = {
        "event_id": uuid.uuid4(),
        "name": name,
        "tenant_id": tenant_id,
        "payload_json": payload,
        "dedupe_key": dedupe_key,
        "status": "pending",
        "attempts": 0,
        "deliver_after": deliver_after or utcnow(),
        "last_error": None,
    }
    bind = session.get_bind()
    dialect = bind.dialect.name if bind else ""
    if dialect in {"postgresql", "sqlite"}:
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = (
            insert(JobEvent)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["dedupe_key"])
            .returning(JobEvent)
        )
        created = (await session.execute(stmt)).scalar_one_or_none()
        if created is not None:
            return created
    existing = await session.scalar(select(JobEvent).where(JobEvent.dedupe_key == dedupe_key))
    if existing is not None:
        return existing
    event = JobEvent(**values)
    session.add(event)
    await session.flush()
    return event


async def deliver_job_event(
    session: AsyncSession, event: JobEvent, handlers: Mapping[str, JobHandler]
) -> bool:
    attempts = (event.attempts or 0) + 1
    event.attempts = attempts
    handler = handlers.get(event.name)
    error: str | None
    if handler is None:
        result, error = None, "unknown_event"
    else:
        update_log_context(job_event=event.name, job_event_id=str(event.event_id))
        try:
            payload = {**(event.payload_json or {}), "event_id": str(event.event_id)}
            result, error = await handler(payload), None
        except Exception as exc:  # noqa: BLE001
            result, error = None, (str(exc) or type(exc).__name__)[:255]
            logger.warning(
                "job_event_failed",
                extra={"extra": {"event": event.name, "attempts": attempts, "error_type": type(exc).__name__}},
            )

    if error is None:
        event.status = "sent"
        event.deliver_after = None
        event.last_error = None
        event.result_json = result
        metrics.record_job_event(event.name, "sent")
        return True

    event.last_error = error
    if attempts >= max_attempts_for(event.name):
        event.status = "dead"
        event.deliver_after = None
    else:
        event.status = "retry"
        event.deliver_after = utcnow() + _backoff_delay(attempts)
    metrics.record_job_event(event.name, event.status)
    return False


async def process_job_events(
    session: AsyncSession,
    handlers: Mapping[str, JobHandler],
    *,
    limit: int | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    now = now or utcnow()
    stmt = (
        select(JobEvent)
        .where(
            JobEvent.status.in_(PENDING_STATUSES),
            or_(JobEvent.deliver_after.is_(None), JobEvent.deliver_after <= now),
        )
        .order_by(JobEvent.created_at)
        .limit(limit or settings.job_events_batch_size)
    )
    events = (await session.scalars(stmt)).all()
    sent = 0
    dead = 0
    for event in events:
        try:
            if await deliver_job_event(session, event, handlers):
                sent += 1
            elif event.status == "dead":
                dead += 1
        finally:
            clear_log_context()
        await session.commit()
    return {"sent": sent, "dead": dead, "picked": len(events)}


async def job_event_counts_by_status(session: AsyncSession, statuses: Iterable[str]) -> dict[str, int]:
    counts: dict[str, int] = {status: 0 for status in statuses}
    result = await session.execute(
        select(JobEvent.status, func.count()).where(JobEvent.status.in_(counts.keys())).group_by(JobEvent.status)
    )
    for status, count in result.all():
        counts[status] = int(count)
    return counts


async def replay_job_event(session: AsyncSession, event: JobEvent) -> None:
    event.status = "pending"
    event.attempts = 0
    event.deliver_after = utcnow()
    event.last_error = None
    await session.commit()
