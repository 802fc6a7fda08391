from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from utilitysign.core.logging import get_logger
from utilitysign.models.event import EventOutbox, EventStatus

logger = get_logger(__name__)

MAX_DISPATCH_ATTEMPTS = 5
RETRY_BACKOFF_SECONDS = 30


async def enqueue_event(
    session: AsyncSession,
    *,
    order_ref: str | None,
    event_type: str,
    payload: dict,
    channel: str = "email",
    schedule_in_seconds: int = 0,
) -> EventOutbox:
    event = EventOutbox(
        order_ref=order_ref,
        event_type=event_type,
        payload=payload,
        channel=channel,
        next_run_at=datetime.now(timezone.utc) + timedelta(seconds=schedule_in_seconds),
    )
    session.add(event)
    await session.flush()
    logger.info("event.outbox.enqueued", event_type=event_type, channel=channel, order_ref=order_ref)
    return event


async def dispatch_pending_events(
    session: AsyncSession,
    handler: Callable[[EventOutbox], Awaitable[None]] | None = None,
    *,
    now: datetime | None = None,
    max_attempts: int = MAX_DISPATCH_ATTEMPTS,
) -> int:
    """Hand due pending (and retryable failed) events to ``handler``; returns how many succeeded."""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(EventOutbox)
        .where(or_(EventOutbox.status == EventStatus.PENDING, EventOutbox.status == EventStatus.FAILED))
        .where(EventOutbox.attempts < max_attempts)
        .order_by(EventOutbox.next_run_at)
    )
    events = [event for event in result.scalars().all() if _due(event, now)]
    dispatched = 0
    for event in events:
        try:
            if handler is not None:
                await handler(event)
            event.status = EventStatus.DISPATCHED
            event.attempts += 1
            event.last_error = None
            dispatched += 1
            logger.info("event.outbox.dispatched", event_type=event.event_type, channel=event.channel)
        except Exception as exc:
            event.status = EventStatus.FAILED
            event.attempts += 1
            event.last_error = str(exc)
            event.next_run_at = now + timedelta(seconds=RETRY_BACKOFF_SECONDS * event.attempts)
            logger.warning("event.outbox.failed", event_id=event.id, attempts=event.attempts, error=str(exc))
    await session.flush()
    return dispatched


def _due(event: EventOutbox, now: datetime) -> bool:
    next_run_at = event.next_run_at
    if next_run_at.tzinfo is None:
        next_run_at = next_run_at.replace(tzinfo=timezone.utc)
    return next_run_at <= now
