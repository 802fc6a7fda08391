from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from utilitysign.core.logging import get_logger
from utilitysign.db.session import session_scope
from utilitysign.models.event import EventOutbox
from utilitysign.services.outbox_service import dispatch_pending_events, enqueue_event

logger = get_logger(__name__)


class NotificationSink(ABC):
    """Outbound notification channel (email in the host platform)."""

    @abstractmethod
    async def send(self, template: str, order_ref: str, context: dict[str, Any]) -> None:
        """Deliver one notification; may raise, callers treat failures as best effort."""


class LoggingNotificationSink(NotificationSink):
    async def send(self, template: str, order_ref: str, context: dict[str, Any]) -> None:
        logger.info(
            "notification.sent",
            template=template,
            order_ref=order_ref,
            recipient=context.get("signer_email"),
        )


class OutboxNotificationSink(NotificationSink):
    """Queues notifications in the event outbox for a separate dispatcher."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], channel: str = "email"):
        self._session_factory = session_factory
        self.channel = channel

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    async def send(self, template: str, order_ref: str, context: dict[str, Any]) -> None:
        async with session_scope(self._session_factory) as session:
            await enqueue_event(
                session,
                order_ref=order_ref,
                event_type=f"notification.{template}",
                payload={"template": template, "context": jsonable_encoder(context)},
                channel=self.channel,
            )


def outbox_delivery_handler(sink: NotificationSink) -> Callable[[EventOutbox], Awaitable[None]]:
    """Adapt a sink into the outbox dispatch handler for queued notification rows."""

    async def deliver(event: EventOutbox) -> None:
        payload = event.payload or {}
        template = payload.get("template") or event.event_type.removeprefix("notification.")
        await sink.send(template, event.order_ref or "", payload.get("context") or {})

    return deliver


class OutboxDispatcher:
    """Drains queued notifications, on demand or on a fixed interval."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        delivery_sink: NotificationSink,
        *,
        interval_seconds: float = 30.0,
    ):
        self._session_factory = session_factory
        self._handler = outbox_delivery_handler(delivery_sink)
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    async def dispatch_once(self) -> int:
        async with session_scope(self._session_factory) as session:
            return await dispatch_pending_events(session, self._handler)

    async def start(self) -> None:
        if self._task is not None or self.interval_seconds <= 0:
            return
        self._task = asyncio.create_task(self._run(), name="outbox-dispatch")
        logger.info("event.outbox.dispatcher_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.dispatch_once()
            except Exception as exc:  # pragma: no cover - loop must survive a failing drain
                logger.error("event.outbox.dispatch_failed", error=str(exc))
