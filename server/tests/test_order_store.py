"""
Order store and notification outbox tests.

The database store runs against an in-memory SQLite database through
aiosqlite, the same engine setup the service uses.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from utilitysign.db.session import create_session_factory, init_models, session_scope
from utilitysign.models.event import EventOutbox, EventStatus
from utilitysign.models.signing import SigningStatus
from utilitysign.services.notifications import OutboxNotificationSink
from utilitysign.services.order_store import (
    DatabaseOrderStore,
    InMemoryOrderStore,
    Signer,
    StaleSessionError,
)
from utilitysign.services.outbox_service import dispatch_pending_events, enqueue_event
from utilitysign.services.signing_orchestrator import SigningOrchestrator


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture(params=["memory", "database"])
def store(request, session_factory):
    if request.param == "memory":
        return InMemoryOrderStore()
    return DatabaseOrderStore(session_factory)


class TestOrderStore:
    @pytest.mark.asyncio
    async def test_update_creates_record(self, store):
        session = await store.update_fields(
            "order-1",
            {
                "document_ref": "doc-1",
                "signer": Signer(email="ada@example.no", name="Ada Lovelace"),
                "session_id": "sess-1",
                "status": SigningStatus.AWAITING_IDENTITY,
                "extra_claims": {"company": "Acme"},
            },
        )

        assert session.order_ref == "order-1"
        assert session.version == 1
        assert session.signer.name == "Ada Lovelace"
        assert session.extra_claims == {"company": "Acme"}
        assert session.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_lookup_by_each_key(self, store):
        await store.update_fields("order-1", {"session_id": "sess-1", "idempotency_key": "key-1"})

        for key, value in (("order_ref", "order-1"), ("session_id", "sess-1"), ("idempotency_key", "key-1")):
            found = await store.get_by_field(key, value)
            assert found is not None
            assert found.order_ref == "order-1"

        assert await store.get_by_field("session_id", "missing") is None
        assert await store.get_by_field("session_id", None) is None

    @pytest.mark.asyncio
    async def test_unsupported_lookup(self, store):
        with pytest.raises(ValueError):
            await store.get_by_field("signer_email", "ada@example.no")

    @pytest.mark.asyncio
    async def test_unknown_and_immutable_fields(self, store):
        with pytest.raises(ValueError):
            await store.update_fields("order-1", {"colour": "blue"})
        with pytest.raises(ValueError):
            await store.update_fields("order-1", {"order_ref": "order-2"})

    @pytest.mark.asyncio
    async def test_version_check(self, store):
        first = await store.update_fields("order-1", {"status": SigningStatus.AWAITING_IDENTITY})
        version = first.version
        second = await store.update_fields(
            "order-1", {"status": SigningStatus.IDENTITY_VERIFIED}, expected_version=first.version
        )
        assert second.version == first.version + 1

        with pytest.raises(StaleSessionError) as exc_info:
            await store.update_fields("order-1", {"status": SigningStatus.SIGNED}, expected_version=first.version)
        assert exc_info.value.actual == second.version

        current = await store.get_by_field("order_ref", "order-1")
        assert current.status is SigningStatus.IDENTITY_VERIFIED

    @pytest.mark.asyncio
    async def test_version_check_on_missing_record(self, store):
        with pytest.raises(StaleSessionError):
            await store.update_fields("order-9", {"status": SigningStatus.SIGNED}, expected_version=3)
        assert await store.get_by_field("order_ref", "order-9") is None

    @pytest.mark.asyncio
    async def test_returned_sessions_are_copies(self, store):
        await store.update_fields("order-1", {"extra_claims": {"company": "Acme"}})
        session = await store.get_by_field("order_ref", "order-1")
        session.extra_claims["company"] = "Changed"

        assert (await store.get_by_field("order_ref", "order-1")).extra_claims == {"company": "Acme"}

    @pytest.mark.asyncio
    async def test_orchestrated_flow_persists(self, store, stub_gateway, notifications):
        orchestrator = SigningOrchestrator(stub_gateway, store, notifications)
        await orchestrator.start_session("order-1", "doc-1", {"name": "Ada Lovelace", "email": "ada@example.no"})
        await orchestrator.cancel_session("sess-1")

        session = await store.get_by_field("session_id", "sess-1")
        assert session.status is SigningStatus.IDENTITY_CANCELLED
        assert session.completed_at is not None
        assert session.last_error["step"] == "identity"


class TestInMemoryOrderStore:
    @pytest.mark.asyncio
    async def test_session_id_is_unique(self):
        store = InMemoryOrderStore()
        await store.update_fields("order-1", {"session_id": "sess-1"})
        with pytest.raises(ValueError):
            await store.update_fields("order-2", {"session_id": "sess-1"})


class TestOutbox:
    @pytest.mark.asyncio
    async def test_sink_enqueues_notification(self, session_factory):
        sink = OutboxNotificationSink(session_factory)
        await sink.send(
            "document_signed",
            "order-1",
            {"signer_email": "ada@example.no", "completed_at": datetime(2025, 1, 15, tzinfo=timezone.utc)},
        )

        async with session_factory() as session:
            events = (await session.execute(select(EventOutbox))).scalars().all()
        assert len(events) == 1
        event = events[0]
        assert event.event_type == "notification.document_signed"
        assert event.order_ref == "order-1"
        assert event.status is EventStatus.PENDING
        assert event.payload["context"]["completed_at"] == "2025-01-15T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_dispatch_marks_events(self, session_factory):
        delivered = []

        async def handler(event):
            delivered.append(event.event_type)

        async with session_scope(session_factory) as session:
            await enqueue_event(session, order_ref="order-1", event_type="notification.signing_started", payload={})
            await enqueue_event(
                session, order_ref="order-1", event_type="notification.later", payload={}, schedule_in_seconds=3600
            )

        async with session_scope(session_factory) as session:
            dispatched = await dispatch_pending_events(session, handler, now=datetime.now(timezone.utc))

        assert dispatched == 1
        assert delivered == ["notification.signing_started"]

    @pytest.mark.asyncio
    async def test_failed_dispatch_is_rescheduled(self, session_factory):
        async def handler(event):
            raise RuntimeError("smtp down")

        async with session_scope(session_factory) as session:
            await enqueue_event(session, order_ref="order-1", event_type="notification.signing_failed", payload={})

        now = datetime.now(timezone.utc)
        async with session_scope(session_factory) as session:
            assert await dispatch_pending_events(session, handler, now=now) == 0

        async with session_factory() as session:
            event = (await session.execute(select(EventOutbox))).scalars().one()
        assert event.status is EventStatus.FAILED
        assert event.attempts == 1
        assert event.last_error == "smtp down"

        async with session_scope(session_factory) as session:
            assert await dispatch_pending_events(session, None, now=now + timedelta(seconds=31)) == 1


class TestDatabaseOrderStoreConcurrency:
    @pytest_asyncio.fixture
    async def file_session_factory(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
        await init_models(engine)
        yield create_session_factory(engine)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_concurrent_writers_from_same_version(self, file_session_factory):
        store = DatabaseOrderStore(file_session_factory)
        first = await store.update_fields("order-1", {"status": SigningStatus.AWAITING_IDENTITY})

        results = await asyncio.gather(
            store.update_fields("order-1", {"status": SigningStatus.IDENTITY_VERIFIED}, expected_version=first.version),
            store.update_fields("order-1", {"status": SigningStatus.IDENTITY_CANCELLED}, expected_version=first.version),
            return_exceptions=True,
        )

        written = [result for result in results if not isinstance(result, Exception)]
        conflicts = [result for result in results if isinstance(result, StaleSessionError)]
        assert len(written) == 1
        assert len(conflicts) == 1
        assert conflicts[0].actual == first.version + 1
        current = await store.get_by_field("order_ref", "order-1")
        assert current.version == first.version + 1
        assert current.status is written[0].status
