from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields as dataclass_fields, replace
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from utilitysign.core.logging import get_logger
from utilitysign.db.session import session_scope
from utilitysign.models.signing import SigningOrder, SigningStatus

logger = get_logger(__name__)

LOOKUP_FIELDS = frozenset({"order_ref", "session_id", "idempotency_key"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Signer:
    email: str
    name: str


@dataclass
class SigningSession:
    order_ref: str
    document_ref: str = ""
    signer: Signer = field(default_factory=lambda: Signer(email="", name=""))
    status: SigningStatus = SigningStatus.CREATED
    session_id: str | None = None
    title: str | None = None
    idempotency_key: str | None = None
    extra_claims: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    identity_verified_at: datetime | None = None
    awaiting_signature_at: datetime | None = None
    completed_at: datetime | None = None
    identity_claims: dict[str, Any] | None = None
    signature_data: dict[str, Any] | None = None
    signed_document_url: str | None = None
    failure_reason: str | None = None
    last_error: dict[str, Any] | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


SESSION_FIELDS = frozenset(f.name for f in dataclass_fields(SigningSession))


class StaleSessionError(Exception):
    """The record changed between read and write."""

    def __init__(self, order_ref: str, expected: int, actual: int):
        super().__init__(f"signing session {order_ref} is at version {actual}, expected {expected}")
        self.order_ref = order_ref
        self.expected = expected
        self.actual = actual


class OrderStore(ABC):
    """Host persistence for signing sessions, addressed by order reference."""

    @abstractmethod
    async def get_by_field(self, key: str, value: Any) -> SigningSession | None:
        """Return the session whose ``key`` equals ``value``."""

    @abstractmethod
    async def update_fields(
        self,
        order_ref: str,
        fields: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> SigningSession:
        """Write ``fields`` in one update, creating the record if absent.

        Raises StaleSessionError when ``expected_version`` no longer matches.
        """


def _check_lookup(key: str) -> None:
    if key not in LOOKUP_FIELDS:
        raise ValueError(f"cannot look up signing sessions by '{key}'")


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - SESSION_FIELDS - {"order_ref"}
    if unknown:
        raise ValueError(f"unknown signing session fields: {sorted(unknown)}")
    if "order_ref" in fields:
        raise ValueError("order_ref is immutable")


class InMemoryOrderStore(OrderStore):
    def __init__(self) -> None:
        self._sessions: dict[str, SigningSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def get_by_field(self, key: str, value: Any) -> SigningSession | None:
        _check_lookup(key)
        if value is None:
            return None
        for session in self._sessions.values():
            if getattr(session, key) == value:
                return copy.deepcopy(session)
        return None

    async def update_fields(
        self,
        order_ref: str,
        fields: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> SigningSession:
        _check_fields(fields)
        current = self._sessions.get(order_ref) or SigningSession(order_ref=order_ref)
        if expected_version is not None and current.version != expected_version:
            raise StaleSessionError(order_ref, expected_version, current.version)

        session_id = fields.get("session_id")
        if session_id is not None:
            for other in self._sessions.values():
                if other.order_ref != order_ref and other.session_id == session_id:
                    raise ValueError(f"session_id {session_id} already belongs to order {other.order_ref}")

        updated = replace(current, **copy.deepcopy(fields))
        updated.version = current.version + 1
        if "updated_at" not in fields:
            updated.updated_at = _utcnow()
        self._sessions[order_ref] = updated
        return copy.deepcopy(updated)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_session(row: SigningOrder) -> SigningSession:
    return SigningSession(
        order_ref=row.order_ref,
        document_ref=row.document_ref,
        signer=Signer(email=row.signer_email, name=row.signer_name),
        status=row.status,
        session_id=row.session_id,
        title=row.title,
        idempotency_key=row.idempotency_key,
        extra_claims=dict(row.extra_claims or {}),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        identity_verified_at=_aware(row.identity_verified_at),
        awaiting_signature_at=_aware(row.awaiting_signature_at),
        completed_at=_aware(row.completed_at),
        identity_claims=row.identity_claims,
        signature_data=row.signature_data,
        signed_document_url=row.signed_document_url,
        failure_reason=row.failure_reason,
        last_error=row.last_error,
        version=row.version,
    )


class DatabaseOrderStore(OrderStore):
    """SQLAlchemy backed store over the ``signing_orders`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_by_field(self, key: str, value: Any) -> SigningSession | None:
        _check_lookup(key)
        if value is None:
            return None
        async with self._session_factory() as session:
            result = await session.execute(select(SigningOrder).where(getattr(SigningOrder, key) == value))
            row = result.scalars().first()
            return _to_session(row) if row is not None else None

    async def update_fields(
        self,
        order_ref: str,
        fields: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> SigningSession:
        _check_fields(fields)
        values = _row_values(fields)
        async with session_scope(self._session_factory) as session:
            # compare-and-set on the version column
            statement = update(SigningOrder).where(SigningOrder.order_ref == order_ref)
            if expected_version is not None:
                statement = statement.where(SigningOrder.version == expected_version)
            result = await session.execute(
                statement.values(**values, version=SigningOrder.version + 1).execution_options(
                    synchronize_session=False
                )
            )

            if result.rowcount == 0:
                current = await session.get(SigningOrder, order_ref)
                if current is not None or expected_version not in (None, 0):
                    actual = current.version if current is not None else 0
                    raise StaleSessionError(order_ref, expected_version, actual)
                row = SigningOrder(order_ref=order_ref, version=1, **{"extra_claims": {}, **values})
                session.add(row)
                await session.flush()
            else:
                row = await session.get(SigningOrder, order_ref, populate_existing=True)

            logger.debug("order_store.updated", order_ref=order_ref, fields=sorted(fields), version=row.version)
            return _to_session(row)


def _row_values(fields: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, value in fields.items():
        if name == "signer":
            values["signer_email"] = value.email
            values["signer_name"] = value.name
        elif name != "version":
            values[name] = value
    return values
