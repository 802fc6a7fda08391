"""
Signing Orchestrator

Starts signing sessions through the request gateway and applies verified
provider events to the per-order signing state machine. Transitions for one
order are applied serially; notifications are best effort.
"""

from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from utilitysign.core.logging import get_logger
from utilitysign.integrations.backend import ErrorKind, GatewayError, RequestGateway
from utilitysign.integrations.webhooks import (
    WebhookEvent,
    WebhookIntegrityError,
    WebhookSource,
    completion_event,
)
from utilitysign.models.signing import SigningEvent, SigningStatus
from utilitysign.services.notifications import NotificationSink
from utilitysign.services.order_store import OrderStore, Signer, SigningSession, StaleSessionError
from utilitysign.services.state_machine import (
    AUTOMATIC_EVENTS,
    FAILURE_STEPS,
    NOTIFICATION_TEMPLATES,
    resolve_transition,
    transition_timestamp_field,
    user_may_retry,
)
from utilitysign.services.validators import build_title, normalize_extra_claims, validate_signer

logger = get_logger(__name__)

SESSION_ID_KEYS = ("sessionId", "session_id", "signingRequestId", "id")
MAX_CONFLICT_RETRIES = 3
REQUEST_DESCRIPTION = "Document signing request initiated from WordPress plugin"


class EventDisposition(str, Enum):
    APPLIED = "applied"
    UNKNOWN_SESSION = "unknown_session"
    ALREADY_TERMINAL = "already_terminal"
    NOT_APPLICABLE = "not_applicable"
    IGNORED = "ignored"
    GATEWAY_FAILED = "gateway_failed"


@dataclass
class StartSessionResult:
    success: bool
    correlation_id: str | None = None
    session: SigningSession | None = None
    error: GatewayError | None = None
    reused: bool = False


@dataclass
class ApplyResult:
    disposition: EventDisposition
    session: SigningSession | None = None
    transitions: list[SigningStatus] = field(default_factory=list)
    reason: str | None = None
    error: GatewayError | None = None

    @property
    def applied(self) -> bool:
        return self.disposition is EventDisposition.APPLIED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _at_step(error: GatewayError, step: str) -> GatewayError:
    if error.step is None:
        error.step = step
    return error


def _extract_session_id(data: Any) -> str | None:
    if not isinstance(data, Mapping):
        return None
    for container in (data, data.get("data")):
        if isinstance(container, Mapping):
            for key in SESSION_ID_KEYS:
                value = container.get(key)
                if value:
                    return str(value)
    return None


class SigningOrchestrator:
    def __init__(
        self,
        gateway: RequestGateway,
        store: OrderStore,
        notifications: NotificationSink,
        *,
        title_max_length: int = 200,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.gateway = gateway
        self.store = store
        self.notifications = notifications
        self.title_max_length = title_max_length
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, order_ref: str) -> asyncio.Lock:
        lock = self._locks.get(order_ref)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_ref] = lock
        return lock

    async def get_session(self, order_ref: str) -> SigningSession | None:
        return await self.store.get_by_field("order_ref", order_ref)

    # Session creation

    async def start_session(
        self,
        order_ref: str,
        document_ref: str,
        signer: Signer | Mapping[str, Any],
        extra_claims: Mapping[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> StartSessionResult:
        """
        Create a provider signing session for an order.

        Args:
            order_ref: Host order reference the session is bound to
            document_ref: Document/order association sent to the backend
            signer: Signer name and email
            extra_claims: Additional signer fields forwarded to the backend
            idempotency_key: Key for safe resubmission; a repeated key returns
                the session already created with it

        Returns:
            StartSessionResult with the persisted session, or the gateway's
            classified error unchanged

        Raises:
            SignerValidationError: If the signer or national id is invalid
            ValueError: If order_ref is empty
        """
        if not order_ref or not str(order_ref).strip():
            raise ValueError("order_ref is required")
        if isinstance(signer, Mapping):
            signer = validate_signer(signer.get("name"), signer.get("email"))
        else:
            signer = validate_signer(signer.name, signer.email)
        claims = normalize_extra_claims(extra_claims)
        title = build_title(signer.name, self.title_max_length)

        async with self._lock_for(order_ref):
            existing = await self.store.get_by_field("order_ref", order_ref)
            if existing is not None and existing.session_id:
                if idempotency_key and existing.idempotency_key == idempotency_key and not existing.is_terminal:
                    logger.info("signing.session.reused", order_ref=order_ref, session_id=existing.session_id)
                    return StartSessionResult(True, session=existing, reused=True)
                if existing.status is SigningStatus.SIGNED:
                    return StartSessionResult(
                        False,
                        error=GatewayError(
                            kind=ErrorKind.VALIDATION,
                            message=f"Order {order_ref} is already signed",
                            retryable=False,
                            error_code="already_signed",
                            step="identity",
                        ),
                    )

            body: dict[str, Any] = {
                **claims,
                "documentId": document_ref or None,
                "orderRef": order_ref,
                "title": title,
                "description": REQUEST_DESCRIPTION,
                "signerEmail": signer.email,
                "signerName": signer.name,
                "environment": self.gateway.environment,
            }
            if idempotency_key:
                body["idempotencyKey"] = idempotency_key

            result = await self.gateway.create_signing_session(body, idempotency_key=idempotency_key)
            if not result.success:
                logger.warning(
                    "signing.session.start_failed",
                    order_ref=order_ref,
                    kind=result.error.kind.value,
                    retryable=result.error.retryable,
                )
                error = _at_step(result.error, "identity")
                return StartSessionResult(False, correlation_id=result.correlation_id, error=error)

            session_id = _extract_session_id(result.data)
            if session_id is None:
                return StartSessionResult(
                    False,
                    correlation_id=result.correlation_id,
                    error=GatewayError(
                        kind=ErrorKind.UNKNOWN,
                        message="Backend response did not include a session id",
                        retryable=False,
                        error_code="missing_session_id",
                        step="identity",
                    ),
                )

            owner = await self.store.get_by_field("session_id", session_id)
            if owner is not None and owner.order_ref != order_ref:
                logger.error("signing.session.integrity", session_id=session_id, order_ref=order_ref,
                             owner=owner.order_ref)
                return StartSessionResult(
                    False,
                    correlation_id=result.correlation_id,
                    error=GatewayError(
                        kind=ErrorKind.INTEGRITY,
                        message=f"Session {session_id} already belongs to another order",
                        retryable=False,
                        error_code="session_conflict",
                        step="identity",
                    ),
                )

            transition = resolve_transition(SigningStatus.CREATED, SigningEvent.SESSION_STARTED)
            now = self._clock()
            session = await self.store.update_fields(
                order_ref,
                {
                    "document_ref": document_ref,
                    "signer": signer,
                    "title": title,
                    "extra_claims": claims,
                    "session_id": session_id,
                    "idempotency_key": idempotency_key or f"POST-{result.correlation_id}",
                    "status": transition.target,
                    "created_at": now,
                    "updated_at": now,
                    "identity_verified_at": None,
                    "awaiting_signature_at": None,
                    "completed_at": None,
                    "identity_claims": None,
                    "signature_data": None,
                    "signed_document_url": None,
                    "failure_reason": None,
                    "last_error": None,
                },
            )
            logger.info("signing.session.started", order_ref=order_ref, session_id=session_id,
                        correlation_id=result.correlation_id)
            await self._notify(session, transition.target, None)
            return StartSessionResult(True, correlation_id=result.correlation_id, session=session)

    # Event application

    async def apply_event(self, event: WebhookEvent) -> ApplyResult:
        """
        Apply one verified provider event.

        Unknown sessions, terminal sessions and events with no transition from
        the current status are acknowledged and ignored.

        Raises:
            WebhookIntegrityError: If session id and order reference resolve
                to different sessions
        """
        located = await self._locate(event)
        if located is None:
            logger.warning(
                "signing.event.unknown_session",
                event_type=event.type.value,
                session_id=event.session_id,
                order_ref=event.order_ref_meta,
            )
            return ApplyResult(EventDisposition.UNKNOWN_SESSION, reason="no matching signing session")

        async with self._lock_for(located.order_ref):
            for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
                session = await self.store.get_by_field("order_ref", located.order_ref)
                try:
                    return await self._apply_locked(session, event)
                except StaleSessionError as exc:
                    if attempt == MAX_CONFLICT_RETRIES:
                        raise
                    logger.warning("signing.event.conflict", order_ref=exc.order_ref, expected=exc.expected,
                                   actual=exc.actual, attempt=attempt)

    async def _locate(self, event: WebhookEvent) -> SigningSession | None:
        by_session = await self.store.get_by_field("session_id", event.session_id) if event.session_id else None
        by_order = await self.store.get_by_field("order_ref", event.order_ref_meta) if event.order_ref_meta else None

        mismatch = False
        if by_session is not None and by_order is not None:
            mismatch = by_session.order_ref != by_order.order_ref
        elif by_session is None and by_order is not None and event.session_id:
            mismatch = by_order.session_id is not None and by_order.session_id != event.session_id

        if mismatch:
            logger.error(
                "signing.event.integrity_mismatch",
                event_type=event.type.value,
                session_id=event.session_id,
                order_ref=event.order_ref_meta,
            )
            raise WebhookIntegrityError(
                "Session id and order reference refer to different signing sessions",
                error_code="session_mismatch",
                details={"session_id": event.session_id, "order_ref": event.order_ref_meta},
            )
        return by_session or by_order

    async def _apply_locked(self, session: SigningSession, event: WebhookEvent) -> ApplyResult:
        if session.is_terminal:
            logger.info("signing.event.terminal_ignored", order_ref=session.order_ref, status=session.status.value,
                        event_type=event.type.value)
            return ApplyResult(EventDisposition.ALREADY_TERMINAL, session=session, reason=session.status.value)

        result = resolve_transition(session.status, event.type)
        if not result.succeeded:
            logger.info("signing.event.not_applicable", order_ref=session.order_ref, status=session.status.value,
                        event_type=event.type.value)
            return ApplyResult(EventDisposition.NOT_APPLICABLE, session=session, reason=result.reason)

        transitions: list[SigningStatus] = []
        session = await self._transition(session, result.target, event)
        transitions.append(session.status)

        follow_up = AUTOMATIC_EVENTS.get(session.status)
        while follow_up is not None:
            step = resolve_transition(session.status, follow_up)
            if not step.succeeded:
                break
            system_event = WebhookEvent(type=follow_up, payload={}, session_id=session.session_id,
                                        order_ref_meta=session.order_ref, source=WebhookSource.LOCAL)
            session = await self._transition(session, step.target, system_event)
            transitions.append(session.status)
            follow_up = AUTOMATIC_EVENTS.get(session.status)

        return ApplyResult(EventDisposition.APPLIED, session=session, transitions=transitions)

    async def _transition(self, session: SigningSession, target: SigningStatus, event: WebhookEvent) -> SigningSession:
        now = self._clock()
        fields: dict[str, Any] = {"status": target, "updated_at": now}

        timestamp_field = transition_timestamp_field(target)
        if timestamp_field and getattr(session, timestamp_field) is None:
            fields[timestamp_field] = now
        if target is SigningStatus.SIGNED and session.identity_verified_at is None:
            fields["identity_verified_at"] = now

        if event.identity_claims is not None:
            fields["identity_claims"] = event.identity_claims
        if event.signature_data is not None:
            fields["signature_data"] = event.signature_data
        if event.document_url:
            fields["signed_document_url"] = event.document_url

        if target in FAILURE_STEPS:
            reason = event.reason or target.value.replace("_", " ")
            fields["failure_reason"] = reason
            fields["last_error"] = {
                "kind": event.type.value,
                "step": FAILURE_STEPS[target],
                "message": reason,
                "retryable": user_may_retry(target, event.type),
            }

        previous = session.status
        updated = await self.store.update_fields(session.order_ref, fields, expected_version=session.version)
        logger.info(
            "signing.transition.applied",
            order_ref=updated.order_ref,
            session_id=updated.session_id,
            from_status=previous.value,
            to_status=target.value,
            event_type=event.type.value,
            source=event.source,
        )
        await self._notify(updated, target, event)
        return updated

    async def _notify(self, session: SigningSession, target: SigningStatus, event: WebhookEvent | None) -> None:
        template = NOTIFICATION_TEMPLATES.get(target)
        if template is None:
            return
        context: dict[str, Any] = {
            "order_ref": session.order_ref,
            "session_id": session.session_id,
            "document_ref": session.document_ref,
            "status": target.value,
            "signer_email": session.signer.email,
            "signer_name": session.signer.name,
        }
        if target is SigningStatus.SIGNED:
            context["signed_document_url"] = session.signed_document_url
        if session.last_error and target in FAILURE_STEPS:
            context.update(
                step=session.last_error["step"],
                reason=session.last_error["message"],
                retryable=session.last_error["retryable"],
            )
        try:
            await self.notifications.send(template, session.order_ref, context)
        except Exception as exc:
            logger.error("signing.notification.failed", template=template, order_ref=session.order_ref,
                         error=str(exc))

    # Fallback completion and cancellation

    async def trigger_completion(self, order_ref: str) -> ApplyResult:
        """
        Force a completion check for an order after the provider redirect.

        Safe to call repeatedly: a terminal session is returned untouched
        without contacting the backend.
        """
        session = await self.store.get_by_field("order_ref", order_ref)
        if session is None:
            return ApplyResult(EventDisposition.UNKNOWN_SESSION, reason="no matching signing session")
        if session.is_terminal:
            return ApplyResult(EventDisposition.ALREADY_TERMINAL, session=session, reason=session.status.value)
        if not session.session_id:
            return ApplyResult(EventDisposition.NOT_APPLICABLE, session=session, reason="session not started")

        result = await self.gateway.check_completion(session.session_id)
        if not result.success:
            return ApplyResult(EventDisposition.GATEWAY_FAILED, session=session,
                               error=_at_step(result.error, "signature"))

        data = result.data if isinstance(result.data, Mapping) else {}
        if not data.get("status"):
            status_result = await self.gateway.get_signing_status(session.session_id)
            if not status_result.success:
                return ApplyResult(EventDisposition.GATEWAY_FAILED, session=session,
                                   error=_at_step(status_result.error, "signature"))
            data = status_result.data if isinstance(status_result.data, Mapping) else {}

        event = completion_event(
            session_id=session.session_id,
            status=data.get("status"),
            order_ref_meta=order_ref,
            document_url=data.get("documentUrl") or data.get("signedDocumentUrl"),
            reason=data.get("reason") or data.get("message"),
            payload=dict(data),
            source=WebhookSource.FALLBACK,
        )
        if event is None:
            return ApplyResult(EventDisposition.IGNORED, session=session,
                               reason=f"provider status {data.get('status')!r} is not final")
        return await self.apply_event(event)

    async def cancel_session(self, session_id: str) -> ApplyResult:
        """Cancel an in-flight identity verification with the provider, then locally."""
        result = await self.gateway.cancel_identity(session_id)
        session = await self.store.get_by_field("session_id", session_id)
        if not result.success:
            return ApplyResult(EventDisposition.GATEWAY_FAILED, session=session,
                               error=_at_step(result.error, "identity"))
        if session is None:
            logger.warning("signing.cancel.unknown_session", session_id=session_id)
            return ApplyResult(EventDisposition.UNKNOWN_SESSION, reason="no matching signing session")

        return await self.apply_event(
            WebhookEvent(
                type=SigningEvent.AUTHENTICATION_CANCELLED,
                payload={"sessionId": session_id},
                session_id=session_id,
                source=WebhookSource.LOCAL,
                reason="Cancelled by user",
            )
        )
