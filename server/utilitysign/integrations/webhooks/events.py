"""
Parsing of raw provider deliveries into WebhookEvent.

Both parsers run only after the signature over the raw bytes has been checked.
They return None for deliveries that are well formed but carry nothing to act
on (unknown lifecycle types, non-actionable completion statuses).
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import TypeAdapter, ValidationError

from utilitysign.core.logging import get_logger
from utilitysign.models.signing import SigningEvent
from utilitysign.schemas.webhook import (
    RECOGNIZED_LIFECYCLE_TYPES,
    AuthenticationFailed,
    AuthenticationSucceeded,
    CompletionCallback,
    LifecycleEnvelope,
    LifecycleEvent,
    SignatureCompleted,
    SignatureFailed,
)

from .base import WebhookEvent, WebhookPayloadError, WebhookSource

logger = get_logger(__name__)

_lifecycle_adapter: TypeAdapter = TypeAdapter(LifecycleEvent)

PROVIDER_STATUS_EVENTS: Dict[str, SigningEvent] = {
    "signed": SigningEvent.SIGNATURE_COMPLETED,
    "completed": SigningEvent.SIGNATURE_COMPLETED,
    "rejected": SigningEvent.SIGNATURE_REJECTED,
    "declined": SigningEvent.SIGNATURE_REJECTED,
    "failed": SigningEvent.SIGNATURE_FAILED,
    "expired": SigningEvent.SIGNATURE_EXPIRED,
}


def event_for_provider_status(status: Optional[str]) -> Optional[SigningEvent]:
    if not status:
        return None
    return PROVIDER_STATUS_EVENTS.get(status.strip().lower())


def _load_json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise WebhookPayloadError("Webhook body is not valid JSON", error_code="invalid_json") from exc


def _error_reason(error: Any) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or error)
    return str(error)


def parse_lifecycle_event(raw_body: bytes, *, received_at: Optional[datetime] = None) -> Optional[WebhookEvent]:
    """Parse ``{type, data: {session_id, ...}}``; None for unrecognized types."""
    document = _load_json(raw_body)
    try:
        envelope = LifecycleEnvelope.model_validate(document)
    except ValidationError as exc:
        raise WebhookPayloadError("Malformed lifecycle webhook", error_code="invalid_payload",
                                  details={"errors": exc.errors(include_url=False)}) from exc

    if envelope.type not in RECOGNIZED_LIFECYCLE_TYPES:
        logger.info("webhook.event.unrecognized", event_type=envelope.type)
        return None

    try:
        parsed = _lifecycle_adapter.validate_python(document)
    except ValidationError as exc:
        raise WebhookPayloadError("Malformed lifecycle webhook", error_code="invalid_payload",
                                  details={"errors": exc.errors(include_url=False)}) from exc

    data = parsed.data
    if not data.session_id and not data.metadata.order_ref:
        raise WebhookPayloadError("Webhook does not identify a signing session", error_code="missing_session_id")

    event = WebhookEvent(
        type=SigningEvent(parsed.type),
        payload=envelope.data,
        session_id=data.session_id,
        order_ref_meta=data.metadata.order_ref,
        source=WebhookSource.LIFECYCLE,
    )
    if received_at is not None:
        event.received_at = received_at

    if isinstance(parsed, AuthenticationSucceeded):
        event.identity_claims = data.user
    elif isinstance(parsed, (AuthenticationFailed, SignatureFailed)):
        event.reason = _error_reason(data.error)
    elif isinstance(parsed, SignatureCompleted):
        event.signature_data = data.signature
        event.document_url = data.document_url
    return event


def parse_completion_callback(raw_body: bytes, *, received_at: Optional[datetime] = None) -> Optional[WebhookEvent]:
    """Parse ``{id, status, metadata: {orderRef, hostOrderRef}, documentUrl}``."""
    document = _load_json(raw_body)
    try:
        callback = CompletionCallback.model_validate(document)
    except ValidationError as exc:
        raise WebhookPayloadError("Malformed completion callback", error_code="invalid_payload",
                                  details={"errors": exc.errors(include_url=False)}) from exc

    return completion_event(
        session_id=callback.id,
        status=callback.status,
        order_ref_meta=callback.metadata.order_ref,
        document_url=callback.document_url,
        reason=callback.reason,
        payload=document,
        source=WebhookSource.COMPLETION,
        received_at=received_at,
    )


def completion_event(
    *,
    session_id: Optional[str],
    status: Optional[str],
    order_ref_meta: Optional[str] = None,
    document_url: Optional[str] = None,
    reason: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    source: str = WebhookSource.COMPLETION,
    received_at: Optional[datetime] = None,
) -> Optional[WebhookEvent]:
    """Build the event for a provider completion status, or None when it is not actionable."""
    event_type = event_for_provider_status(status)
    if event_type is None:
        logger.info("webhook.completion.status_ignored", status=status, session_id=session_id)
        return None

    event = WebhookEvent(
        type=event_type,
        payload=payload or {},
        session_id=session_id,
        order_ref_meta=order_ref_meta,
        source=source,
        document_url=document_url if event_type is SigningEvent.SIGNATURE_COMPLETED else None,
    )
    if event_type is not SigningEvent.SIGNATURE_COMPLETED:
        event.reason = reason or f"Signing {status.strip().lower()}"
    if received_at is not None:
        event.received_at = received_at
    return event
