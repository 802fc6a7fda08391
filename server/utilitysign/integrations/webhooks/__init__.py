"""
Signing provider webhooks: authenticity checks, payload parsing and a bounded delivery log.
"""

from .base import (
    WebhookError,
    WebhookEvent,
    WebhookIntegrityError,
    WebhookPayloadError,
    WebhookSource,
    WebhookVerificationError,
)
from .events import completion_event, event_for_provider_status, parse_completion_callback, parse_lifecycle_event
from .log import WebhookDelivery, WebhookLog
from .verifier import WebhookVerifier, compute_signature, verify_signature

__all__ = [
    "WebhookDelivery",
    "WebhookError",
    "WebhookEvent",
    "WebhookIntegrityError",
    "WebhookLog",
    "WebhookPayloadError",
    "WebhookSource",
    "WebhookVerificationError",
    "WebhookVerifier",
    "completion_event",
    "compute_signature",
    "event_for_provider_status",
    "parse_completion_callback",
    "parse_lifecycle_event",
    "verify_signature",
]
