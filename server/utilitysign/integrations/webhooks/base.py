"""
Webhook Base Classes

Normalized webhook event and the exceptions raised while verifying and
applying provider deliveries.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from utilitysign.models.signing import SigningEvent


class WebhookSource:
    LIFECYCLE = "lifecycle"
    COMPLETION = "completion"
    FALLBACK = "fallback"
    LOCAL = "local"


@dataclass
class WebhookEvent:
    """Provider event addressed by session id, order reference, or both."""
    type: SigningEvent
    payload: Dict[str, Any]
    session_id: Optional[str] = None
    order_ref_meta: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = WebhookSource.LIFECYCLE
    identity_claims: Optional[Dict[str, Any]] = None
    signature_data: Optional[Dict[str, Any]] = None
    document_url: Optional[str] = None
    reason: Optional[str] = None


class WebhookError(Exception):
    """Base class for webhook processing errors."""

    status_code = 400

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code
        self.details = details or {}


class WebhookVerificationError(WebhookError):
    """Signature missing or invalid."""

    status_code = 401


class WebhookPayloadError(WebhookError):
    """Body is not a well-formed webhook payload."""


class WebhookIntegrityError(WebhookError):
    """Session id and order reference resolve to different signing sessions."""
