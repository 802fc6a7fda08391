"""
HMAC-SHA256 verification of inbound provider webhooks.
"""

import hashlib
import hmac
from typing import Optional

from utilitysign.core.logging import get_logger

from .base import WebhookVerificationError

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Constant-time check of ``signature_header`` against the HMAC of the exact raw bytes."""
    if not signature_header or not secret:
        return False
    provided = signature_header.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


class WebhookVerifier:
    """Verifies webhook authenticity with a configured shared secret.

    Without a secret every delivery is rejected, unless ``allow_unsigned`` was
    set explicitly, in which case verification is skipped and each skipped
    delivery is logged.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        *,
        allow_unsigned: bool = False,
        header_name: str = "X-Criipto-Signature",
    ):
        self.secret = secret or None
        self.allow_unsigned = allow_unsigned
        self.header_name = header_name

    @classmethod
    def from_settings(cls, settings) -> "WebhookVerifier":
        return cls(
            settings.webhook_secret,
            allow_unsigned=settings.allow_unsigned_webhooks,
            header_name=settings.webhook_signature_header,
        )

    @property
    def enabled(self) -> bool:
        return self.secret is not None

    def verify(self, raw_body: bytes, signature_header: Optional[str], secret: Optional[str] = None) -> bool:
        secret = secret if secret is not None else self.secret
        if not secret:
            if self.allow_unsigned:
                logger.warning("webhook.signature.verification_disabled", header=self.header_name)
                return True
            logger.error("webhook.signature.secret_missing", header=self.header_name)
            return False

        if not signature_header:
            logger.warning("webhook.signature.missing", header=self.header_name)
            return False

        if not verify_signature(raw_body, signature_header, secret):
            logger.warning("webhook.signature.invalid", header=self.header_name, body_bytes=len(raw_body))
            return False
        return True

    def require(self, raw_body: bytes, signature_header: Optional[str]) -> None:
        """Raise WebhookVerificationError unless the delivery verifies."""
        if not self.verify(raw_body, signature_header):
            raise WebhookVerificationError("Invalid webhook signature", error_code="invalid_signature")
