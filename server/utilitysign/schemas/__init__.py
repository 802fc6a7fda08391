from utilitysign.schemas.common import ErrorDetail, ErrorResponse, HealthResponse
from utilitysign.schemas.signing import (
    SignerIn,
    SigningActionResponse,
    SigningSessionRead,
    StartSessionRequest,
    StartSessionResponse,
)
from utilitysign.schemas.webhook import CompletionCallback, LifecycleEnvelope, WebhookAck

__all__ = [
    "CompletionCallback",
    "ErrorDetail",
    "ErrorResponse",
    "HealthResponse",
    "LifecycleEnvelope",
    "SignerIn",
    "SigningActionResponse",
    "SigningSessionRead",
    "StartSessionRequest",
    "StartSessionResponse",
    "WebhookAck",
]
