from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from utilitysign.models.signing import SigningStatus
from utilitysign.schemas.common import ORMModel


class SignerIn(BaseModel):
    name: str = Field(description="Full name of the signer")
    email: str


class SignerRead(ORMModel):
    name: str
    email: str


class StartSessionRequest(BaseModel):
    order_ref: str = Field(min_length=1, max_length=64)
    document_ref: str = Field(default="", max_length=128)
    signer: SignerIn
    extra_claims: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, max_length=128)


class LastError(BaseModel):
    kind: str
    step: str
    message: str
    retryable: bool


class SigningSessionRead(ORMModel):
    order_ref: str
    session_id: str | None
    document_ref: str
    signer: SignerRead
    status: SigningStatus
    title: str | None = None
    created_at: datetime
    updated_at: datetime
    identity_verified_at: datetime | None = None
    awaiting_signature_at: datetime | None = None
    completed_at: datetime | None = None
    signed_document_url: str | None = None
    failure_reason: str | None = None
    last_error: LastError | None = None
    is_terminal: bool


class StartSessionResponse(BaseModel):
    success: bool = True
    reused: bool = False
    correlation_id: str | None = None
    session: SigningSessionRead


class SigningActionResponse(BaseModel):
    success: bool = True
    disposition: str
    reason: str | None = None
    session: SigningSessionRead | None = None
