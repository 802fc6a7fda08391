from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SAEnum, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from utilitysign.db.base import Base
from utilitysign.models.mixins import TimestampMixin, VersionedMixin


class SigningStatus(str, Enum):
    CREATED = "created"
    AWAITING_IDENTITY = "awaiting_identity"
    IDENTITY_VERIFIED = "identity_verified"
    IDENTITY_FAILED = "identity_failed"
    IDENTITY_CANCELLED = "identity_cancelled"
    AWAITING_SIGNATURE = "awaiting_signature"
    SIGNED = "signed"
    SIGNATURE_FAILED = "signature_failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        SigningStatus.SIGNED,
        SigningStatus.SIGNATURE_FAILED,
        SigningStatus.EXPIRED,
        SigningStatus.IDENTITY_FAILED,
        SigningStatus.IDENTITY_CANCELLED,
    }
)


class SigningEvent(str, Enum):
    SESSION_STARTED = "session.started"
    AUTHENTICATION_SUCCEEDED = "authentication.succeeded"
    AUTHENTICATION_FAILED = "authentication.failed"
    AUTHENTICATION_CANCELLED = "authentication.cancelled"
    SIGNATURE_REQUESTED = "signature.requested"
    SIGNATURE_COMPLETED = "signature.completed"
    SIGNATURE_FAILED = "signature.failed"
    SIGNATURE_REJECTED = "signature.rejected"
    SIGNATURE_EXPIRED = "signature.expired"


class SigningOrder(TimestampMixin, VersionedMixin, Base):
    __tablename__ = "signing_orders"

    order_ref: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True, index=True)
    document_ref: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    signer_email: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    signer_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[SigningStatus] = mapped_column(
        SAEnum(SigningStatus), default=SigningStatus.CREATED, nullable=False, index=True
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    extra_claims: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    identity_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    awaiting_signature_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    identity_claims: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    signature_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    signed_document_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[dict | None] = mapped_column(JSON, nullable=True)
