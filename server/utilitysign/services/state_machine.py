from __future__ import annotations

from dataclasses import dataclass

from utilitysign.models.signing import TERMINAL_STATUSES, SigningEvent, SigningStatus


ALLOWED_TRANSITIONS: dict[SigningStatus, dict[SigningEvent, SigningStatus]] = {
    SigningStatus.CREATED: {
        SigningEvent.SESSION_STARTED: SigningStatus.AWAITING_IDENTITY,
    },
    SigningStatus.AWAITING_IDENTITY: {
        SigningEvent.AUTHENTICATION_SUCCEEDED: SigningStatus.IDENTITY_VERIFIED,
        SigningEvent.AUTHENTICATION_FAILED: SigningStatus.IDENTITY_FAILED,
        SigningEvent.AUTHENTICATION_CANCELLED: SigningStatus.IDENTITY_CANCELLED,
        # outcome delivered before the identity event
        SigningEvent.SIGNATURE_COMPLETED: SigningStatus.SIGNED,
        SigningEvent.SIGNATURE_FAILED: SigningStatus.SIGNATURE_FAILED,
        SigningEvent.SIGNATURE_REJECTED: SigningStatus.SIGNATURE_FAILED,
        SigningEvent.SIGNATURE_EXPIRED: SigningStatus.EXPIRED,
    },
    SigningStatus.IDENTITY_VERIFIED: {
        SigningEvent.SIGNATURE_REQUESTED: SigningStatus.AWAITING_SIGNATURE,
        SigningEvent.SIGNATURE_COMPLETED: SigningStatus.SIGNED,
        SigningEvent.SIGNATURE_FAILED: SigningStatus.SIGNATURE_FAILED,
        SigningEvent.SIGNATURE_REJECTED: SigningStatus.SIGNATURE_FAILED,
    },
    SigningStatus.AWAITING_SIGNATURE: {
        SigningEvent.SIGNATURE_COMPLETED: SigningStatus.SIGNED,
        SigningEvent.SIGNATURE_FAILED: SigningStatus.SIGNATURE_FAILED,
        SigningEvent.SIGNATURE_REJECTED: SigningStatus.SIGNATURE_FAILED,
        SigningEvent.SIGNATURE_EXPIRED: SigningStatus.SIGNATURE_FAILED,
    },
    SigningStatus.SIGNED: {},
    SigningStatus.SIGNATURE_FAILED: {},
    SigningStatus.EXPIRED: {},
    SigningStatus.IDENTITY_FAILED: {},
    SigningStatus.IDENTITY_CANCELLED: {},
}

# Statuses the system leaves on its own, without waiting for a provider event.
AUTOMATIC_EVENTS: dict[SigningStatus, SigningEvent] = {
    SigningStatus.IDENTITY_VERIFIED: SigningEvent.SIGNATURE_REQUESTED,
}

NOTIFICATION_TEMPLATES: dict[SigningStatus, str] = {
    SigningStatus.AWAITING_IDENTITY: "signing_started",
    SigningStatus.IDENTITY_VERIFIED: "identity_confirmed",
    SigningStatus.AWAITING_SIGNATURE: "signature_requested",
    SigningStatus.SIGNED: "document_signed",
    SigningStatus.SIGNATURE_FAILED: "signing_failed",
    SigningStatus.IDENTITY_FAILED: "identity_failed",
    SigningStatus.IDENTITY_CANCELLED: "identity_cancelled",
    SigningStatus.EXPIRED: "signing_expired",
}

FAILURE_STEPS: dict[SigningStatus, str] = {
    SigningStatus.IDENTITY_FAILED: "identity",
    SigningStatus.IDENTITY_CANCELLED: "identity",
    SigningStatus.EXPIRED: "identity",
    SigningStatus.SIGNATURE_FAILED: "signature",
}


@dataclass(slots=True)
class TransitionResult:
    succeeded: bool
    target: SigningStatus | None = None
    reason: str | None = None


def is_terminal(status: SigningStatus) -> bool:
    return status in TERMINAL_STATUSES


def resolve_transition(current: SigningStatus, event: SigningEvent) -> TransitionResult:
    if is_terminal(current):
        return TransitionResult(False, reason=f"session already terminal ({current.value})")
    target = ALLOWED_TRANSITIONS.get(current, {}).get(event)
    if target is None:
        return TransitionResult(False, reason=f"event {event.value} not applicable in {current.value}")
    return TransitionResult(True, target=target)


def transition_timestamp_field(target: SigningStatus) -> str | None:
    if target is SigningStatus.IDENTITY_VERIFIED:
        return "identity_verified_at"
    if target is SigningStatus.AWAITING_SIGNATURE:
        return "awaiting_signature_at"
    if is_terminal(target):
        return "completed_at"
    return None


def user_may_retry(target: SigningStatus, event: SigningEvent) -> bool:
    """Whether the signer can start over after this failure."""
    if target is SigningStatus.SIGNATURE_FAILED and event is SigningEvent.SIGNATURE_REJECTED:
        return False
    return target in FAILURE_STEPS
