from utilitysign.models.event import EventOutbox, EventStatus
from utilitysign.models.signing import (
    TERMINAL_STATUSES,
    SigningEvent,
    SigningOrder,
    SigningStatus,
)

__all__ = [
    "EventOutbox",
    "EventStatus",
    "SigningEvent",
    "SigningOrder",
    "SigningStatus",
    "TERMINAL_STATUSES",
]
