from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

CORRELATION_PREFIX = "wp"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class CorrelationContext:
    """Trace identifier for one logical outbound call, retries included."""

    id: str
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def new(cls, prefix: str = CORRELATION_PREFIX) -> CorrelationContext:
        created_at = _now()
        return cls(id=f"{prefix}-{uuid.uuid4().hex[:12]}-{int(created_at.timestamp() * 1000)}", created_at=created_at)

    @property
    def timestamp_ms(self) -> int:
        return int(self.created_at.timestamp() * 1000)

    @contextmanager
    def bound(self) -> Iterator[CorrelationContext]:
        """Attach the correlation id to every log line emitted inside the block."""
        with structlog.contextvars.bound_contextvars(correlation_id=self.id):
            yield self
