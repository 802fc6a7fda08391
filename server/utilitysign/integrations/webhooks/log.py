from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass(slots=True)
class WebhookDelivery:
    endpoint: str
    outcome: str
    event_type: str | None = None
    session_id: str | None = None
    order_ref: str | None = None
    detail: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WebhookLog:
    """Most recent webhook deliveries, oldest dropped first."""

    def __init__(self, max_entries: int = 100):
        self._entries: deque[WebhookDelivery] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, delivery: WebhookDelivery) -> None:
        self._entries.append(delivery)

    def entries(self, limit: int | None = None) -> list[dict[str, Any]]:
        newest_first = list(reversed(self._entries))
        if limit is not None:
            newest_first = newest_first[:limit]
        return [{**asdict(entry), "received_at": entry.received_at.isoformat()} for entry in newest_first]
