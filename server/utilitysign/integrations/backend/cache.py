"""
TTL response cache for idempotent gateway reads.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from utilitysign.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    stored_at: float
    expires_at: float
    hit_count: int = 0

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


def build_cache_key(method: str, endpoint: str, body: Any = None) -> str:
    if body is None:
        serialized = ""
    elif isinstance(body, (bytes, bytearray)):
        serialized = bytes(body).decode("utf-8", errors="replace")
    elif isinstance(body, str):
        serialized = body
    else:
        serialized = json.dumps(body, sort_keys=True, separators=(",", ":"))
    return f"{method.upper()}:{endpoint}:{serialized}"


class ResponseCache:
    """Keyed store where entries past their expiry are logically absent."""

    def __init__(self, default_ttl: float = 300.0, clock: Callable[[], float] = time.time):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        entry.hit_count += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> CacheEntry:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        now = self._clock()
        entry = CacheEntry(key=key, value=value, stored_at=now, expires_at=now + ttl)
        self._entries[key] = entry
        return entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Evict every expired entry; returns how many were removed."""
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("gateway.cache.swept", evicted=len(stale), remaining=len(self._entries))
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "size": len(self._entries),
            "entries": [
                {
                    "key": entry.key,
                    "hits": entry.hit_count,
                    "age_seconds": round(now - entry.stored_at, 3),
                    "expires_in_seconds": round(entry.expires_at - now, 3),
                }
                for entry in self._entries.values()
            ],
        }
