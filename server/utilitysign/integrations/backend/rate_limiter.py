"""
Outbound rate limiting for the request gateway.

FixedWindowRateLimiter keeps the window in process. RedisRateLimiter shares one
budget between processes with an atomic INCR/EXPIRE per window key.
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from redis.asyncio import Redis

from utilitysign.core.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "utilitysign:gateway:ratelimit:"


@dataclass(slots=True)
class RateLimitWindow:
    remaining: int
    limit: int
    reset_at: float

    def as_dict(self, now: float) -> dict:
        return {
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at,
            "retry_after_seconds": max(0, math.ceil(self.reset_at - now)) if self.remaining <= 0 else 0,
        }


class RateLimiter(ABC):
    """Permit source consulted before every outbound HTTP attempt."""

    @abstractmethod
    async def try_acquire(self) -> bool:
        """Consume one permit; False when the current window is exhausted."""

    @abstractmethod
    async def window(self) -> RateLimitWindow:
        """Snapshot of the current window."""

    @abstractmethod
    async def retry_after(self) -> float:
        """Seconds until a permit becomes available again."""

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Fold server-reported limits back into the local view. Optional."""

    def reset_if_expired(self) -> bool:
        return False


class FixedWindowRateLimiter(RateLimiter):
    """In-process fixed window counter."""

    def __init__(self, limit: int = 60, window_seconds: float = 60.0, clock: Callable[[], float] = time.time):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._window = RateLimitWindow(remaining=limit, limit=limit, reset_at=clock() + window_seconds)

    def reset_if_expired(self) -> bool:
        now = self._clock()
        if now >= self._window.reset_at:
            self._window = RateLimitWindow(remaining=self.limit, limit=self.limit, reset_at=now + self.window_seconds)
            return True
        return False

    async def try_acquire(self) -> bool:
        self.reset_if_expired()
        if self._window.remaining <= 0:
            logger.warning("gateway.ratelimit.exhausted", limit=self._window.limit, reset_at=self._window.reset_at)
            return False
        self._window.remaining -= 1
        return True

    async def window(self) -> RateLimitWindow:
        self.reset_if_expired()
        return RateLimitWindow(self._window.remaining, self._window.limit, self._window.reset_at)

    async def retry_after(self) -> float:
        self.reset_if_expired()
        if self._window.remaining > 0:
            return 0.0
        return max(0.0, self._window.reset_at - self._clock())

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        limit = _parse_int(headers.get("X-RateLimit-Limit"))
        remaining = _parse_int(headers.get("X-RateLimit-Remaining"))
        reset = _parse_int(headers.get("X-RateLimit-Reset"))

        if limit is not None and limit >= 1:
            self._window.limit = limit
        if remaining is not None:
            self._window.remaining = min(max(remaining, 0), self._window.limit)
        else:
            self._window.remaining = min(self._window.remaining, self._window.limit)
        if reset is not None and reset > 0:
            self._window.reset_at = float(reset)


class RedisRateLimiter(RateLimiter):
    """Fixed window shared through redis; one key per window index."""

    def __init__(
        self,
        redis_client: Redis,
        limit: int = 60,
        window_seconds: float = 60.0,
        key_prefix: str = KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.redis = redis_client
        self.limit = limit
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._clock = clock

    def _current(self) -> tuple[str, float]:
        index = int(self._clock() // self.window_seconds)
        return f"{self.key_prefix}{index}", (index + 1) * self.window_seconds

    async def try_acquire(self) -> bool:
        key, _ = self._current()
        async with self.redis.pipeline(transaction=True) as pipe:  # type: ignore[attr-defined]
            pipe.incr(key)
            pipe.expire(key, int(math.ceil(self.window_seconds)) * 2)
            count, _ = await pipe.execute()
        if int(count) > self.limit:
            logger.warning("gateway.ratelimit.exhausted", limit=self.limit, backend="redis")
            return False
        return True

    async def window(self) -> RateLimitWindow:
        key, reset_at = self._current()
        used = _parse_int(await self.redis.get(key)) or 0
        return RateLimitWindow(remaining=max(self.limit - used, 0), limit=self.limit, reset_at=reset_at)

    async def retry_after(self) -> float:
        current = await self.window()
        if current.remaining > 0:
            return 0.0
        return max(0.0, current.reset_at - self._clock())


def _parse_int(value: Optional[object]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", "ignore")
    try:
        return int(str(value).strip())
    except ValueError:
        return None
