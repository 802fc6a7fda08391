"""
Backend gateway integration.

RequestGateway talks to the UtilitySign backend (and through it the
identity/signing provider) with caching, rate limiting and retries.
"""

from .base import (
    ErrorKind,
    GatewayConfigurationError,
    GatewayError,
    GatewayResult,
    HttpMethod,
    RequestMetric,
    RequestOptions,
)
from .cache import CacheEntry, ResponseCache, build_cache_key
from .client import RequestGateway
from .rate_limiter import FixedWindowRateLimiter, RateLimiter, RateLimitWindow, RedisRateLimiter

__all__ = [
    "CacheEntry",
    "ErrorKind",
    "FixedWindowRateLimiter",
    "GatewayConfigurationError",
    "GatewayError",
    "GatewayResult",
    "HttpMethod",
    "RateLimitWindow",
    "RateLimiter",
    "RedisRateLimiter",
    "RequestGateway",
    "RequestMetric",
    "RequestOptions",
    "ResponseCache",
    "build_cache_key",
]
