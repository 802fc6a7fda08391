"""
Backend Gateway Base Classes

Result, error and metrics types shared by the request gateway, its cache and
rate limiter, and the signing orchestrator that consumes gateway results.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class HttpMethod(str, Enum):
    """HTTP methods accepted by the gateway."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

    @property
    def is_mutating(self) -> bool:
        return self in (HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH)


class ErrorKind(str, Enum):
    """Machine-readable failure classes surfaced to callers."""
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    SERVER_UNAVAILABLE = "server_unavailable"
    INTEGRITY = "integrity"
    UNKNOWN = "unknown"

    @property
    def is_transient(self) -> bool:
        return self in (ErrorKind.NETWORK, ErrorKind.RATE_LIMITED, ErrorKind.SERVER_UNAVAILABLE)


@dataclass
class GatewayError:
    """Classified failure of a gateway call."""
    kind: ErrorKind
    message: str
    retryable: bool
    user_message: Optional[str] = None
    status_code: Optional[int] = None
    error_code: Optional[str] = None
    validation_errors: Dict[str, List[str]] = field(default_factory=dict)
    retry_after_seconds: Optional[float] = None
    step: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "user_message": self.user_message or self.message,
            "retryable": self.retryable,
            "status_code": self.status_code,
            "error_code": self.error_code,
            "validation_errors": self.validation_errors,
            "step": self.step,
        }


@dataclass
class GatewayResult:
    """Outcome of one logical gateway request (all retry attempts included)."""
    success: bool
    correlation_id: str
    timestamp: datetime
    data: Any = None
    error: Optional[GatewayError] = None
    status_code: Optional[int] = None
    attempts: int = 0
    cache_hit: bool = False

    @classmethod
    def ok(cls, data: Any, *, correlation_id: str, status_code: Optional[int] = None,
           attempts: int = 1, cache_hit: bool = False) -> "GatewayResult":
        return cls(
            success=True,
            data=data,
            correlation_id=correlation_id,
            timestamp=datetime.now(timezone.utc),
            status_code=status_code,
            attempts=attempts,
            cache_hit=cache_hit,
        )

    @classmethod
    def failed(cls, error: GatewayError, *, correlation_id: str, attempts: int = 0) -> "GatewayResult":
        return cls(
            success=False,
            error=error,
            correlation_id=correlation_id,
            timestamp=datetime.now(timezone.utc),
            status_code=error.status_code,
            attempts=attempts,
        )


@dataclass(slots=True)
class RequestMetric:
    """One entry of the gateway's bounded metrics buffer."""
    endpoint: str
    method: str
    status_code: Optional[int]
    latency_ms: float
    correlation_id: str
    cache_hit: bool
    recorded_at: float
    success: bool


@dataclass
class RequestOptions:
    """Per-call options for RequestGateway.request."""
    method: HttpMethod = HttpMethod.GET
    body: Optional[Any] = None
    cacheable: bool = False
    idempotency_key: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    max_attempts: Optional[int] = None
    authenticate: bool = True


class GatewayConfigurationError(Exception):
    """Raised when the gateway is constructed without the identity it needs."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.error_message = message
        self.missing = missing or []
