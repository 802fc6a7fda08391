"""
Shared test configuration and fixtures for the UtilitySign gateway test suite.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
import pytest_asyncio

from utilitysign.core.config import Settings
from utilitysign.integrations.backend import (
    FixedWindowRateLimiter,
    GatewayResult,
    RequestGateway,
    ResponseCache,
)
from utilitysign.services.notifications import NotificationSink
from utilitysign.services.order_store import InMemoryOrderStore
from utilitysign.services.signing_orchestrator import SigningOrchestrator

WEBHOOK_SECRET = "test_webhook_secret"
BACKEND_URL = "https://backend.test"


class FakeClock:
    """Controllable wall clock for caches, rate limiters and metrics."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotificationSink(NotificationSink):
    def __init__(self, fail: bool = False):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail = fail

    async def send(self, template: str, order_ref: str, context: Dict[str, Any]) -> None:
        self.sent.append((template, order_ref, context))
        if self.fail:
            raise RuntimeError("smtp unavailable")

    @property
    def templates(self) -> List[str]:
        return [template for template, _, _ in self.sent]


def mock_response(status: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None) -> MagicMock:
    """Async context manager standing in for ``session.request(...)``."""
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.text = AsyncMock(return_value="" if body is None else json.dumps(body))
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def ok_result(data: Any = None, correlation_id: str = "wp-test-1") -> GatewayResult:
    return GatewayResult.ok(data, correlation_id=correlation_id, status_code=200)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep_mock() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def gateway(clock, sleep_mock):
    """Real gateway with deterministic timing; HTTP is patched per test."""
    backend = RequestGateway(
        BACKEND_URL,
        "utilitysign-wordpress-plugin",
        plugin_key="plugin-key-123",
        environment="staging",
        cache=ResponseCache(default_ttl=300, clock=clock),
        rate_limiter=FixedWindowRateLimiter(limit=60, window_seconds=60, clock=clock),
        sleep=sleep_mock,
        random_fn=lambda: 0.0,
        clock=clock,
        monotonic=clock,
    )
    yield backend
    await backend.close()


@pytest.fixture
def stub_gateway() -> Mock:
    """Gateway double for orchestrator and route tests."""
    stub = Mock(spec=RequestGateway)
    stub.environment = "staging"
    stub.create_signing_session.return_value = ok_result({"id": "sess-1", "status": "created"})
    stub.check_completion.return_value = ok_result({"message": "Completion check queued"})
    stub.get_signing_status.return_value = ok_result({"id": "sess-1", "status": "pending"})
    stub.cancel_identity.return_value = ok_result({"success": True})
    stub.health_check.return_value = ok_result({"status": "healthy"})
    stub.metrics_summary.return_value = {
        "total_requests": 0,
        "average_response_time_ms": 0.0,
        "error_rate": 0.0,
        "cache_hit_rate": 0.0,
    }
    stub.cache_stats.return_value = {"size": 0, "entries": []}
    stub.rate_limit_info.return_value = {"remaining": 60, "limit": 60, "reset_at": 0, "retry_after_seconds": 0}
    return stub


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def notifications() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def orchestrator(stub_gateway, order_store, notifications) -> SigningOrchestrator:
    return SigningOrchestrator(
        stub_gateway,
        order_store,
        notifications,
        clock=lambda: datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="staging",
        backend_api_url=BACKEND_URL,
        plugin_key="plugin-key-123",
        webhook_secret=WEBHOOK_SECRET,
        order_store_backend="memory",
        notification_backend="log",
    )
