"""
Settings validation tests.
"""

import pytest
from pydantic import ValidationError

from utilitysign.core.config import Settings, clear_settings_cache, get_settings
from utilitysign.core.logging import mask_secret, redact_sensitive
from utilitysign.integrations.backend import FixedWindowRateLimiter, RedisRateLimiter, RequestGateway


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.environment == "staging"
        assert settings.retry_attempts == 3
        assert settings.max_requests_per_minute == 60
        assert settings.cache_ttl_seconds == 300
        assert settings.webhook_signature_header == "X-Criipto-Signature"
        assert settings.allow_unsigned_webhooks is False

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("UTILITYSIGN_ENVIRONMENT", "Production")
        monkeypatch.setenv("UTILITYSIGN_WEBHOOK_SECRET", "s3cret")
        monkeypatch.setenv("UTILITYSIGN_MAX_REQUESTS_PER_MINUTE", "120")

        settings = Settings(_env_file=None)

        assert settings.environment == "production"
        assert settings.webhook_secret == "s3cret"
        assert settings.max_requests_per_minute == 120

    @pytest.mark.parametrize(
        "overrides",
        [
            {"environment": "qa"},
            {"rate_limit_backend": "memcached"},
            {"order_store_backend": "file"},
            {"notification_backend": "sms"},
            {"rate_limit_backend": "redis"},
            {"retry_attempts": 0},
            {"retry_base_delay_seconds": 10, "retry_max_delay_seconds": 5},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **overrides)

    def test_unsigned_webhooks_refused_in_production(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, environment="production", allow_unsigned_webhooks=True)

    def test_unsigned_webhooks_allowed_in_staging(self):
        assert Settings(_env_file=None, allow_unsigned_webhooks=True).allow_unsigned_webhooks is True

    def test_redis_backend_with_url(self):
        settings = Settings(_env_file=None, rate_limit_backend="redis", redis_url="redis://localhost:6379/0")
        assert settings.rate_limit_backend == "redis"

    def test_cached_settings(self):
        clear_settings_cache()
        assert get_settings() is get_settings()
        clear_settings_cache()


class TestGatewayFromSettings:
    @pytest.mark.asyncio
    async def test_memory_rate_limiter(self, test_settings):
        gateway = RequestGateway.from_settings(test_settings, max_attempts=5)
        try:
            assert gateway.base_url == test_settings.backend_api_url
            assert gateway.max_attempts == 5
            assert isinstance(gateway.rate_limiter, FixedWindowRateLimiter)
            assert gateway.rate_limiter.limit == 60
        finally:
            await gateway.close()

    @pytest.mark.asyncio
    async def test_redis_rate_limiter(self, test_settings):
        settings = test_settings.model_copy(update={"rate_limit_backend": "redis", "redis_url": "redis://cache:6379"})
        redis_client = object()

        gateway = RequestGateway.from_settings(settings, redis_client=redis_client)

        assert isinstance(gateway.rate_limiter, RedisRateLimiter)
        assert gateway.rate_limiter.redis is redis_client


class TestLogging:
    def test_mask_secret(self):
        assert mask_secret("plugin-key-123") == "plug**********"
        assert mask_secret("abc") == "***"
        assert mask_secret(None) == ""

    def test_sensitive_keys_are_redacted(self):
        event = redact_sensitive(None, "info", {"event": "x", "Authorization": "Bearer abcdef", "order_ref": "o-1"})
        assert event["Authorization"] == "Bear*********"
        assert event["order_ref"] == "o-1"
