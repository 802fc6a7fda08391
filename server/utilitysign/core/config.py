from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utilitysign.core.logging import get_logger

logger = get_logger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="UTILITYSIGN_",
        extra="ignore",
    )

    app_name: str = Field(default="UtilitySign Gateway")
    environment: str = Field(default="staging", description="Backend environment tag: 'staging' or 'production'")

    # Backend / provider gateway
    backend_api_url: str = Field(default="https://api.utilitysign.no", description="Base URL of the order/document backend")
    client_id: str = Field(default="utilitysign-wordpress-plugin", description="Client identity sent as x-client-id")
    plugin_key: Optional[str] = Field(default=None, description="Plugin API key (static bearer token or key half of the token exchange)")
    plugin_secret: Optional[str] = Field(default=None, description="Plugin API secret; enables the short-lived token exchange")
    plugin_version: str = Field(default="1.0.0")
    request_source: str = Field(default="wordpress-plugin")
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    retry_attempts: int = Field(default=3, description="Total attempts per logical request, first call included")
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    retry_budget_seconds: float = Field(default=60.0, gt=0, description="Hard cap on the whole retry sequence")

    # Response cache for idempotent reads
    enable_caching: bool = Field(default=True)
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    cache_sweep_interval_seconds: float = Field(default=60.0, gt=0)

    # Outbound rate limiting
    enable_rate_limiting: bool = Field(default=True)
    max_requests_per_minute: int = Field(default=60, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_backend: str = Field(default="memory", description="'memory' (per process) or 'redis' (shared budget)")
    redis_url: Optional[str] = Field(default=None)

    # Request metrics ring buffer
    metrics_max_entries: int = Field(default=1000, ge=1)
    metrics_max_age_seconds: float = Field(default=3600.0, gt=0)
    metrics_cleanup_interval_seconds: float = Field(default=300.0, gt=0)

    # Inbound webhooks
    webhook_secret: Optional[str] = Field(default=None, description="Shared HMAC-SHA256 secret for provider webhooks")
    webhook_signature_header: str = Field(default="X-Criipto-Signature")
    allow_unsigned_webhooks: bool = Field(
        default=False,
        description="Explicitly accept webhooks without verification. Refused in production.",
    )
    webhook_log_max_entries: int = Field(default=100, ge=1)

    # Persistence and notifications
    database_url: str = Field(default="sqlite+aiosqlite:///./utilitysign.db")
    order_store_backend: str = Field(default="memory", description="'memory' or 'database'")
    notification_backend: str = Field(default="log", description="'log' or 'outbox'")
    outbox_dispatch_interval_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Seconds between outbox drains; 0 leaves draining to POST /events/dispatch",
    )

    signing_title_max_length: int = Field(default=200, ge=4)

    @model_validator(mode="before")
    @classmethod
    def validate_backends(cls, data: dict) -> dict:
        """
        Validate enumerated settings before field parsing.

        Environment, rate limit backend, order store backend and notification
        backend only accept a fixed set of values. A redis rate limit backend
        needs a redis URL.
        """
        if not isinstance(data, dict):
            return data
        data = data.copy()

        choices = {
            "environment": ({"staging", "production"}, "staging"),
            "rate_limit_backend": ({"memory", "redis"}, "memory"),
            "order_store_backend": ({"memory", "database"}, "memory"),
            "notification_backend": ({"log", "outbox"}, "log"),
        }
        for name, (allowed, default) in choices.items():
            value = str(data.get(name, default)).strip().lower()
            if value not in allowed:
                raise ValueError(f"{name} must be one of {sorted(allowed)}, got '{value}'")
            data[name] = value

        if data["rate_limit_backend"] == "redis" and not data.get("redis_url"):
            raise ValueError("rate_limit_backend='redis' requires redis_url")

        return data

    @model_validator(mode="after")
    def check_webhook_security(self) -> "Settings":
        """
        Unsigned webhook acceptance is an explicit operator decision.

        It is refused outright in production. Without a secret and without the
        flag every webhook is rejected, which is logged once here so the state
        is visible at startup.
        """
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")

        if self.allow_unsigned_webhooks and self.environment == "production":
            raise ValueError("allow_unsigned_webhooks cannot be enabled in production")

        if not self.webhook_secret:
            if self.allow_unsigned_webhooks:
                logger.warning("config.webhook.verification_disabled", environment=self.environment)
            else:
                logger.warning("config.webhook.secret_missing", detail="all webhooks will be rejected")

        return self


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    The same instance is returned for the whole process lifetime so the
    gateway, verifier and routes agree on configuration.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the cached settings instance so the next call re-reads the environment."""
    get_settings.cache_clear()
