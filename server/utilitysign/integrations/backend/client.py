"""
Request Gateway

Resilient HTTP client for the UtilitySign backend and the identity/signing
provider behind it. Every call goes through validation, an optional response
cache, a rate limiter, token resolution, header construction, classification
of the outcome and bounded retry with exponential backoff. Network and HTTP
failures are returned as GatewayResult, never raised.
"""

import asyncio
import hashlib
import json
import random
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

import aiohttp
from aiohttp import ClientTimeout
from redis.asyncio import Redis

from utilitysign.core.correlation import CorrelationContext
from utilitysign.core.logging import get_logger, mask_secret

from .base import (
    ErrorKind,
    GatewayConfigurationError,
    GatewayError,
    GatewayResult,
    HttpMethod,
    RequestMetric,
    RequestOptions,
)
from .cache import ResponseCache, build_cache_key
from .errors import USER_MESSAGES, classify_exception, classify_response
from .rate_limiter import FixedWindowRateLimiter, RateLimiter, RedisRateLimiter

logger = get_logger(__name__)

API_PREFIX = "/api/v1.0"
AUTH_ENDPOINT = "/api/v1/wordpress/authenticate"
TOKEN_CACHE_KEY = "auth:access_token"
TOKEN_EXPIRY_SKEW_SECONDS = 300
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

SleepFn = Callable[[float], Awaitable[Any]]


class RequestGateway:
    """HTTP gateway to the backend with caching, rate limiting and retries."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        *,
        plugin_key: Optional[str] = None,
        plugin_secret: Optional[str] = None,
        environment: str = "staging",
        plugin_version: str = "1.0.0",
        request_source: str = "wordpress-plugin",
        cache: Optional[ResponseCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        enable_caching: bool = True,
        enable_rate_limiting: bool = True,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        retry_budget: float = 60.0,
        request_timeout: float = 30.0,
        connect_timeout: float = 10.0,
        metrics_max_entries: int = 1000,
        metrics_max_age: float = 3600.0,
        cache_sweep_interval: float = 60.0,
        metrics_cleanup_interval: float = 300.0,
        sleep: SleepFn = asyncio.sleep,
        random_fn: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the gateway.

        Args:
            base_url: Backend base URL
            client_id: Client identity sent on every request
            plugin_key: Static bearer token, or the key half of the token exchange
            plugin_secret: Secret half of the token exchange; when set, tokens
                are fetched from the authenticate endpoint and cached
            environment: Environment tag sent as x-environment
            cache: Response cache for idempotent reads
            rate_limiter: Permit source checked before each HTTP attempt
            max_attempts: Total attempts per logical request
            base_delay: Backoff base in seconds
            max_delay: Backoff cap in seconds
            retry_budget: Hard cap in seconds on the whole retry sequence
            sleep, random_fn, clock, monotonic: Injectable for tests

        Raises:
            GatewayConfigurationError: If the base URL or client identity is missing
        """
        missing = [name for name, value in (("base_url", base_url), ("client_id", client_id)) if not value]
        if missing:
            raise GatewayConfigurationError(
                f"Request gateway is missing required configuration: {', '.join(missing)}",
                missing=missing,
            )
        if max_attempts < 1:
            raise GatewayConfigurationError("max_attempts must be at least 1", missing=["max_attempts"])

        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.plugin_key = plugin_key
        self.plugin_secret = plugin_secret
        self.environment = environment
        self.plugin_version = plugin_version
        self.request_source = request_source

        self.enable_caching = enable_caching
        self.enable_rate_limiting = enable_rate_limiting
        self.cache = cache or ResponseCache(clock=clock)
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(clock=clock)
        self._token_cache = ResponseCache(default_ttl=DEFAULT_TOKEN_LIFETIME_SECONDS, clock=clock)
        self._token_lock = asyncio.Lock()

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retry_budget = retry_budget

        self.metrics_max_age = metrics_max_age
        self._metrics: Deque[RequestMetric] = deque(maxlen=metrics_max_entries)
        self.cache_sweep_interval = cache_sweep_interval
        self.metrics_cleanup_interval = metrics_cleanup_interval
        self._tasks: List[asyncio.Task] = []

        self._sleep = sleep
        self._random = random_fn
        self._clock = clock
        self._monotonic = monotonic

        # Session will be created lazily to avoid event loop issues during initialization
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = ClientTimeout(total=request_timeout, connect=connect_timeout)

    @classmethod
    def from_settings(cls, settings, *, redis_client: Optional[Redis] = None, **overrides: Any) -> "RequestGateway":
        """Build a gateway from application settings."""
        if settings.rate_limit_backend == "redis":
            if redis_client is None:
                redis_client = Redis.from_url(settings.redis_url)
            rate_limiter: RateLimiter = RedisRateLimiter(
                redis_client,
                limit=settings.max_requests_per_minute,
                window_seconds=settings.rate_limit_window_seconds,
            )
        else:
            rate_limiter = FixedWindowRateLimiter(
                limit=settings.max_requests_per_minute,
                window_seconds=settings.rate_limit_window_seconds,
            )
        options: Dict[str, Any] = dict(
            plugin_key=settings.plugin_key,
            plugin_secret=settings.plugin_secret,
            environment=settings.environment,
            plugin_version=settings.plugin_version,
            request_source=settings.request_source,
            cache=ResponseCache(default_ttl=settings.cache_ttl_seconds),
            rate_limiter=rate_limiter,
            enable_caching=settings.enable_caching,
            enable_rate_limiting=settings.enable_rate_limiting,
            max_attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            retry_budget=settings.retry_budget_seconds,
            request_timeout=settings.request_timeout_seconds,
            connect_timeout=settings.connect_timeout_seconds,
            metrics_max_entries=settings.metrics_max_entries,
            metrics_max_age=settings.metrics_max_age_seconds,
            cache_sweep_interval=settings.cache_sweep_interval_seconds,
            metrics_cleanup_interval=settings.metrics_cleanup_interval_seconds,
        )
        options.update(overrides)
        return cls(settings.backend_api_url, settings.client_id, **options)

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    # Lifecycle

    async def start(self) -> None:
        """Start the periodic cache sweep, metrics cleanup and window reset timers."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._every(self.cache_sweep_interval, self._sweep_cache), name="gateway-cache-sweep"),
            asyncio.create_task(
                self._every(self.metrics_cleanup_interval, self.prune_metrics), name="gateway-metrics-cleanup"
            ),
            asyncio.create_task(
                self._every(self.cache_sweep_interval, self.rate_limiter.reset_if_expired), name="gateway-window-reset"
            ),
        ]
        logger.info("gateway.started", base_url=self.base_url, environment=self.environment)

    async def stop(self) -> None:
        """Cancel the periodic timers and close the HTTP session."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.close()
        logger.info("gateway.stopped")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "RequestGateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _every(self, interval: float, job: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                job()
            except Exception as exc:  # pragma: no cover - timer must survive a failing job
                logger.warning("gateway.timer.failed", job=getattr(job, "__name__", str(job)), error=str(exc))

    def _sweep_cache(self) -> None:
        self.cache.sweep()
        self._token_cache.sweep()

    # Core request path

    async def request(self, endpoint: str, options: Optional[RequestOptions] = None) -> GatewayResult:
        """
        Execute one logical request against the backend.

        Args:
            endpoint: Path relative to the backend base URL
            options: Method, body, caching and idempotency options

        Returns:
            GatewayResult carrying data on success or a classified error

        Raises:
            ValueError: If the endpoint, method or body is malformed
        """
        options = options or RequestOptions()
        method = self._validate(endpoint, options)
        payload = self._serialize(options.body)
        context = CorrelationContext.new()

        with context.bound():
            use_cache = self.enable_caching and options.cacheable and method is HttpMethod.GET
            cache_key = build_cache_key(method.value, endpoint, options.body) if use_cache else None
            if cache_key is not None:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    self._record(endpoint, method, 200, 0.0, context.id, cache_hit=True, success=True)
                    logger.debug("gateway.cache.hit", endpoint=endpoint)
                    return GatewayResult.ok(cached, correlation_id=context.id, status_code=200, attempts=0, cache_hit=True)

            max_attempts = options.max_attempts or self.max_attempts
            started = self._monotonic()
            attempt = 0
            error: Optional[GatewayError] = None

            while attempt < max_attempts:
                attempt += 1

                if self.enable_rate_limiting and not await self.rate_limiter.try_acquire():
                    retry_after = await self.rate_limiter.retry_after()
                    error = GatewayError(
                        kind=ErrorKind.RATE_LIMITED,
                        message="Local request rate limit exceeded",
                        retryable=True,
                        user_message=USER_MESSAGES[429],
                        error_code="local_rate_limit",
                        retry_after_seconds=retry_after,
                    )
                    self._record(endpoint, method, None, 0.0, context.id, cache_hit=False, success=False)
                    logger.warning("gateway.request.rate_limited", endpoint=endpoint, retry_after=retry_after)
                    return GatewayResult.failed(error, correlation_id=context.id, attempts=attempt - 1)

                token: Optional[str] = None
                token_error: Optional[GatewayError] = None
                attempt_started = self._monotonic()
                status: Optional[int] = None
                if options.authenticate:
                    token, token_error = await self._resolve_token()

                if token_error is not None:
                    error = token_error
                    status = token_error.status_code
                    logger.warning("gateway.auth.failed", kind=error.kind.value, message=error.message, attempt=attempt)
                else:
                    headers = self._build_headers(context, method, token, payload, options)
                    try:
                        status, response_headers, body = await self._send(method, self._url(endpoint), payload, headers)
                    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                        error = classify_exception(exc)
                    else:
                        self.rate_limiter.update_from_headers(response_headers)
                        latency_ms = (self._monotonic() - attempt_started) * 1000
                        if 200 <= status < 300:
                            self._record(
                                endpoint, method, status, latency_ms, context.id, cache_hit=False, success=True
                            )
                            if cache_key is not None:
                                self.cache.set(cache_key, body)
                            logger.info(
                                "gateway.request.succeeded",
                                endpoint=endpoint,
                                method=method.value,
                                status=status,
                                attempt=attempt,
                                latency_ms=round(latency_ms, 1),
                            )
                            return GatewayResult.ok(
                                body, correlation_id=context.id, status_code=status, attempts=attempt
                            )
                        error = classify_response(status, body if isinstance(body, Mapping) else None, response_headers)
                        if status == 401 and self.plugin_secret:
                            self._token_cache.delete(TOKEN_CACHE_KEY)

                latency_ms = (self._monotonic() - attempt_started) * 1000
                self._record(endpoint, method, status, latency_ms, context.id, cache_hit=False, success=False)

                if not error.retryable or attempt >= max_attempts:
                    break

                delay = self._backoff_delay(attempt, error)
                if self._monotonic() - started + delay > self.retry_budget:
                    logger.warning("gateway.request.retry_budget_exhausted", endpoint=endpoint, attempt=attempt)
                    break

                logger.warning(
                    "gateway.request.retry",
                    endpoint=endpoint,
                    method=method.value,
                    attempt=attempt,
                    kind=error.kind.value,
                    status=status,
                    delay_seconds=round(delay, 3),
                )
                await self._sleep(delay)

            logger.error(
                "gateway.request.failed",
                endpoint=endpoint,
                method=method.value,
                attempts=attempt,
                kind=error.kind.value if error else None,
                status=error.status_code if error else None,
            )
            return GatewayResult.failed(error, correlation_id=context.id, attempts=attempt)

    async def get(self, endpoint: str, *, cacheable: bool = False, **kwargs: Any) -> GatewayResult:
        return await self.request(endpoint, RequestOptions(method=HttpMethod.GET, cacheable=cacheable, **kwargs))

    async def post(self, endpoint: str, body: Any = None, **kwargs: Any) -> GatewayResult:
        return await self.request(endpoint, RequestOptions(method=HttpMethod.POST, body=body, **kwargs))

    def _validate(self, endpoint: str, options: RequestOptions) -> HttpMethod:
        if not isinstance(endpoint, str) or not endpoint.strip():
            raise ValueError("Invalid endpoint")
        try:
            return HttpMethod(str(getattr(options.method, "value", options.method)).upper())
        except ValueError:
            raise ValueError(f"Invalid HTTP method: {options.method}") from None

    @staticmethod
    def _serialize(body: Any) -> Optional[bytes]:
        if body is None:
            return None
        if isinstance(body, (bytes, bytearray)):
            raw = bytes(body)
            try:
                json.loads(raw)
            except ValueError:
                raise ValueError("Invalid JSON in request body") from None
            return raw
        if isinstance(body, str):
            try:
                json.loads(body)
            except ValueError:
                raise ValueError("Invalid JSON in request body") from None
            return body.encode("utf-8")
        try:
            return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Request body is not JSON serializable: {exc}") from exc

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _build_headers(
        self,
        context: CorrelationContext,
        method: HttpMethod,
        token: Optional[str],
        payload: Optional[bytes],
        options: RequestOptions,
    ) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "x-client-id": self.client_id,
            "X-Correlation-ID": context.id,
            "x-environment": self.environment,
            "x-plugin-version": self.plugin_version,
            "x-request-source": self.request_source,
            "x-request-timestamp": str(int(self._clock() * 1000)),
            "x-request-id": uuid.uuid4().hex,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if method.is_mutating:
            headers["x-idempotency-key"] = options.idempotency_key or f"{method.value}-{context.id}"
            headers["x-request-hash"] = hashlib.sha256(payload or b"").hexdigest()
        if options.headers:
            headers.update(options.headers)
        return headers

    async def _send(
        self,
        method: HttpMethod,
        url: str,
        payload: Optional[bytes],
        headers: Dict[str, str],
    ) -> Tuple[int, Mapping[str, str], Any]:
        async with self.session.request(method.value, url, data=payload, headers=headers) as response:
            text = await response.text()
            return response.status, response.headers, _decode_body(text)

    def _backoff_delay(self, attempt: int, error: GatewayError) -> float:
        base = self.base_delay * (2 ** (attempt - 1))
        delay = min(base + self._random() * 0.1 * base, self.max_delay)
        if error.retry_after_seconds:
            delay = min(max(delay, error.retry_after_seconds), self.max_delay)
        return delay

    # Authentication

    async def _resolve_token(self) -> Tuple[Optional[str], Optional[GatewayError]]:
        if not self.plugin_key:
            return None, None
        if not self.plugin_secret:
            return self.plugin_key, None

        cached = self._token_cache.get(TOKEN_CACHE_KEY)
        if cached:
            return cached, None

        async with self._token_lock:
            cached = self._token_cache.get(TOKEN_CACHE_KEY)
            if cached:
                return cached, None
            return await self._exchange_token()

    async def _exchange_token(self) -> Tuple[Optional[str], Optional[GatewayError]]:
        headers = {
            "Content-Type": "application/json",
            "x-client-id": self.client_id,
            "X-API-Key": self.plugin_key or "",
            "X-API-Secret": self.plugin_secret or "",
        }
        try:
            status, response_headers, body = await self._send(HttpMethod.POST, self._url(AUTH_ENDPOINT), b"{}", headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return None, classify_exception(exc)

        if not 200 <= status < 300:
            return None, classify_response(status, body if isinstance(body, Mapping) else None, response_headers)

        body = body if isinstance(body, Mapping) else {}
        token = body.get("accessToken") or body.get("access_token")
        if not token:
            return None, GatewayError(
                kind=ErrorKind.CONFIGURATION,
                message="Authentication response did not include an access token",
                retryable=False,
                status_code=status,
                error_code="token_missing",
            )

        ttl = self._token_ttl(body.get("expiresAt") or body.get("expires_at"), body.get("expiresIn"))
        self._token_cache.set(TOKEN_CACHE_KEY, token, ttl=ttl)
        logger.info("gateway.auth.token_cached", ttl_seconds=round(ttl, 1), key=mask_secret(self.plugin_key))
        return token, None

    def _token_ttl(self, expires_at: Any, expires_in: Any) -> float:
        now = self._clock()
        lifetime: Optional[float] = None
        if expires_in is not None:
            try:
                lifetime = float(expires_in)
            except (TypeError, ValueError):
                lifetime = None
        if lifetime is None and expires_at:
            moment = _parse_datetime(expires_at)
            if moment is not None:
                lifetime = moment.timestamp() - now
        if lifetime is None:
            lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS
        return max(1.0, lifetime - TOKEN_EXPIRY_SKEW_SECONDS)

    # Metrics and introspection

    def _record(
        self,
        endpoint: str,
        method: HttpMethod,
        status: Optional[int],
        latency_ms: float,
        correlation_id: str,
        *,
        cache_hit: bool,
        success: bool,
    ) -> None:
        self._metrics.append(
            RequestMetric(
                endpoint=endpoint,
                method=method.value,
                status_code=status,
                latency_ms=latency_ms,
                correlation_id=correlation_id,
                cache_hit=cache_hit,
                recorded_at=self._clock(),
                success=success,
            )
        )

    def prune_metrics(self) -> int:
        """Drop metrics older than the configured max age."""
        cutoff = self._clock() - self.metrics_max_age
        removed = 0
        while self._metrics and self._metrics[0].recorded_at < cutoff:
            self._metrics.popleft()
            removed += 1
        return removed

    def metrics(self) -> List[RequestMetric]:
        self.prune_metrics()
        return list(self._metrics)

    def metrics_summary(self) -> Dict[str, float]:
        entries = self.metrics()
        total = len(entries)
        if total == 0:
            return {"total_requests": 0, "average_response_time_ms": 0.0, "error_rate": 0.0, "cache_hit_rate": 0.0}
        network_entries = [entry for entry in entries if not entry.cache_hit]
        average = sum(entry.latency_ms for entry in network_entries) / len(network_entries) if network_entries else 0.0
        return {
            "total_requests": total,
            "average_response_time_ms": round(average, 2),
            "error_rate": round(100.0 * sum(1 for entry in entries if not entry.success) / total, 2),
            "cache_hit_rate": round(100.0 * sum(1 for entry in entries if entry.cache_hit) / total, 2),
        }

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    async def rate_limit_info(self) -> Dict[str, Any]:
        window = await self.rate_limiter.window()
        return window.as_dict(self._clock())

    # Typed operations

    async def fetch_document(self, document_id: str) -> GatewayResult:
        return await self.get(f"{API_PREFIX}/signing/{_segment(document_id)}", cacheable=True)

    async def get_plugin_config(self) -> GatewayResult:
        return await self.get(f"{API_PREFIX}/system-settings", cacheable=True)

    async def create_signing_session(self, body: Dict[str, Any], idempotency_key: Optional[str] = None) -> GatewayResult:
        return await self.post(f"{API_PREFIX}/signing", body, idempotency_key=idempotency_key)

    async def get_signing_status(self, session_id: str) -> GatewayResult:
        return await self.get(f"{API_PREFIX}/signing/{_segment(session_id)}")

    async def check_completion(self, session_id: str) -> GatewayResult:
        return await self.post(f"{API_PREFIX}/signing/{_segment(session_id)}/check-completion", {})

    async def initiate_identity(self, request_id: str) -> GatewayResult:
        return await self.post(f"{API_PREFIX}/signing/bankid/initiate", {"requestId": request_id})

    async def get_identity_status(self, session_id: str) -> GatewayResult:
        return await self.get(f"{API_PREFIX}/signing/bankid/status/{_segment(session_id)}")

    async def cancel_identity(self, session_id: str) -> GatewayResult:
        return await self.post(f"{API_PREFIX}/signing/bankid/cancel", {"sessionId": session_id})

    async def health_check(self) -> GatewayResult:
        return await self.get("/api/health", max_attempts=1)


def _segment(value: str) -> str:
    if not value or not str(value).strip():
        raise ValueError("Identifier must not be empty")
    return quote(str(value).strip(), safe="")


def _decode_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return {"message": text[:500]}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
