"""
PPUK Provider Client — outbound HTTP calls to external property-data providers.

Per call:
    1. Circuit breaker check (per provider) → fail fast while OPEN
    2. GET via httpx.Client (connection pooled per provider)
    3. If-None-Match when the caller holds an ETag; 304 → not_modified
    4. Retry with exponential backoff on transport errors, 5xx and 429
    5. Log the call to providers/performance

Every upstream failure surfaces as PPUKRetryableUpstreamError so the
response cache can decide whether to serve a stale entry.

ProviderGateway ties a client to the ResponseCache: lookup() is the call
site for "cached provider data".
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Union

import httpx

from ppuk.engine.config import ProviderConfig
from ppuk.engine.errors import PPUKConfigError, PPUKRetryableUpstreamError
from ppuk.engine.logging import log, log_provider_fetch
from ppuk.providers.cache import CachedResponse, FetchResult, ResponseCache, normalize_key

logger = logging.getLogger("ppuk.providers.client")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------

class CircuitBreaker:
    """
    Per-provider circuit breaker.

    States:
        CLOSED  → requests flow normally
        OPEN    → requests fail fast (no outbound call)
        HALF    → single probe request allowed; success → CLOSED, fail → OPEN
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ):
        self.name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._state = self.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == self.OPEN:
                if time.monotonic() - self._last_failure_time >= self._recovery_timeout:
                    self._state = self.HALF_OPEN
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def allow_request(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._state = self.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            if self._state == self.HALF_OPEN or self._failure_count >= self._failure_threshold:
                self._state = self.OPEN
                logger.warning(
                    f"Circuit breaker OPEN for '{self.name}': "
                    f"{self._failure_count} consecutive failures"
                )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ProviderClient:
    """Synchronous httpx client pool, one client and one breaker per configured provider."""

    def __init__(
        self,
        providers: Dict[str, ProviderConfig],
        transport: Optional[httpx.BaseTransport] = None,
        user_agent: str = "ppuk-core",
    ):
        self._providers = dict(providers)
        self._transport = transport
        self._user_agent = user_agent
        self._clients: Dict[str, httpx.Client] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @property
    def providers(self) -> list:
        return sorted(self._providers)

    def config_for(self, provider: str) -> ProviderConfig:
        config = self._providers.get(provider)
        if config is None:
            raise PPUKConfigError(f"Unknown provider: '{provider}'", provider=provider)
        return config

    def ttl_for(self, provider: str) -> Optional[int]:
        return self.config_for(provider).ttl_seconds

    def breaker(self, provider: str) -> CircuitBreaker:
        with self._lock:
            if provider not in self._breakers:
                config = self.config_for(provider)
                self._breakers[provider] = CircuitBreaker(
                    name=provider,
                    failure_threshold=config.failure_threshold,
                    recovery_timeout=config.recovery_timeout,
                )
            return self._breakers[provider]

    def fetch(
        self,
        provider: str,
        params: Optional[Mapping[str, Any]] = None,
        path: str = "",
        etag: Optional[str] = None,
    ) -> FetchResult:
        """
        GET *path* from a provider.

        Raises:
            PPUKConfigError: the provider is not configured.
            PPUKRetryableUpstreamError: circuit open, transport failure,
                retryable status after all retries, any other non-2xx,
                or a body that is not JSON.
        """
        config = self.config_for(provider)
        breaker = self.breaker(provider)
        if not breaker.allow_request():
            raise PPUKRetryableUpstreamError(
                f"Circuit breaker OPEN for '{provider}'", provider=provider, status_code=503
            )

        headers = {"If-None-Match": etag} if etag else {}
        client = self._get_or_create_client(provider)
        started = time.monotonic()
        last_error: Optional[str] = None
        last_status: Optional[int] = None

        for attempt in range(config.retries + 1):
            if attempt:
                time.sleep(config.retry_delay * (2 ** (attempt - 1)))
            try:
                response = client.get(path, params=dict(params or {}), headers=headers)
            except httpx.HTTPError as e:
                last_error, last_status = f"{type(e).__name__}: {e}", None
                logger.warning(
                    f"{provider} transport error (attempt {attempt + 1}/{config.retries + 1}): {e}"
                )
                continue

            last_status = response.status_code
            if response.status_code in RETRYABLE_STATUS_CODES:
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    f"{provider} returned {response.status_code} "
                    f"(attempt {attempt + 1}/{config.retries + 1})"
                )
                continue

            return self._handle_response(provider, breaker, response, etag, started)

        breaker.record_failure()
        self._log(provider, params, "failed", started, last_status, last_error)
        raise PPUKRetryableUpstreamError(
            f"{provider} failed after {config.retries + 1} attempt(s): {last_error}",
            provider=provider,
            status_code=last_status,
        )

    def fetcher_for(
        self, provider: str, params: Optional[Mapping[str, Any]] = None, path: str = ""
    ) -> Callable[[Optional[str]], FetchResult]:
        """Bind a request for ResponseCache.get_or_fetch()."""

        def fetch(etag: Optional[str]) -> FetchResult:
            return self.fetch(provider, params, path=path, etag=etag)

        return fetch

    def close(self) -> None:
        with self._lock:
            for name, client in self._clients.items():
                try:
                    client.close()
                except httpx.HTTPError as e:
                    logger.warning(f"Error closing httpx client for '{name}': {e}")
            count = len(self._clients)
            self._clients.clear()
        logger.info(f"Closed {count} httpx client(s)")

    def client_stats(self) -> Dict[str, Any]:
        return {
            "active_clients": len(self._clients),
            "breakers": {name: b.state for name, b in self._breakers.items()},
        }

    # ── Internals ──

    def _handle_response(
        self,
        provider: str,
        breaker: CircuitBreaker,
        response: httpx.Response,
        etag: Optional[str],
        started: float,
    ) -> FetchResult:
        if response.status_code == 304:
            breaker.record_success()
            self._log(provider, None, "not_modified", started, 304)
            return FetchResult(etag=etag, status_code=304, not_modified=True)

        if not 200 <= response.status_code < 300:
            # The provider answered, so it is up; the request itself was refused
            breaker.record_success()
            self._log(provider, None, "rejected", started, response.status_code)
            raise PPUKRetryableUpstreamError(
                f"{provider} rejected request with HTTP {response.status_code}",
                provider=provider,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            breaker.record_failure()
            raise PPUKRetryableUpstreamError(
                f"{provider} returned a non-JSON body", provider=provider,
                status_code=response.status_code,
            ) from e

        breaker.record_success()
        self._log(provider, None, "ok", started, response.status_code)
        return FetchResult(
            payload=payload,
            etag=response.headers.get("ETag"),
            status_code=response.status_code,
        )

    def _get_or_create_client(self, provider: str) -> httpx.Client:
        with self._lock:
            if provider not in self._clients:
                config = self.config_for(provider)
                headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
                if config.api_key:
                    value = config.api_key
                    if config.api_key_header == "Authorization":
                        value = f"Bearer {config.api_key}"
                    headers[config.api_key_header] = value
                self._clients[provider] = httpx.Client(
                    base_url=config.base_url,
                    headers=headers,
                    timeout=httpx.Timeout(config.timeout, connect=min(config.timeout, 10.0)),
                    transport=self._transport,
                    follow_redirects=True,
                )
                logger.info(f"Created httpx client for '{provider}'")
            return self._clients[provider]

    @staticmethod
    def _log(
        provider: str,
        params: Optional[Mapping[str, Any]],
        outcome: str,
        started: float,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        cache_key = normalize_key(params) if params else ""
        duration_ms = round((time.monotonic() - started) * 1000, 2)
        log(log_provider_fetch(provider, cache_key, f"upstream_{outcome}", duration_ms,
                               status_code=status_code, error=error))


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class ProviderGateway:
    """Cached provider lookups: ResponseCache in front of ProviderClient."""

    def __init__(self, cache: ResponseCache, client: ProviderClient, serve_stale: bool = True):
        self.cache = cache
        self.client = client
        self._serve_stale = serve_stale

    def lookup(
        self,
        provider: str,
        params: Union[str, Mapping[str, Any]],
        path: str = "",
        allow_stale: Optional[bool] = None,
    ) -> CachedResponse:
        request_params = {"q": params} if isinstance(params, str) else params
        return self.cache.get_or_fetch(
            provider,
            params,
            self.client.fetcher_for(provider, request_params, path=path),
            ttl_seconds=self.client.ttl_for(provider),
            allow_stale_fallback=self._serve_stale if allow_stale is None else allow_stale,
        )

    def close(self) -> None:
        self.client.close()
