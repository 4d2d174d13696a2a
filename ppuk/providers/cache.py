"""
PPUK Response Cache — TTL cache for external data-provider lookups.

Entries are keyed by (provider, normalized request key). Normalization
case-folds, trims and sorts the identifying parameters so that requests
differing only in formatting share one entry.

Serving rules:
- fresh:  now <= fetched_at + ttl_seconds  → returned by get()
- stale:  past TTL (or flagged)            → get() marks it and reports a miss;
                                              get(allow_stale=True) returns it
- evicted: past grace_multiplier × TTL     → removed by sweep()

get_or_fetch() adds single-flight population: one fetch per key at a time
inside a process (striped locks) and across processes (Redis SET NX).
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ppuk.db.base import as_utc, utcnow
from ppuk.db.models import ApiCacheEntry
from ppuk.engine.cache import RedisCache
from ppuk.engine.errors import PPUKRetryableUpstreamError, PPUKValidationError
from ppuk.engine.logging import log, log_provider_fetch, log_system_event

logger = logging.getLogger("ppuk.providers.cache")

DEFAULT_TTL_SECONDS = 3600
DEFAULT_GRACE_MULTIPLIER = 7
LOCK_STRIPES = 64
LOCK_POLL_INTERVAL = 0.1
SWEEP_BATCH_SIZE = 500


# ---------------------------------------------------------------------------
# Key normalization
# ---------------------------------------------------------------------------

def _normalize_text(value: str) -> str:
    return " ".join(value.split()).casefold()


def normalize_key(params: Union[str, Mapping[str, Any]]) -> str:
    """
    Build the canonical cache key for a provider request.

    Mapping keys and values are case-folded and whitespace-collapsed, empty
    values dropped, list values sorted, and pairs sorted by key:

        {"Postcode": " sw1a  1aa ", "Radius": 50} → "postcode=sw1a 1aa&radius=50"
    """
    if isinstance(params, str):
        key = _normalize_text(params)
    elif isinstance(params, Mapping):
        pairs = []
        for raw_key, raw_value in params.items():
            if raw_value is None:
                continue
            if isinstance(raw_value, (list, tuple, set, frozenset)):
                items = sorted(
                    v for v in (_normalize_text(str(i)) for i in raw_value if i is not None) if v
                )
                value = ",".join(items)
            else:
                value = _normalize_text(str(raw_value))
            if value:
                pairs.append((_normalize_text(str(raw_key)), value))
        pairs.sort()
        key = "&".join(f"{k}={v}" for k, v in pairs)
    else:
        raise PPUKValidationError(
            f"Cache key params must be a string or mapping, got {type(params).__name__}",
            field="params",
        )

    if not key:
        raise PPUKValidationError("Cache key is empty after normalization", field="params")
    return key


def request_hash(provider: str, cache_key: str) -> str:
    return hashlib.sha256(f"{provider}:{cache_key}".encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CachedResponse:
    provider: str
    cache_key: str
    payload: Any
    fetched_at: datetime
    ttl_seconds: int
    etag: Optional[str] = None
    is_stale: bool = False
    persisted: bool = True

    @property
    def expires_at(self) -> datetime:
        return self.fetched_at + timedelta(seconds=self.ttl_seconds)


@dataclass(frozen=True)
class FetchResult:
    """What an upstream fetcher returns. not_modified answers a conditional request."""
    payload: Any = None
    etag: Optional[str] = None
    status_code: Optional[int] = None
    not_modified: bool = False


Fetcher = Callable[[Optional[str]], Union[FetchResult, Any]]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class ResponseCache:
    """Store-backed response cache. See module docstring for serving rules."""

    def __init__(
        self,
        session_factory,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        grace_multiplier: int = DEFAULT_GRACE_MULTIPLIER,
        lock_cache: Optional[RedisCache] = None,
        lock_timeout_seconds: int = 30,
        lock_wait_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._default_ttl = default_ttl
        self._grace_multiplier = grace_multiplier
        self._lock_cache = lock_cache
        self._lock_timeout = lock_timeout_seconds
        self._lock_wait = lock_wait_seconds
        self._clock = clock
        self._stripes = [threading.Lock() for _ in range(LOCK_STRIPES)]

    # ── Reads ──

    def get(
        self, provider: str, key: Union[str, Mapping[str, Any]], allow_stale: bool = False
    ) -> Optional[CachedResponse]:
        """
        Look up an entry. Expired entries are flagged stale and reported as
        a miss unless *allow_stale* is set.
        """
        cache_key = normalize_key(key)
        session = self._session_factory()
        try:
            row = self._find(session, provider, cache_key)
            if row is None:
                return None

            expired = self._is_expired(row)
            if expired and not row.is_stale:
                row.is_stale = True
                session.commit()

            if row.is_stale and not allow_stale:
                return None
            return self._to_response(row)
        finally:
            session.close()

    def batch_get(
        self, provider: str, keys: Iterable[Union[str, Mapping[str, Any]]]
    ) -> Dict[str, Optional[CachedResponse]]:
        """Fresh entries for several keys, keyed by normalized key."""
        normalized = [normalize_key(k) for k in keys]
        if not normalized:
            return {}
        results: Dict[str, Optional[CachedResponse]] = {k: None for k in normalized}
        session = self._session_factory()
        try:
            rows = session.execute(
                select(ApiCacheEntry).where(
                    ApiCacheEntry.provider == provider,
                    ApiCacheEntry.cache_key.in_(normalized),
                )
            ).scalars()
            for row in rows:
                if not row.is_stale and not self._is_expired(row):
                    results[row.cache_key] = self._to_response(row)
        finally:
            session.close()
        return results

    def exists(self, provider: str, key: Union[str, Mapping[str, Any]]) -> bool:
        return self.get(provider, key) is not None

    # ── Writes ──

    def put(
        self,
        provider: str,
        key: Union[str, Mapping[str, Any]],
        payload: Any,
        ttl_seconds: Optional[int] = None,
        etag: Optional[str] = None,
    ) -> CachedResponse:
        """Insert or replace an entry with a fresh fetched_at."""
        ttl = self._resolve_ttl(ttl_seconds)
        cache_key = normalize_key(key)
        values = {
            "payload": payload,
            "fetched_at": self._clock(),
            "ttl_seconds": ttl,
            "etag": etag,
            "request_hash": request_hash(provider, cache_key),
            "response_size_bytes": len(json.dumps(payload, default=str).encode("utf-8")),
            "is_stale": False,
        }

        session = self._session_factory()
        try:
            try:
                row = self._upsert(session, provider, cache_key, values)
                session.commit()
            except IntegrityError:
                # A concurrent writer inserted the same key first
                session.rollback()
                row = self._upsert(session, provider, cache_key, values)
                session.commit()
            return self._to_response(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def revalidate(
        self, provider: str, key: Union[str, Mapping[str, Any]], ttl_seconds: Optional[int] = None
    ) -> bool:
        """Upstream confirmed the entry (304): restart its TTL."""
        values: Dict[str, Any] = {"fetched_at": self._clock(), "is_stale": False}
        if ttl_seconds is not None:
            values["ttl_seconds"] = self._resolve_ttl(ttl_seconds)
        return self._update(provider, normalize_key(key), values)

    def mark_stale(self, provider: str, key: Union[str, Mapping[str, Any]]) -> bool:
        return self._update(provider, normalize_key(key), {"is_stale": True})

    def invalidate(self, provider: str, key: Union[str, Mapping[str, Any]]) -> bool:
        """Delete one entry. Returns True if it existed."""
        cache_key = normalize_key(key)
        return self._delete(
            ApiCacheEntry.provider == provider, ApiCacheEntry.cache_key == cache_key
        ) > 0

    def clear_provider(self, provider: str) -> int:
        return self._delete(ApiCacheEntry.provider == provider)

    # ── Population ──

    def get_or_fetch(
        self,
        provider: str,
        params: Union[str, Mapping[str, Any]],
        fetcher: Fetcher,
        ttl_seconds: Optional[int] = None,
        allow_stale_fallback: bool = False,
    ) -> CachedResponse:
        """
        Serve from cache or populate it from upstream, one fetch per key.

        *fetcher(etag)* is called with the stale entry's validation token (or
        None) and returns a FetchResult or a bare payload.

        Falls back to:
        - a direct, uncached fetch if the cache store itself fails;
        - the stale entry if upstream fails and *allow_stale_fallback* is set.

        Raises:
            PPUKRetryableUpstreamError: upstream failed and no fallback applied.
        """
        cache_key = normalize_key(params)
        started = time.monotonic()

        try:
            hit = self.get(provider, cache_key)
        except SQLAlchemyError as e:
            logger.error(f"Cache read failed for {provider}, fetching uncached: {e}")
            return self._fetch_uncached(provider, cache_key, fetcher, ttl_seconds)
        if hit is not None:
            log(log_provider_fetch(provider, cache_key, "hit", self._elapsed_ms(started)))
            return hit

        stripe = self._stripes[hash((provider, cache_key)) % LOCK_STRIPES]
        with stripe:
            hit = self.get(provider, cache_key)
            if hit is not None:
                return hit

            token = self._acquire_fetch_lock(provider, cache_key)
            if token is None and self._lock_cache is not None and self._lock_cache.is_available:
                hit = self._wait_for_peer(provider, cache_key)
                if hit is not None:
                    return hit
            try:
                return self._populate(
                    provider, cache_key, fetcher, ttl_seconds, allow_stale_fallback, started
                )
            finally:
                if token is not None:
                    self._lock_cache.release_lock(self._lock_key(provider, cache_key), token)

    def _populate(
        self,
        provider: str,
        cache_key: str,
        fetcher: Fetcher,
        ttl_seconds: Optional[int],
        allow_stale_fallback: bool,
        started: float,
    ) -> CachedResponse:
        stale = self.get(provider, cache_key, allow_stale=True)
        try:
            fetched = self._as_fetch_result(fetcher(stale.etag if stale else None))
        except Exception as e:
            status_code = getattr(e, "status_code", None)
            log(log_provider_fetch(provider, cache_key, "failed", self._elapsed_ms(started),
                                   status_code=status_code, error=str(e)))
            if allow_stale_fallback and stale is not None:
                logger.warning(f"{provider} unavailable, serving stale entry for '{cache_key}': {e}")
                return stale
            if isinstance(e, PPUKRetryableUpstreamError):
                raise
            raise PPUKRetryableUpstreamError(
                f"{provider} fetch failed: {e}", provider=provider, status_code=status_code
            ) from e

        if fetched.not_modified and stale is not None:
            try:
                self.revalidate(provider, cache_key, ttl_seconds)
            except SQLAlchemyError as e:
                logger.error(f"Cache revalidate failed for {provider}: {e}")
            log(log_provider_fetch(provider, cache_key, "revalidated", self._elapsed_ms(started),
                                   status_code=fetched.status_code))
            return CachedResponse(
                provider=provider,
                cache_key=cache_key,
                payload=stale.payload,
                fetched_at=self._clock(),
                ttl_seconds=ttl_seconds if ttl_seconds is not None else stale.ttl_seconds,
                etag=stale.etag,
            )

        log(log_provider_fetch(provider, cache_key, "fetched", self._elapsed_ms(started),
                               status_code=fetched.status_code))
        try:
            return self.put(provider, cache_key, fetched.payload, ttl_seconds, fetched.etag)
        except SQLAlchemyError as e:
            logger.error(f"Cache population failed for {provider}, returning uncached payload: {e}")
            return self._uncached(provider, cache_key, fetched, ttl_seconds)

    def _fetch_uncached(
        self, provider: str, cache_key: str, fetcher: Fetcher, ttl_seconds: Optional[int]
    ) -> CachedResponse:
        try:
            fetched = self._as_fetch_result(fetcher(None))
        except PPUKRetryableUpstreamError:
            raise
        except Exception as e:
            raise PPUKRetryableUpstreamError(f"{provider} fetch failed: {e}", provider=provider) from e
        return self._uncached(provider, cache_key, fetched, ttl_seconds)

    def _uncached(
        self, provider: str, cache_key: str, fetched: FetchResult, ttl_seconds: Optional[int]
    ) -> CachedResponse:
        return CachedResponse(
            provider=provider,
            cache_key=cache_key,
            payload=fetched.payload,
            fetched_at=self._clock(),
            ttl_seconds=ttl_seconds if ttl_seconds is not None else self._default_ttl,
            etag=fetched.etag,
            persisted=False,
        )

    def _resolve_ttl(self, ttl_seconds: Optional[int]) -> int:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise PPUKValidationError("ttl_seconds must be positive", field="ttl_seconds", value=ttl)
        return ttl

    def _acquire_fetch_lock(self, provider: str, cache_key: str) -> Optional[str]:
        if self._lock_cache is None:
            return None
        return self._lock_cache.acquire_lock(self._lock_key(provider, cache_key), ttl=self._lock_timeout)

    def _wait_for_peer(self, provider: str, cache_key: str) -> Optional[CachedResponse]:
        """Another process holds the fetch lock: poll for its result."""
        deadline = time.monotonic() + self._lock_wait
        lock_key = self._lock_key(provider, cache_key)
        while time.monotonic() < deadline:
            time.sleep(LOCK_POLL_INTERVAL)
            hit = self.get(provider, cache_key)
            if hit is not None:
                return hit
            if not self._lock_cache.exists(lock_key):
                break
        return None

    @staticmethod
    def _lock_key(provider: str, cache_key: str) -> str:
        return f"fetch:{request_hash(provider, cache_key)}"

    # ── Maintenance ──

    def sweep(self) -> Dict[str, int]:
        """
        Evict entries past grace_multiplier × TTL and flag expired ones
        stale. Idempotent.

        Returns:
            {"evicted": N, "marked_stale": M}
        """
        now = self._clock()
        evict_ids: List[int] = []
        stale_ids: List[int] = []

        session = self._session_factory()
        try:
            rows = session.execute(
                select(
                    ApiCacheEntry.id,
                    ApiCacheEntry.fetched_at,
                    ApiCacheEntry.ttl_seconds,
                    ApiCacheEntry.is_stale,
                )
            )
            for entry_id, fetched_at, ttl, is_stale in rows:
                age = now - as_utc(fetched_at)
                if age > timedelta(seconds=ttl * self._grace_multiplier):
                    evict_ids.append(entry_id)
                elif age > timedelta(seconds=ttl) and not is_stale:
                    stale_ids.append(entry_id)

            for start in range(0, len(evict_ids), SWEEP_BATCH_SIZE):
                session.execute(
                    delete(ApiCacheEntry)
                    .where(ApiCacheEntry.id.in_(evict_ids[start:start + SWEEP_BATCH_SIZE]))
                    .execution_options(synchronize_session=False)
                )
            for start in range(0, len(stale_ids), SWEEP_BATCH_SIZE):
                session.execute(
                    update(ApiCacheEntry)
                    .where(ApiCacheEntry.id.in_(stale_ids[start:start + SWEEP_BATCH_SIZE]))
                    .values(is_stale=True)
                    .execution_options(synchronize_session=False)
                )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        result = {"evicted": len(evict_ids), "marked_stale": len(stale_ids)}
        logger.info(f"Response cache sweep: {result}")
        log(log_system_event("cache_sweep", **result))
        return result

    def stats(self) -> Dict[str, Any]:
        session = self._session_factory()
        try:
            by_provider = dict(
                session.execute(
                    select(ApiCacheEntry.provider, func.count(ApiCacheEntry.id))
                    .group_by(ApiCacheEntry.provider)
                ).all()
            )
            stale = session.execute(
                select(func.count(ApiCacheEntry.id)).where(ApiCacheEntry.is_stale.is_(True))
            ).scalar_one()
            size = session.execute(
                select(func.coalesce(func.sum(ApiCacheEntry.response_size_bytes), 0))
            ).scalar_one()
        finally:
            session.close()
        return {
            "total": sum(by_provider.values()),
            "stale": stale,
            "total_size_bytes": size,
            "by_provider": by_provider,
        }

    # ── Internals ──

    @staticmethod
    def _find(session, provider: str, cache_key: str) -> Optional[ApiCacheEntry]:
        return session.execute(
            select(ApiCacheEntry).where(
                ApiCacheEntry.provider == provider, ApiCacheEntry.cache_key == cache_key
            )
        ).scalar_one_or_none()

    def _upsert(self, session, provider: str, cache_key: str, values: Dict[str, Any]) -> ApiCacheEntry:
        row = self._find(session, provider, cache_key)
        if row is None:
            row = ApiCacheEntry(provider=provider, cache_key=cache_key, **values)
            session.add(row)
        else:
            for field, value in values.items():
                setattr(row, field, value)
        session.flush()
        return row

    def _update(self, provider: str, cache_key: str, values: Dict[str, Any]) -> bool:
        session = self._session_factory()
        try:
            outcome = session.execute(
                update(ApiCacheEntry)
                .where(ApiCacheEntry.provider == provider, ApiCacheEntry.cache_key == cache_key)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return outcome.rowcount > 0
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _delete(self, *criteria) -> int:
        session = self._session_factory()
        try:
            outcome = session.execute(
                delete(ApiCacheEntry).where(*criteria).execution_options(synchronize_session=False)
            )
            session.commit()
            return outcome.rowcount or 0
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _is_expired(self, row: ApiCacheEntry) -> bool:
        return self._clock() > as_utc(row.fetched_at) + timedelta(seconds=row.ttl_seconds)

    @staticmethod
    def _to_response(row: ApiCacheEntry) -> CachedResponse:
        return CachedResponse(
            provider=row.provider,
            cache_key=row.cache_key,
            payload=row.payload,
            fetched_at=as_utc(row.fetched_at),
            ttl_seconds=row.ttl_seconds,
            etag=row.etag,
            is_stale=bool(row.is_stale),
        )

    @staticmethod
    def _as_fetch_result(value: Any) -> FetchResult:
        return value if isinstance(value, FetchResult) else FetchResult(payload=value)

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.monotonic() - started) * 1000, 2)
