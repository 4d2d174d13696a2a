"""
PPUK Redis Layer — relationship tier cache and cross-process fetch locks.

Redis DB allocation:
  DB 0: Celery broker
  DB 1: Celery results
  DB 2: Relationship tier cache (TTL=5min, invalidated on relationship change)
  DB 3: Provider fetch locks (single-flight across processes)

All Redis data is ephemeral and reconstructible from the entity store.
Every operation degrades to a no-op on Redis failure (circuit breaker).
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

logger = logging.getLogger("ppuk.engine.cache")

# Compare-and-delete so a lock is only released by the holder that set it
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisCache:
    """
    Redis cache wrapper with typed operations and circuit breaker.

    Falls back to store-only mode on Redis failure: reads miss, writes
    report False, locks are never acquired.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "ppuk:",
        default_ttl: int = 300,
        db: int = 0,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._default_ttl = default_ttl
        self._db = db
        self._client = None
        self._available = False

        # Circuit breaker state
        self._failure_count = 0
        self._failure_threshold = 5
        self._failure_window = 30  # seconds
        self._first_failure_time = 0.0
        self._circuit_open = False

    def connect(self) -> bool:
        """Initialize Redis connection."""
        try:
            import redis
            self._client = redis.Redis.from_url(
                self._redis_url,
                db=self._db,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )
            self._client.ping()
            self._available = True
            self._circuit_open = False
            self._failure_count = 0
            logger.info(f"Redis connected: DB {self._db} ({self._prefix})")
            return True
        except Exception as e:
            logger.warning(f"Redis connection failed (DB {self._db}): {e}")
            self._available = False
            return False

    def _check_circuit(self) -> bool:
        if self._circuit_open:
            if time.time() - self._first_failure_time > self._failure_window:
                self._circuit_open = False
                self._failure_count = 0
                return self.connect()
            return False
        return self._available

    def _record_failure(self) -> None:
        now = time.time()
        if self._failure_count == 0:
            self._first_failure_time = now

        self._failure_count += 1

        if self._failure_count >= self._failure_threshold:
            elapsed = now - self._first_failure_time
            if elapsed <= self._failure_window:
                self._circuit_open = True
                logger.error(
                    f"Redis circuit breaker OPEN: {self._failure_count} failures in {elapsed:.1f}s"
                )

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # ── Core Operations ──

    def get(self, key: str) -> Optional[str]:
        """Get a value from cache. Returns None on miss or failure."""
        if not self._check_circuit():
            return None
        try:
            return self._client.get(self._make_key(key))
        except Exception as e:
            self._record_failure()
            logger.debug(f"Redis GET failed: {e}")
            return None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value with optional TTL. Returns False on failure."""
        if not self._check_circuit():
            return False
        try:
            self._client.set(self._make_key(key), value, ex=ttl or self._default_ttl)
            return True
        except Exception as e:
            self._record_failure()
            logger.debug(f"Redis SET failed: {e}")
            return False

    def incr(self, key: str) -> Optional[int]:
        """Atomically increment a counter (no expiry). Returns None on failure."""
        if not self._check_circuit():
            return None
        try:
            return int(self._client.incr(self._make_key(key)))
        except Exception as e:
            self._record_failure()
            logger.debug(f"Redis INCR failed: {e}")
            return None

    def exists(self, key: str) -> bool:
        """Check if a key exists."""
        if not self._check_circuit():
            return False
        try:
            return bool(self._client.exists(self._make_key(key)))
        except Exception:
            self._record_failure()
            return False

    # ── Locks (single-flight) ──

    def acquire_lock(self, key: str, ttl: Optional[int] = None) -> Optional[str]:
        """
        Try to take a lock with SET NX. Non-blocking.

        Returns:
            The owner token if acquired, None if held elsewhere or Redis is down.
        """
        if not self._check_circuit():
            return None
        token = uuid.uuid4().hex
        try:
            acquired = self._client.set(
                self._make_key(key), token, nx=True, ex=ttl or self._default_ttl
            )
            return token if acquired else None
        except Exception as e:
            self._record_failure()
            logger.debug(f"Redis lock acquire failed: {e}")
            return None

    def release_lock(self, key: str, token: str) -> bool:
        """Release a lock only if *token* still owns it."""
        if not self._check_circuit():
            return False
        try:
            return bool(self._client.eval(_RELEASE_LOCK_SCRIPT, 1, self._make_key(key), token))
        except Exception:
            self._record_failure()
            return False

    # ── Health & Management ──

    def close(self) -> None:
        """Close the Redis connection and release resources."""
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"Redis close failed: {e}")
            self._client = None
        self._available = False
        self._circuit_open = False
        self._failure_count = 0

    @property
    def is_available(self) -> bool:
        return self._available and not self._circuit_open

    @property
    def is_circuit_open(self) -> bool:
        return self._circuit_open


# ---------------------------------------------------------------------------
# Tier Cache — relationship tier lookups for the authorization engine
# ---------------------------------------------------------------------------

NO_TIER = "-"


class TierCache:
    """
    Caches the resolved (principal, property) tier.

    Key format: ppuk:tiers:{property_id}:g{generation}:{principal_id}
    Value: "owner" | "occupier" | "interested" | "-" (no relationship)
    Generation counter: ppuk:tiers:{property_id}:gen (no expiry)

    A relationship change bumps the property's generation. A lookup that read
    the store before the bump writes under the old generation, which no later
    lookup reads. When the bump itself fails the cache is bypassed for one
    TTL, after which every entry written before the failure has expired.
    """

    def __init__(self, cache: RedisCache, ttl: int = 300):
        self._cache = cache
        self._ttl = ttl
        self._bypass_until = 0.0

    @staticmethod
    def _make_generation_key(property_id: int) -> str:
        return f"tiers:{property_id}:gen"

    @staticmethod
    def _make_tier_key(property_id: int, generation: str, principal_id: str) -> str:
        return f"tiers:{property_id}:g{generation}:{principal_id}"

    def generation(self, property_id: int) -> Optional[str]:
        """
        Current generation of a property's entries, or None when the cache
        must not be used (Redis down, or bypassed after a failed invalidation).
        """
        if time.time() < self._bypass_until:
            return None
        raw = self._cache.get(self._make_generation_key(property_id))
        if not self._cache.is_available:
            return None
        return raw or "0"

    def lookup(self, property_id: int, principal_id: str, generation: str) -> Optional[str]:
        """
        Returns the cached tier, NO_TIER for a cached absence, or None on miss.
        """
        return self._cache.get(self._make_tier_key(property_id, generation, principal_id))

    def store(
        self, property_id: int, principal_id: str, tier: Optional[str], generation: str
    ) -> None:
        self._cache.set(
            self._make_tier_key(property_id, generation, principal_id), tier or NO_TIER, ttl=self._ttl
        )

    def invalidate_property(self, property_id: int) -> bool:
        """Retire every cached tier on a property. Returns False if Redis missed it."""
        if self._cache.incr(self._make_generation_key(property_id)) is not None:
            return True
        self._bypass_until = time.time() + self._ttl
        logger.warning(
            f"Tier cache invalidation failed for property {property_id}; "
            f"bypassing cache for {self._ttl}s"
        )
        return False


# ---------------------------------------------------------------------------
# Factory functions for creating cache instances per Redis DB
# ---------------------------------------------------------------------------

def create_tier_cache(redis_url: str, ttl: int = 300) -> TierCache:
    """Create relationship tier cache (Redis DB 2)."""
    cache = RedisCache(redis_url=redis_url, prefix="ppuk:", default_ttl=ttl, db=2)
    cache.connect()
    return TierCache(cache, ttl=ttl)


def create_lock_cache(redis_url: str, ttl: int = 30) -> RedisCache:
    """Create provider fetch lock store (Redis DB 3)."""
    cache = RedisCache(redis_url=redis_url, prefix="ppuk:lock:", default_ttl=ttl, db=3)
    cache.connect()
    return cache
