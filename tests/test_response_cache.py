"""Unit tests for ppuk.providers.cache — key normalization, TTL serving, sweep, single-flight."""

import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from ppuk.engine.errors import PPUKRetryableUpstreamError, PPUKValidationError
from ppuk.providers.cache import FetchResult, ResponseCache, normalize_key


class TestNormalizeKey:

    def test_formatting_variants_share_a_key(self):
        assert normalize_key({"Postcode": " sw1a  1aa ", "Radius": 50}) == "postcode=sw1a 1aa&radius=50"
        assert normalize_key({"radius": "50", "postcode": "SW1A 1AA"}) == "postcode=sw1a 1aa&radius=50"

    def test_strings(self):
        assert normalize_key("  10 Downing  STREET ") == "10 downing street"

    def test_lists_sorted_and_empties_dropped(self):
        key = normalize_key({"uprn": ["200", "100", ""], "flat": None, "street": "  "})
        assert key == "uprn=100,200"

    @pytest.mark.parametrize("params", ["   ", {}, {"postcode": None}, {"a": ""}])
    def test_empty_key_rejected(self, params):
        with pytest.raises(PPUKValidationError):
            normalize_key(params)

    def test_unsupported_type(self):
        with pytest.raises(PPUKValidationError):
            normalize_key(42)


class TestServing:

    def setup_method(self):
        self.params = {"postcode": "SW1A 2AA"}

    def test_put_then_get(self, session_factory, clock):
        cache = ResponseCache(session_factory, clock=clock)
        cache.put("epc", self.params, {"rating": "C"}, ttl_seconds=60, etag='"v1"')
        hit = cache.get("epc", {"Postcode": "sw1a 2aa"})
        assert hit.payload == {"rating": "C"}
        assert hit.etag == '"v1"'
        assert hit.is_stale is False
        assert hit.fetched_at == clock.now
        assert hit.expires_at == clock.now + timedelta(seconds=60)
        assert cache.exists("epc", self.params) is True
        assert cache.get("land_registry", self.params) is None

    def test_fresh_until_ttl_then_stale(self, session_factory, clock):
        cache = ResponseCache(session_factory, clock=clock)
        cache.put("epc", self.params, {"rating": "C"}, ttl_seconds=60)

        clock.advance(60)
        assert cache.get("epc", self.params) is not None

        clock.advance(1)
        assert cache.get("epc", self.params) is None
        stale = cache.get("epc", self.params, allow_stale=True)
        assert stale.is_stale is True
        assert stale.payload == {"rating": "C"}
        assert cache.stats()["stale"] == 1

    def test_put_refreshes_stale_entry(self, session_factory, clock):
        cache = ResponseCache(session_factory, clock=clock)
        cache.put("epc", self.params, {"rating": "C"}, ttl_seconds=60)
        clock.advance(120)
        cache.mark_stale("epc", self.params)
        cache.put("epc", self.params, {"rating": "B"}, ttl_seconds=60)
        hit = cache.get("epc", self.params)
        assert hit.payload == {"rating": "B"}
        assert cache.stats()["total"] == 1

    def test_revalidate_restarts_ttl(self, session_factory, clock):
        cache = ResponseCache(session_factory, clock=clock)
        cache.put("epc", self.params, {"rating": "C"}, ttl_seconds=60)
        clock.advance(90)
        assert cache.get("epc", self.params) is None
        assert cache.revalidate("epc", self.params) is True
        assert cache.get("epc", self.params).payload == {"rating": "C"}
        assert cache.revalidate("epc", {"postcode": "NOPE"}) is False

    def test_invalid_ttl(self, session_factory):
        with pytest.raises(PPUKValidationError):
            ResponseCache(session_factory).put("epc", "k", {}, ttl_seconds=-5)

    def test_zero_ttl_is_rejected_not_defaulted(self, session_factory):
        cache = ResponseCache(session_factory, default_ttl=3600)
        with pytest.raises(PPUKValidationError):
            cache.put("epc", "k", {}, ttl_seconds=0)
        cache.put("epc", "k", {}, ttl_seconds=30)
        with pytest.raises(PPUKValidationError):
            cache.revalidate("epc", "k", ttl_seconds=0)

    def test_batch_get(self, session_factory, clock):
        cache = ResponseCache(session_factory, clock=clock)
        cache.put("epc", "a", 1, ttl_seconds=10)
        cache.put("epc", "b", 2, ttl_seconds=1000)
        clock.advance(30)
        results = cache.batch_get("epc", ["A", "b", "c"])
        assert results["a"] is None
        assert results["b"].payload == 2
        assert results["c"] is None
        assert cache.batch_get("epc", []) == {}

    def test_invalidate_and_clear(self, session_factory):
        cache = ResponseCache(session_factory)
        cache.put("epc", "a", 1)
        cache.put("epc", "b", 2)
        cache.put("land_registry", "a", 3)
        assert cache.invalidate("epc", "a") is True
        assert cache.invalidate("epc", "a") is False
        assert cache.clear_provider("epc") == 1
        assert cache.stats()["by_provider"] == {"land_registry": 1}


class TestSweep:

    def test_sweep_evicts_and_flags(self, session_factory, clock):
        cache = ResponseCache(session_factory, grace_multiplier=7, clock=clock)
        cache.put("epc", "old", 1, ttl_seconds=60)
        clock.advance(400)
        cache.put("epc", "expired", 2, ttl_seconds=60)
        clock.advance(61)
        cache.put("epc", "fresh", 3, ttl_seconds=60)

        # old is 461s (> 7 × 60), expired 61s, fresh 0s
        assert cache.sweep() == {"evicted": 1, "marked_stale": 1}
        assert cache.sweep() == {"evicted": 0, "marked_stale": 0}
        assert cache.get("epc", "old", allow_stale=True) is None
        assert cache.get("epc", "expired", allow_stale=True).is_stale is True
        assert cache.get("epc", "fresh") is not None

    def test_stats_size(self, session_factory):
        cache = ResponseCache(session_factory)
        cache.put("epc", "a", {"x": 1})
        stats = cache.stats()
        assert stats["total"] == 1
        assert stats["total_size_bytes"] == len('{"x": 1}')


class TestGetOrFetch:

    def test_miss_fetches_and_caches(self, session_factory, clock):
        cache = ResponseCache(session_factory, clock=clock)
        fetcher = MagicMock(return_value=FetchResult(payload={"rating": "D"}, etag="e1", status_code=200))

        first = cache.get_or_fetch("epc", "SW1A", fetcher, ttl_seconds=60)
        second = cache.get_or_fetch("epc", "sw1a", fetcher, ttl_seconds=60)
        assert first.payload == second.payload == {"rating": "D"}
        fetcher.assert_called_once_with(None)

    def test_bare_payload_accepted(self, session_factory):
        cache = ResponseCache(session_factory)
        assert cache.get_or_fetch("epc", "k", lambda etag: [1, 2]).payload == [1, 2]

    def test_conditional_refresh_not_modified(self, session_factory, clock):
        cache = ResponseCache(session_factory, clock=clock)
        cache.put("epc", "k", {"rating": "E"}, ttl_seconds=60, etag="e1")
        clock.advance(120)
        fetcher = MagicMock(return_value=FetchResult(not_modified=True, status_code=304))

        response = cache.get_or_fetch("epc", "k", fetcher)
        fetcher.assert_called_once_with("e1")
        assert response.payload == {"rating": "E"}
        assert cache.get("epc", "k") is not None

    def test_upstream_failure_without_fallback(self, session_factory, clock):
        cache = ResponseCache(session_factory, clock=clock)
        cache.put("epc", "k", 1, ttl_seconds=60)
        clock.advance(120)
        with pytest.raises(PPUKRetryableUpstreamError) as exc:
            cache.get_or_fetch("epc", "k", MagicMock(side_effect=ConnectionError("reset")))
        assert exc.value.provider == "epc"

    def test_upstream_failure_serves_stale(self, session_factory, clock):
        cache = ResponseCache(session_factory, clock=clock)
        cache.put("epc", "k", {"rating": "F"}, ttl_seconds=60)
        clock.advance(120)
        response = cache.get_or_fetch(
            "epc", "k", MagicMock(side_effect=ConnectionError("reset")), allow_stale_fallback=True
        )
        assert response.is_stale is True
        assert response.payload == {"rating": "F"}

    def test_store_outage_fetches_uncached(self):
        def broken():
            raise OperationalError("SELECT", {}, Exception("store down"))

        cache = ResponseCache(broken)
        response = cache.get_or_fetch("epc", "k", lambda etag: {"rating": "A"})
        assert response.payload == {"rating": "A"}
        assert response.persisted is False

    def test_holds_and_releases_distributed_lock(self, session_factory):
        lock_cache = MagicMock()
        lock_cache.acquire_lock.return_value = "token-1"
        cache = ResponseCache(session_factory, lock_cache=lock_cache, lock_timeout_seconds=15)

        cache.get_or_fetch("epc", "k", lambda etag: 1)
        lock_key = lock_cache.acquire_lock.call_args[0][0]
        assert lock_key.startswith("fetch:")
        assert lock_cache.acquire_lock.call_args[1] == {"ttl": 15}
        lock_cache.release_lock.assert_called_once_with(lock_key, "token-1")

    def test_waits_for_peer_process(self, session_factory, monkeypatch):
        monkeypatch.setattr("ppuk.providers.cache.LOCK_POLL_INTERVAL", 0)
        lock_cache = MagicMock()
        lock_cache.is_available = True
        lock_cache.acquire_lock.return_value = None
        cache = ResponseCache(session_factory, lock_cache=lock_cache)

        def peer_finishes(lock_key):
            cache.put("epc", "k", {"from": "peer"})
            return True

        lock_cache.exists.side_effect = peer_finishes
        fetcher = MagicMock()

        assert cache.get_or_fetch("epc", "k", fetcher).payload == {"from": "peer"}
        fetcher.assert_not_called()
        lock_cache.release_lock.assert_not_called()

    def test_single_flight_across_threads(self, file_session_factory):
        cache = ResponseCache(file_session_factory)
        calls = []
        calls_lock = threading.Lock()

        def slow_fetch(etag):
            with calls_lock:
                calls.append(etag)
            time.sleep(0.05)
            return {"rating": "B"}

        results = []
        start = threading.Barrier(6)

        def request():
            start.wait()
            results.append(cache.get_or_fetch("epc", {"postcode": "LS1 1AA"}, slow_fetch).payload)

        threads = [threading.Thread(target=request) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert calls == [None]
        assert results == [{"rating": "B"}] * 6
