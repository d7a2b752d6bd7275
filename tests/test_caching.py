"""
Tests for the TTL cache manager, invalidation cascades and cache warming.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.shared.caching import (
    CASCADE_TARGETS,
    MISSING,
    CacheInvalidator,
    CacheManager,
    CachePool,
    CachePoolConfig,
    CacheWarmer,
    InvalidationEvent,
    KeyBuilder,
    WarmingJob,
    pool_configs_from_settings,
)
from src.shared.config import CacheSettings


@pytest.fixture
def cache(clock, metrics):
    return CacheManager(metrics=metrics, clock=clock)


class TestCachePool:
    """Test a single TTL pool."""

    def test_set_and_get(self, clock):
        """Test storing and reading a value."""
        pool = CachePool(CachePoolConfig("leads", ttl=300, check_period=60, max_keys=10), clock)
        pool.set("lead:1", {"id": 1})

        assert pool.get("lead:1") == {"id": 1}
        assert pool.get_stats()["hits"] == 1

    def test_entry_expires_after_ttl(self, clock):
        """Test that an entry is gone once its TTL has elapsed."""
        pool = CachePool(CachePoolConfig("stats", ttl=60, check_period=15, max_keys=10), clock)
        pool.set("stats:leads", 42)

        clock.advance(59)
        assert pool.get("stats:leads") == 42

        clock.advance(1)
        assert pool.lookup("stats:leads") is MISSING
        assert pool.get_stats()["expired"] == 1

    def test_zero_ttl_never_expires(self, clock):
        """Test that a TTL of zero disables expiry."""
        pool = CachePool(CachePoolConfig("leads", ttl=300, check_period=60, max_keys=10), clock)
        pool.set("lead:1", "value", ttl=0)

        clock.advance(10_000)
        assert pool.get("lead:1") == "value"

    def test_none_is_a_cacheable_value(self, clock):
        """Test that None is distinguished from a miss."""
        pool = CachePool(CachePoolConfig("leads", ttl=300, check_period=60, max_keys=10), clock)
        pool.set("lead:404", None)

        assert pool.lookup("lead:404") is None
        assert "lead:404" in pool

    def test_capacity_evicts_oldest(self, clock):
        """Test that the entry count never exceeds max_keys."""
        pool = CachePool(CachePoolConfig("stats", ttl=60, check_period=15, max_keys=3), clock)
        for i in range(5):
            pool.set(f"k{i}", i)

        assert len(pool) == 3
        assert pool.keys() == ["k2", "k3", "k4"]
        assert pool.get_stats()["evictions"] == 2

    def test_capacity_prefers_expired_entries(self, clock):
        """Test that expired entries are dropped before live ones."""
        pool = CachePool(CachePoolConfig("stats", ttl=60, check_period=15, max_keys=2), clock)
        pool.set("old", 1, ttl=10)
        pool.set("live", 2)
        clock.advance(11)
        pool.set("new", 3)

        assert sorted(pool.keys()) == ["live", "new"]
        assert pool.get_stats()["evictions"] == 0

    def test_purge_expired(self, clock):
        """Test purging expired entries."""
        pool = CachePool(CachePoolConfig("stats", ttl=60, check_period=15, max_keys=10), clock)
        pool.set("a", 1, ttl=5)
        pool.set("b", 2, ttl=100)
        clock.advance(6)

        assert pool.purge_expired() == 1
        assert pool.keys() == ["b"]


class TestKeyBuilder:
    """Test deterministic cache keys."""

    def test_entity_keys(self):
        """Test simple entity keys."""
        assert KeyBuilder.lead(7) == "lead:7"
        assert KeyBuilder.contact_list(7) == "contacts:7"
        assert KeyBuilder.call_logs(7) == "calls:7"
        assert KeyBuilder.call_log(3) == "call:3"
        assert KeyBuilder.lead_stats() == "stats:leads"

    def test_query_keys_ignore_argument_order(self):
        """Test that filter dictionaries produce stable keys."""
        assert KeyBuilder.lead_list({"status": "new", "page": 1}) == KeyBuilder.lead_list({"page": 1, "status": "new"})
        assert KeyBuilder.call_stats() == "callstats:all:{}"

    def test_query_hash(self):
        """Test that query keys hash SQL and parameters."""
        key = KeyBuilder.query("SELECT 1", [1])
        assert key.startswith("query:")
        assert key != KeyBuilder.query("SELECT 1", [2])
        assert key == KeyBuilder.query("SELECT 1", [1])


class TestCacheManager:
    """Test the cache manager and read-through wrapping."""

    def test_default_pools(self, cache):
        """Test that the five named pools exist."""
        assert set(cache.pools) == {"leads", "contacts", "callLogs", "stats", "queries"}
        assert cache.pool("contacts").config.ttl == 600

    def test_unknown_pool(self, cache):
        """Test that an unknown pool name is rejected."""
        with pytest.raises(KeyError):
            cache.pool("sessions")

    def test_pools_from_settings(self):
        """Test building pool configs from settings."""
        configs = pool_configs_from_settings(CacheSettings(cache_leads_ttl=30, cache_leads_max_keys=5))
        leads = next(config for config in configs if config.name == "leads")

        assert leads.ttl == 30
        assert leads.max_keys == 5
        assert [config.name for config in configs] == ["leads", "contacts", "callLogs", "stats", "queries"]

    async def test_wrap_caches_origin_result(self, cache):
        """Test that the origin runs once for repeated calls."""
        origin = AsyncMock(return_value={"id": 1})
        cached = cache.wrap("leads", KeyBuilder.lead, origin)

        assert await cached(1) == {"id": 1}
        assert await cached(1) == {"id": 1}

        origin.assert_awaited_once_with(1)
        assert cache.metrics.hits == 1
        assert cache.metrics.misses == 1
        assert cache.metrics.sets == 1

    async def test_wrap_with_literal_key(self, cache):
        """Test wrapping with a fixed key."""
        origin = AsyncMock(return_value=10)
        cached = cache.wrap("stats", "stats:leads", origin)

        await cached()
        await cached()
        assert origin.await_count == 1

    async def test_expired_entry_calls_origin_again(self, cache, clock):
        """Test that expiry sends the next read to the origin."""
        origin = AsyncMock(side_effect=[1, 2])
        cached = cache.wrap("stats", "stats:leads", origin)

        assert await cached() == 1
        clock.advance(61)
        assert await cached() == 2

    async def test_concurrent_misses_are_coalesced(self, cache):
        """Test that concurrent misses for one key share one origin call."""
        release = asyncio.Event()
        calls = 0

        async def origin():
            nonlocal calls
            calls += 1
            await release.wait()
            return "lead"

        cached = cache.wrap("leads", "lead:1", origin)
        tasks = [asyncio.create_task(cached()) for _ in range(10)]
        await asyncio.sleep(0)
        assert cache.in_flight_count() == 1

        release.set()
        results = await asyncio.gather(*tasks)

        assert results == ["lead"] * 10
        assert calls == 1
        assert cache.metrics.misses == 1
        assert cache.metrics.coalesced == 9
        assert cache.in_flight_count() == 0

    async def test_cancelled_caller_does_not_cancel_waiters(self, cache):
        """Test that cancelling the first caller leaves joined callers their result."""
        release = asyncio.Event()

        async def origin():
            await release.wait()
            return "value"

        cached = cache.wrap("leads", "lead:1", origin)
        first = asyncio.create_task(cached())
        await asyncio.sleep(0)
        second = asyncio.create_task(cached())
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        release.set()
        assert await second == "value"
        assert cache.get("leads", "lead:1") == "value"
        assert cache.metrics.misses == 1
        assert cache.metrics.coalesced == 1
        assert cache.in_flight_count() == 0

    async def test_origin_failure_propagates_and_is_not_cached(self, cache):
        """Test that origin errors reach every waiter and leave nothing cached."""
        release = asyncio.Event()

        async def origin():
            await release.wait()
            raise RuntimeError("database unavailable")

        cached = cache.wrap("leads", "lead:1", origin)
        tasks = [asyncio.create_task(cached()) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(result, RuntimeError) for result in results)
        assert cache.pool("leads").lookup("lead:1", count=False) is MISSING
        assert cache.in_flight_count() == 0

    async def test_cached_none_is_a_hit(self, cache):
        """Test that a None origin result is served from cache."""
        origin = AsyncMock(return_value=None)
        cached = cache.wrap("leads", "lead:404", origin)

        assert await cached() is None
        assert await cached() is None
        assert origin.await_count == 1

    async def test_performance_metrics(self, cache):
        """Test hit rate and counters in the metrics report."""
        cached = cache.wrap("leads", KeyBuilder.lead, AsyncMock(return_value="x"))
        await cached(1)
        await cached(1)
        await cached(1)

        report = cache.get_performance_metrics()
        assert report["hits"] == 2
        assert report["misses"] == 1
        assert report["total_requests"] == 3
        assert report["hit_rate"] == pytest.approx(66.67)
        assert report["cache_stats"]["leads"]["keys"] == 1

    def test_performance_metrics_with_no_traffic(self, cache):
        """Test that an idle cache reports no improvement."""
        report = cache.get_performance_metrics()
        assert report["hit_rate"] == 0.0
        assert report["performance_improvement"] == 0

    def test_health_check(self, cache):
        """Test per-pool health output."""
        cache.set("leads", "lead:1", 1)
        cache.get("leads", "lead:1")

        health = cache.health_check()
        assert health["status"] == "healthy"
        assert health["caches"]["leads"]["key_count"] == 1
        assert health["caches"]["leads"]["hit_rate"] == "100.00%"
        assert health["caches"]["stats"]["hit_rate"] == "0%"

    def test_optimize_purges_expired(self, cache, clock):
        """Test that optimize drops expired entries."""
        cache.set("stats", "a", 1)
        cache.set("leads", "b", 2)
        clock.advance(61)

        assert cache.optimize() == 1
        assert cache.get("leads", "b") == 2

    async def test_shutdown_flushes_pools(self, cache):
        """Test that shutdown stops the sweeper and empties every pool."""
        cache.set("leads", "lead:1", 1)
        cache.start_expiry_sweeper()
        assert cache._sweeper_tasks

        await cache.shutdown()

        assert not cache._sweeper_tasks
        assert len(cache.pool("leads")) == 0


class TestCacheInvalidator:
    """Test named invalidation cascades."""

    def _fill(self, cache):
        cache.set("leads", KeyBuilder.lead(1), {"id": 1})
        cache.set("leads", KeyBuilder.lead_list({"page": 1}), [1])
        cache.set("contacts", KeyBuilder.contact_list(1), [])
        cache.set("contacts", KeyBuilder.contact_list(2), [])
        cache.set("callLogs", KeyBuilder.call_logs(1), [])
        cache.set("callLogs", KeyBuilder.call_log(9), {})
        cache.set("stats", KeyBuilder.lead_stats(), {})
        cache.set("queries", KeyBuilder.query("SELECT 1"), 1)

    def test_cascade_targets(self, cache):
        """Test the pools each cascade may touch."""
        invalidator = CacheInvalidator(cache)

        assert invalidator.cascade_targets("lead") == {"leads", "contacts", "callLogs", "stats"}
        assert invalidator.cascade_targets("contact") == {"contacts"}
        assert invalidator.cascade_targets("call_log") == {"callLogs", "stats"}
        assert invalidator.cascade_targets("all") == set(cache.pools)

        with pytest.raises(ValueError):
            invalidator.cascade_targets("unknown")

    def test_lead_cascade(self, cache):
        """Test that a lead write clears lead lists and dependent entries."""
        self._fill(cache)
        CacheInvalidator(cache).lead(1)

        assert len(cache.pool("leads")) == 0
        assert cache.pool("contacts").keys() == [KeyBuilder.contact_list(2)]
        assert cache.pool("callLogs").keys() == [KeyBuilder.call_log(9)]
        assert len(cache.pool("stats")) == 0
        assert len(cache.pool("queries")) == 1
        assert cache.metrics.deletes == 1

    def test_contact_cascade_stays_in_contacts(self, cache):
        """Test that a contact write touches only the contacts pool."""
        self._fill(cache)
        CacheInvalidator(cache).contact(1)

        assert cache.pool("contacts").keys() == [KeyBuilder.contact_list(2)]
        assert len(cache.pool("leads")) == 2
        assert len(cache.pool("stats")) == 1

    def test_call_log_cascade(self, cache):
        """Test that a call write clears call history and stats."""
        self._fill(cache)
        CacheInvalidator(cache).call_log(1, call_id=9)

        assert len(cache.pool("callLogs")) == 0
        assert len(cache.pool("stats")) == 0
        assert len(cache.pool("leads")) == 2

    def test_cascades_never_touch_other_pools(self, cache):
        """Test that each cascade leaves pools outside its targets intact."""
        invalidator = CacheInvalidator(cache)
        for name, apply in (("lead", lambda: invalidator.lead(1)),
                            ("contact", lambda: invalidator.contact(1)),
                            ("call_log", lambda: invalidator.call_log(1, 9))):
            self._fill(cache)
            before = {pool: len(cache.pool(pool)) for pool in cache.pools}
            apply()
            for pool in set(cache.pools) - CASCADE_TARGETS[name]:
                assert len(cache.pool(pool)) == before[pool]
            cache.flush_all()

    def test_handle_event(self, cache):
        """Test dispatching invalidation events."""
        self._fill(cache)
        invalidator = CacheInvalidator(cache)

        invalidator.handle(InvalidationEvent("all"))
        assert all(len(pool) == 0 for pool in cache.pools.values())

        with pytest.raises(ValueError):
            invalidator.handle(InvalidationEvent("note"))
        assert invalidator.get_stats()["events_processed"] == 2


class TestCacheWarmer:
    """Test opportunistic cache warming."""

    async def test_default_jobs_load_entries(self, cache):
        """Test that the default jobs populate leads and stats."""
        executor = AsyncMock()
        executor.execute.side_effect = [
            [{"id": 1, "priority": "high"}, {"id": 2, "priority": "urgent"}],
            [{"count": 10}],
            [{"count": 8}],
            [{"count": 3}],
        ]
        warmer = CacheWarmer(cache)
        warmer.register_default_jobs()

        results = await warmer.warm_all(executor)

        assert results == {"popular_leads": True, "common_stats": True}
        assert cache.metrics.sets == 3
        assert cache.get("leads", "lead:2") == {"id": 2, "priority": "urgent"}
        assert cache.get("stats", "dashboard:stats") == {"totalLeads": 10, "activeLeads": 8, "todayCalls": 3}

    async def test_failed_job_does_not_raise(self, cache):
        """Test that a failing loader is logged and counted."""
        warmer = CacheWarmer(cache)
        warmer.register_job(WarmingJob("broken", "leads", AsyncMock(side_effect=RuntimeError("boom"))))

        assert await warmer.warm_all(AsyncMock()) == {"broken": False}
        stats = warmer.get_stats()
        assert stats["jobs_failed"] == 1
        assert stats["jobs"]["broken"]["last_error"] == "boom"

    def test_register_job_requires_known_pool(self, cache):
        """Test that jobs must target an existing pool."""
        with pytest.raises(KeyError):
            CacheWarmer(cache).register_job(WarmingJob("x", "sessions", AsyncMock()))

    async def test_disabled_job_is_skipped(self, cache):
        """Test that disabled jobs are not run."""
        loader = AsyncMock(return_value={"a": 1})
        warmer = CacheWarmer(cache)
        warmer.register_job(WarmingJob("off", "leads", loader, enabled=False))

        assert await warmer.warm_all(AsyncMock()) == {}
        loader.assert_not_awaited()
