"""
TTL cache pools for the Cold Caller data layer.

Provides named in-memory pools keyed by entity type (leads, contacts,
callLogs, stats, queries), a read-through wrapper with per-key in-flight
de-duplication, and hit/miss/latency metrics for operator reporting.
"""

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, MetricUnit, get_metrics_collector

Clock = Callable[[], float]


class _Missing:
    """Sentinel for absent cache entries (None is a valid cached value)."""

    def __repr__(self):
        return "MISSING"


MISSING = _Missing()


@dataclass(frozen=True)
class CachePoolConfig:
    """TTL, sweep interval (seconds) and capacity of a pool."""
    name: str
    ttl: int
    check_period: int
    max_keys: int


DEFAULT_POOL_CONFIGS: Tuple[CachePoolConfig, ...] = (
    CachePoolConfig("leads", ttl=300, check_period=60, max_keys=1000),
    CachePoolConfig("contacts", ttl=600, check_period=120, max_keys=2000),
    CachePoolConfig("callLogs", ttl=180, check_period=30, max_keys=500),
    CachePoolConfig("stats", ttl=60, check_period=15, max_keys=100),
    CachePoolConfig("queries", ttl=120, check_period=30, max_keys=500),
)


@dataclass
class CacheEntry:
    """Cache entry with expiry metadata."""
    key: str
    value: Any
    created_at: float
    expires_at: Optional[float]
    size_bytes: int = 0

    def is_expired(self, now: float) -> bool:
        """Check if the cache entry is expired."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class CachePool:
    """A single named TTL pool with bounded capacity."""

    def __init__(self, config: CachePoolConfig, clock: Clock = time.monotonic):
        self.config = config
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.stats = {
            'hits': 0,
            'misses': 0,
            'evictions': 0,
            'expired': 0,
        }

    @property
    def name(self) -> str:
        return self.config.name

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.lookup(key, count=False) is not MISSING

    def lookup(self, key: str, count: bool = True) -> Any:
        """Return the live value for key, or MISSING."""
        entry = self._entries.get(key)
        if entry is not None and entry.is_expired(self._clock()):
            del self._entries[key]
            self.stats['expired'] += 1
            entry = None

        if entry is None:
            if count:
                self.stats['misses'] += 1
            return MISSING

        if count:
            self.stats['hits'] += 1
        return entry.value

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from the pool."""
        value = self.lookup(key)
        return default if value is MISSING else value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value; ttl of 0 means the entry never expires."""
        ttl = self.config.ttl if ttl is None else ttl
        now = self._clock()
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl if ttl > 0 else None,
            size_bytes=len(str(value).encode('utf-8')),
        )
        if len(self._entries) > self.config.max_keys:
            self._evict()

    def _evict(self) -> None:
        self.purge_expired()
        while len(self._entries) > self.config.max_keys:
            self._entries.popitem(last=False)
            self.stats['evictions'] += 1

    def delete(self, key: str) -> bool:
        """Delete key from the pool."""
        return self._entries.pop(key, None) is not None

    def flush(self) -> int:
        """Remove every entry; returns how many were removed."""
        count = len(self._entries)
        self._entries.clear()
        return count

    def keys(self) -> List[str]:
        """Keys of live entries."""
        now = self._clock()
        return [key for key, entry in self._entries.items() if not entry.is_expired(now)]

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were dropped."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self.stats['expired'] += len(expired)
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics."""
        return {
            **self.stats,
            'keys': len(self._entries),
            'ksize': sum(len(key) for key in self._entries),
            'vsize': sum(entry.size_bytes for entry in self._entries.values()),
        }


@dataclass
class CacheMetrics:
    """Process-wide cache counters; reset only on explicit request."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    coalesced: int = 0
    cache_time_ms: float = 0.0
    origin_time_ms: float = 0.0
    start_time: float = field(default_factory=time.time)

    def reset(self) -> None:
        """Zero every counter and restart the uptime clock."""
        self.hits = self.misses = self.sets = self.deletes = self.coalesced = 0
        self.cache_time_ms = self.origin_time_ms = 0.0
        self.start_time = time.time()


def _stable_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, separators=(',', ':'))


class KeyBuilder:
    """Deterministic cache key derivation."""

    @staticmethod
    def lead(lead_id) -> str:
        return f"lead:{lead_id}"

    @staticmethod
    def lead_list(query: Optional[Dict[str, Any]] = None) -> str:
        return f"leads:{_stable_json(query or {})}"

    @staticmethod
    def lead_stats() -> str:
        return "stats:leads"

    @staticmethod
    def lead_search(term: str, filters: Optional[Dict[str, Any]] = None) -> str:
        return f"search:{term}:{_stable_json(filters or {})}"

    @staticmethod
    def contact(lead_id, contact_type: str) -> str:
        return f"contact:{lead_id}:{contact_type}"

    @staticmethod
    def contact_list(lead_id) -> str:
        return f"contacts:{lead_id}"

    @staticmethod
    def call_log(call_id) -> str:
        return f"call:{call_id}"

    @staticmethod
    def call_logs(lead_id) -> str:
        return f"calls:{lead_id}"

    @staticmethod
    def call_stats(agent_id=None, date_range: Optional[Dict[str, Any]] = None) -> str:
        return f"callstats:{agent_id or 'all'}:{_stable_json(date_range or {})}"

    @staticmethod
    def query(sql: str, params: Any = None) -> str:
        digest = hashlib.md5((sql + _stable_json(params if params is not None else [])).encode('utf-8'))
        return f"query:{digest.hexdigest()}"


KeyFn = Union[str, Callable[..., str]]


def _consume_result(task: asyncio.Future) -> None:
    # Loads whose callers were all cancelled must not warn about unretrieved errors
    if not task.cancelled():
        task.exception()


class CacheManager:
    """Owns every cache pool and the counters describing their use."""

    def __init__(
        self,
        pool_configs: Optional[List[CachePoolConfig]] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Clock = time.monotonic,
    ):
        self.logger = get_logger(__name__, 'cache_manager')
        self.collector = metrics or get_metrics_collector()
        self.metrics = CacheMetrics()
        self._clock = clock
        self.pools: Dict[str, CachePool] = {
            config.name: CachePool(config, clock)
            for config in (pool_configs or DEFAULT_POOL_CONFIGS)
        }
        self._in_flight: Dict[Tuple[str, str], asyncio.Future] = {}
        self._sweeper_tasks: List[asyncio.Task] = []

        self._hit_counter = self.collector.get_counter('cache_hits_total', 'Cache hits')
        self._miss_counter = self.collector.get_counter('cache_misses_total', 'Cache misses')
        self._hit_rate = self.collector.get_gauge('cache_hit_rate', 'Cache hit rate', MetricUnit.PERCENT)

    def pool(self, name: str) -> CachePool:
        """Get a pool by name."""
        try:
            return self.pools[name]
        except KeyError:
            raise KeyError(f"Unknown cache pool: {name}") from None

    def get(self, pool_name: str, key: str, default: Any = None) -> Any:
        return self.pool(pool_name).get(key, default)

    def set(self, pool_name: str, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.pool(pool_name).set(key, value, ttl)
        self.metrics.sets += 1

    def delete(self, pool_name: str, key: str) -> bool:
        return self.pool(pool_name).delete(key)

    def flush(self, pool_name: str) -> int:
        return self.pool(pool_name).flush()

    def flush_all(self) -> None:
        for pool in self.pools.values():
            pool.flush()

    def wrap(
        self,
        pool_name: str,
        key_fn: KeyFn,
        origin_fn: Callable[..., Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Callable[..., Awaitable[Any]]:
        """
        Wrap an async origin function with read-through caching.

        Args:
            pool_name: Pool that stores the results
            key_fn: Literal key, or callable deriving the key from the call arguments
            origin_fn: Coroutine function producing the value on a miss
            ttl: Optional TTL override in seconds

        Returns:
            Coroutine function with the same signature as origin_fn
        """
        self.pool(pool_name)

        async def cached_call(*args, **kwargs):
            key = key_fn(*args, **kwargs) if callable(key_fn) else key_fn
            return await self.fetch(pool_name, key, lambda: origin_fn(*args, **kwargs), ttl)

        cached_call.__name__ = getattr(origin_fn, '__name__', 'cached_call')
        cached_call.__doc__ = getattr(origin_fn, '__doc__', None)
        return cached_call

    async def fetch(
        self,
        pool_name: str,
        key: str,
        origin: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Any:
        """Return the cached value for key, calling origin once on a miss."""
        pool = self.pool(pool_name)
        start = time.perf_counter()

        value = pool.lookup(key)
        if value is not MISSING:
            self.metrics.hits += 1
            self.metrics.cache_time_ms += (time.perf_counter() - start) * 1000
            self._hit_counter.increment(pool=pool_name)
            return value

        flight_key = (pool_name, key)
        pending = self._in_flight.get(flight_key)
        if pending is not None:
            self.metrics.coalesced += 1
            return await asyncio.shield(pending)

        self.metrics.misses += 1
        self._miss_counter.increment(pool=pool_name)

        # Shared by every caller; cancelling one caller does not cancel the load
        load = asyncio.ensure_future(self._load(pool, key, origin, ttl))
        load.add_done_callback(_consume_result)
        self._in_flight[flight_key] = load
        load.add_done_callback(lambda _: self._in_flight.pop(flight_key, None))
        return await asyncio.shield(load)

    async def _load(
        self,
        pool: CachePool,
        key: str,
        origin: Callable[[], Awaitable[Any]],
        ttl: Optional[int],
    ) -> Any:
        try:
            origin_start = time.perf_counter()
            result = await origin()
        except Exception as e:
            self.logger.error(
                f"Cache origin failed for {pool.name}:{key}: {e}",
                operation="fetch",
                pool=pool.name,
                cache_key=key,
            )
            raise

        self.metrics.origin_time_ms += (time.perf_counter() - origin_start) * 1000
        pool.set(key, result, ttl)
        self.metrics.sets += 1
        return result

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_performance_metrics(self) -> Dict[str, Any]:
        """Get hit rate, latency averages and per-pool statistics."""
        m = self.metrics
        total = m.hits + m.misses
        hit_rate = (m.hits / total * 100) if total else 0.0
        avg_cache = m.cache_time_ms / m.hits if m.hits else 0.0
        avg_origin = m.origin_time_ms / m.misses if m.misses else 0.0

        if avg_origin > 0 and avg_cache > 0:
            improvement = round(avg_origin / avg_cache, 2)
        else:
            improvement = 0

        self._hit_rate.set(hit_rate)

        return {
            'uptime': int(time.time() - m.start_time),
            'hit_rate': round(hit_rate, 2),
            'total_requests': total,
            'hits': m.hits,
            'misses': m.misses,
            'sets': m.sets,
            'deletes': m.deletes,
            'coalesced': m.coalesced,
            'avg_cache_response_time': round(avg_cache, 2),
            'avg_origin_response_time': round(avg_origin, 2),
            'performance_improvement': improvement,
            'cache_stats': {name: pool.get_stats() for name, pool in self.pools.items()},
        }

    def health_check(self) -> Dict[str, Any]:
        """Report per-pool health; never raises."""
        health = {
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'caches': {},
        }

        try:
            for name, pool in self.pools.items():
                stats = pool.get_stats()
                requests = stats['hits'] + stats['misses']
                health['caches'][name] = {
                    'status': 'healthy',
                    'key_count': len(pool.keys()),
                    'hits': stats['hits'],
                    'misses': stats['misses'],
                    'hit_rate': f"{stats['hits'] / requests * 100:.2f}%" if requests else '0%',
                }
        except Exception as e:
            health['status'] = 'unhealthy'
            health['error'] = str(e)
            self.logger.error(f"Cache health check failed: {e}", operation="health_check")

        return health

    def optimize(self) -> int:
        """Purge expired entries from every pool and log pool stats."""
        purged = 0
        for name, pool in self.pools.items():
            purged += pool.purge_expired()
            stats = pool.get_stats()
            self.logger.info(
                f"{name}: {stats['keys']} keys, {stats['hits']} hits, {stats['misses']} misses",
                operation="optimize",
            )
        self.logger.info(f"Cache optimization complete, {purged} expired entries purged", operation="optimize")
        return purged

    def start_expiry_sweeper(self) -> None:
        """Start one background sweep task per pool."""
        if self._sweeper_tasks:
            return
        for pool in self.pools.values():
            if pool.config.check_period > 0:
                self._sweeper_tasks.append(asyncio.create_task(self._sweep(pool)))
        self.logger.info("Started cache expiry sweeper", operation="start_expiry_sweeper")

    async def stop_expiry_sweeper(self) -> None:
        """Cancel the sweep tasks and wait for them to finish."""
        tasks, self._sweeper_tasks = self._sweeper_tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _sweep(self, pool: CachePool) -> None:
        while True:
            await asyncio.sleep(pool.config.check_period)
            purged = pool.purge_expired()
            if purged:
                self.logger.debug(f"Purged {purged} expired entries from {pool.name}", operation="sweep")

    async def shutdown(self) -> None:
        """Stop background sweeping and flush every pool."""
        self.logger.info("Shutting down cache manager", operation="shutdown")
        await self.stop_expiry_sweeper()
        self.flush_all()
        self.logger.info("Cache manager shutdown complete", operation="shutdown")


def pool_configs_from_settings(cache_settings) -> List[CachePoolConfig]:
    """Build pool configs from CacheSettings."""
    return [CachePoolConfig(**definition) for definition in cache_settings.pool_definitions()]
