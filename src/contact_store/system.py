"""
Contact Store - Data Layer System
Startup, health, optimisation and shutdown for the Cold Caller data layer.

This module wires the database manager, query performance monitor, cache
manager, cache warmer and index advisor together. Each service is built
once here and handed the collaborators it needs.
"""
import asyncio
import signal
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..shared.caching import CacheInvalidator, CacheManager, CacheWarmer, pool_configs_from_settings
from ..shared.config import Settings, get_settings
from ..shared.database import IndexAdvisor, PerformanceMonitor
from ..shared.errors import DataLayerError
from ..shared.logging_config import get_logger
from ..shared.metrics_collector import MetricsCollector
from .database import DatabaseManager
from . import schema

_STATUS_RANK = {'healthy': 0, 'degraded': 1, 'unhealthy': 2}


def worst_status(statuses: List[str]) -> str:
    """Most severe of the given component statuses."""
    worst = 'healthy'
    for status in statuses:
        if _STATUS_RANK.get(status, 2) > _STATUS_RANK[worst]:
            worst = status if status in _STATUS_RANK else 'unhealthy'
    return worst


class DataLayerSystem:
    """Owns every data-layer service for the lifetime of the process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsCollector] = None,
        database: Optional[DatabaseManager] = None,
    ):
        self.settings = settings or get_settings()
        self.logger = get_logger(__name__, 'contact_store')
        self.metrics = metrics or MetricsCollector()

        monitoring = self.settings.monitoring
        self.monitor = PerformanceMonitor(
            slow_query_threshold_ms=monitoring.slow_query_threshold_ms,
            max_slow_queries=monitoring.max_slow_queries,
            metrics=self.metrics,
            sample_interval=monitoring.connection_sample_interval,
        )

        self.db = database or DatabaseManager(self.settings.database)
        self.db.add_interceptor(self.monitor)
        self.monitor.connection_stats = self.db.get_connection_stats

        self.cache = CacheManager(pool_configs_from_settings(self.settings.cache), metrics=self.metrics)
        self.invalidator = CacheInvalidator(self.cache)
        self.warmer = CacheWarmer(self.cache)
        self.warmer.register_default_jobs()
        self.index_advisor = IndexAdvisor(self.db, self.monitor, metrics=self.metrics)

        self.is_initialized = False
        self._shutdown_complete = False
        self._shutdown_task: Optional[asyncio.Task] = None

    async def initialize(
        self,
        run_migrations: bool = True,
        enable_monitoring: bool = True,
        preload_cache: bool = True,
    ) -> Dict[str, Any]:
        """
        Bring the data layer up.

        Connects with retry, creates the schema, verifies the model tables,
        starts query monitoring, preloads the cache and runs a health check.

        Raises:
            DataLayerError: If any required step fails
        """
        start = time.perf_counter()
        self.logger.info("Initializing data layer", operation="initialize")

        try:
            await self.db.connect_with_retry()

            migrated: List[str] = []
            if run_migrations:
                migrated = await schema.run_migrations(self.db)

            tables = await schema.verify_models(self.db)

            if enable_monitoring:
                await self.monitor.start()

            self.cache.start_expiry_sweeper()

            warmed: Dict[str, bool] = {}
            if preload_cache and self.settings.cache.cache_preload_enabled:
                warmed = await self.warmer.warm_all(self.db)

            health = await self.perform_health_check()

        except DataLayerError:
            raise
        except Exception as e:
            self.logger.error(f"Data layer initialization failed: {e}", operation="initialize")
            raise DataLayerError(f"Data layer initialization failed: {e}") from e

        self.is_initialized = True
        self._shutdown_complete = False
        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        self.logger.info(
            f"Data layer initialized in {duration_ms}ms",
            operation="initialize",
            status=health['status'],
            migrated=len(migrated),
            warmed=sum(1 for ok in warmed.values() if ok),
        )

        return {
            'initialized': True,
            'duration_ms': duration_ms,
            'tables': list(tables),
            'migrations_applied': migrated,
            'cache_preload': warmed,
            'health': health,
        }

    async def perform_health_check(self) -> Dict[str, Any]:
        """Health of the database, query performance and cache; never raises."""
        components: Dict[str, Any] = {}

        try:
            components['database'] = await self.db.health_check()
        except Exception as e:
            components['database'] = {'status': 'unhealthy', 'error': str(e)}

        components['performance'] = await self.monitor.health_check(self.db.ping)
        components['cache'] = self.cache.health_check()

        status = worst_status([component.get('status', 'unhealthy') for component in components.values()])
        if status != 'healthy':
            self.logger.warning(f"Data layer health is {status}", operation="health_check")

        return {
            'status': status,
            'timestamp': datetime.utcnow().isoformat(),
            'components': components,
        }

    async def optimize(self) -> Dict[str, Any]:
        """Purge expired cache entries and collect query recommendations."""
        self.logger.info("Running data layer optimization", operation="optimize")

        purged = self.cache.optimize()
        recommendations = await self.monitor.generate_optimization_recommendations(self.db)

        return {
            'timestamp': datetime.utcnow().isoformat(),
            'cache_entries_purged': purged,
            'recommendations': recommendations,
        }

    def get_stats(self) -> Dict[str, Any]:
        """Performance, cache, connection and process statistics."""
        return {
            'timestamp': datetime.utcnow().isoformat(),
            'initialized': self.is_initialized,
            'performance': self.monitor.get_performance_stats(),
            'cache': self.cache.get_performance_metrics(),
            'connections': self.db.get_connection_stats(),
            'process': self.metrics.collect_process_metrics(),
        }

    async def shutdown(self) -> None:
        """Stop monitoring, shut the cache down and close the database."""
        if self._shutdown_complete:
            return

        self.logger.info("Shutting down data layer", operation="shutdown")

        await self.monitor.stop()
        await self.cache.shutdown()
        await self.db.close()

        self.is_initialized = False
        self._shutdown_complete = True
        self.logger.info("Data layer shutdown complete", operation="shutdown")

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Shut down on SIGINT or SIGTERM."""
        loop = loop or asyncio.get_running_loop()

        def _request_shutdown(signame: str) -> None:
            self.logger.info(f"Received {signame}, shutting down", operation="signal")
            if self._shutdown_task is None or self._shutdown_task.done():
                self._shutdown_task = loop.create_task(self.shutdown())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
