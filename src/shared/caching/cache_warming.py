"""
Cache warming for the Cold Caller data layer.

Proactively loads high-value entries (priority leads, dashboard stats) into
cache pools at startup. Warming is opportunistic: a failed job is logged and
counted, and the cold path stays correct without it.
"""

import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
from dataclasses import dataclass

from ..logging_config import get_logger
from .cache_manager import CacheManager, KeyBuilder

Loader = Callable[[Any], Awaitable[Dict[str, Any]]]


@dataclass
class WarmingJob:
    """Cache warming job configuration."""
    name: str
    pool: str
    data_loader: Loader
    ttl: Optional[int] = None
    priority: int = 1  # 1 = highest, 10 = lowest
    enabled: bool = True
    last_run: Optional[datetime] = None
    run_count: int = 0
    success_count: int = 0
    error_count: int = 0
    avg_duration: float = 0.0
    last_error: Optional[str] = None


class CacheWarmer:
    """Runs registered warming jobs against an executor."""

    def __init__(self, cache_manager: CacheManager, now: Callable[[], datetime] = datetime.utcnow):
        self.cache_manager = cache_manager
        self.logger = get_logger(__name__, 'cache_warmer')
        self._now = now

        self.jobs: Dict[str, WarmingJob] = {}

        self.stats = {
            'jobs_registered': 0,
            'jobs_executed': 0,
            'jobs_succeeded': 0,
            'jobs_failed': 0,
            'total_items_warmed': 0,
            'total_warming_time': 0.0
        }

    def register_job(self, job: WarmingJob) -> None:
        """Register a cache warming job."""
        self.cache_manager.pool(job.pool)
        self.jobs[job.name] = job
        self.stats['jobs_registered'] += 1
        self.logger.info(f"Registered cache warming job: {job.name}", operation="register_job")

    def register_default_jobs(self) -> None:
        """Register the popular-leads and dashboard-stats jobs."""
        self.register_job(WarmingJob('popular_leads', 'leads', self.popular_leads, ttl=600, priority=1))
        self.register_job(WarmingJob('common_stats', 'stats', self.common_stats, ttl=300, priority=2))

    def list_jobs(self, enabled_only: bool = True) -> List[WarmingJob]:
        """List warming jobs in priority order."""
        jobs = [job for job in self.jobs.values() if job.enabled or not enabled_only]
        return sorted(jobs, key=lambda j: j.priority)

    async def popular_leads(self, executor) -> Dict[str, Any]:
        """High and urgent priority leads plus anything updated in the last 24 hours."""
        since = self._now() - timedelta(hours=24)
        rows = await executor.execute(
            'SELECT * FROM leads '
            "WHERE priority IN ('high', 'urgent') OR \"updatedAt\" >= :since "
            'LIMIT 50',
            {'since': since},
        )
        return {KeyBuilder.lead(row['id']): row for row in rows}

    async def common_stats(self, executor) -> Dict[str, Any]:
        """Lead totals and today's call count for the dashboard."""
        now = self._now()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

        total = await executor.execute('SELECT COUNT(*) AS count FROM leads')
        active = await executor.execute(
            'SELECT COUNT(*) AS count FROM leads WHERE "isActive" = :active', {'active': True}
        )
        today = await executor.execute(
            'SELECT COUNT(*) AS count FROM call_logs WHERE "initiatedAt" >= :since', {'since': midnight}
        )

        return {
            'dashboard:stats': {
                'totalLeads': total[0]['count'],
                'activeLeads': active[0]['count'],
                'todayCalls': today[0]['count'],
            }
        }

    async def warm_job(self, job_name: str, executor) -> bool:
        """Execute a specific warming job; returns False on failure."""
        job = self.jobs.get(job_name)
        if not job or not job.enabled:
            self.logger.warning(f"Job {job_name} not found or disabled", operation="warm_job")
            return False

        start_time = time.perf_counter()
        job.run_count += 1
        job.last_run = self._now()
        self.stats['jobs_executed'] += 1

        try:
            data = await job.data_loader(executor)
            for key, value in data.items():
                self.cache_manager.set(job.pool, key, value, job.ttl)

            job.success_count += 1
            self.stats['jobs_succeeded'] += 1
            self.stats['total_items_warmed'] += len(data)
            self.logger.info(
                f"Warmed {len(data)} entries into {job.pool} via {job_name}",
                operation="warm_job",
                items=len(data),
            )
            return True

        except Exception as e:
            job.error_count += 1
            job.last_error = str(e)
            self.stats['jobs_failed'] += 1
            self.logger.warning(f"Cache warming job {job_name} failed: {e}", operation="warm_job")
            return False

        finally:
            duration = time.perf_counter() - start_time
            job.avg_duration = (job.avg_duration * (job.run_count - 1) + duration) / job.run_count
            self.stats['total_warming_time'] += duration

    async def warm_all(self, executor) -> Dict[str, bool]:
        """Run every enabled job in priority order; never raises."""
        return {job.name: await self.warm_job(job.name, executor) for job in self.list_jobs()}

    def get_stats(self) -> Dict[str, Any]:
        """Get warming statistics."""
        return {
            **self.stats,
            'jobs': {
                name: {
                    'runs': job.run_count,
                    'successes': job.success_count,
                    'failures': job.error_count,
                    'avg_duration': job.avg_duration,
                    'last_error': job.last_error,
                }
                for name, job in self.jobs.items()
            },
        }
