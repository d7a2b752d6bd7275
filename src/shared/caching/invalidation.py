"""
Cache invalidation for the Cold Caller data layer.

Invalidation is a set of named cascades. List and aggregate queries cannot be
addressed selectively, so a write to one entity flushes whole dependent pools.
"""

import time
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from ..logging_config import get_logger
from .cache_manager import CacheManager, KeyBuilder


# Pools each cascade may touch
CASCADE_TARGETS: Dict[str, FrozenSet[str]] = {
    'lead': frozenset({'leads', 'contacts', 'callLogs', 'stats'}),
    'contact': frozenset({'contacts'}),
    'call_log': frozenset({'callLogs', 'stats'}),
}


@dataclass
class InvalidationEvent:
    """A write that requires cache invalidation."""
    event_type: str
    lead_id: Optional[Any] = None
    entity_id: Optional[Any] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    source: str = "unknown"


class CacheInvalidator:
    """Applies named invalidation cascades to a CacheManager."""

    def __init__(self, cache_manager: CacheManager):
        self.cache_manager = cache_manager
        self.logger = get_logger(__name__, 'cache_invalidator')

        self.stats = {
            'events_processed': 0,
            'invalidations_executed': 0,
            'keys_invalidated': 0,
            'pools_flushed': 0,
            'total_processing_time': 0.0,
        }

    def cascade_targets(self, name: str) -> FrozenSet[str]:
        """Pools a cascade may touch; 'all' covers every pool."""
        if name == 'all':
            return frozenset(self.cache_manager.pools)
        try:
            return CASCADE_TARGETS[name]
        except KeyError:
            raise ValueError(f"Unknown invalidation cascade: {name}") from None

    def _delete(self, pool_name: str, key: str) -> None:
        if self.cache_manager.delete(pool_name, key):
            self.stats['keys_invalidated'] += 1

    def _flush(self, pool_name: str) -> None:
        self.cache_manager.flush(pool_name)
        self.stats['pools_flushed'] += 1

    def _finish(self, cascade: str, start: float) -> None:
        self.cache_manager.metrics.deletes += 1
        self.stats['invalidations_executed'] += 1
        self.stats['total_processing_time'] += time.perf_counter() - start
        self.logger.debug(f"Applied {cascade} invalidation cascade", operation="invalidate")

    def lead(self, lead_id) -> None:
        """Invalidate a lead, every lead list, its contacts, its calls and stats."""
        start = time.perf_counter()
        self._delete('leads', KeyBuilder.lead(lead_id))
        self._flush('leads')
        self._delete('contacts', KeyBuilder.contact_list(lead_id))
        self._delete('callLogs', KeyBuilder.call_logs(lead_id))
        self._flush('stats')
        self._finish('lead', start)

    def contact(self, lead_id, contact_id=None) -> None:
        """Invalidate the contact list of a lead."""
        start = time.perf_counter()
        self._delete('contacts', KeyBuilder.contact_list(lead_id))
        self._finish('contact', start)

    def call_log(self, lead_id, call_id=None) -> None:
        """Invalidate a lead's call history, one call record and call stats."""
        start = time.perf_counter()
        self._delete('callLogs', KeyBuilder.call_logs(lead_id))
        if call_id is not None:
            self._delete('callLogs', KeyBuilder.call_log(call_id))
        self._flush('stats')
        self._finish('call_log', start)

    def all(self) -> None:
        """Flush every pool; used after bulk writes."""
        for pool_name in self.cache_manager.pools:
            self._flush(pool_name)
        self.stats['invalidations_executed'] += 1
        self.logger.info("All caches invalidated", operation="invalidate_all")

    def handle(self, event: InvalidationEvent) -> None:
        """Dispatch an invalidation event to its cascade."""
        self.stats['events_processed'] += 1

        if event.event_type == 'lead':
            self.lead(event.lead_id)
        elif event.event_type == 'contact':
            self.contact(event.lead_id, event.entity_id)
        elif event.event_type == 'call_log':
            self.call_log(event.lead_id, event.entity_id)
        elif event.event_type == 'all':
            self.all()
        else:
            raise ValueError(f"Unknown invalidation cascade: {event.event_type}")

    def get_stats(self) -> Dict[str, Any]:
        """Get invalidation statistics."""
        return self.stats.copy()
