"""
In-memory TTL caching for the Cold Caller data layer.

This package provides:
- Named TTL pools with bounded capacity and read-through wrapping
- Named cascade invalidation
- Opportunistic startup cache warming
"""

from .cache_manager import (
    MISSING,
    CacheEntry,
    CacheManager,
    CacheMetrics,
    CachePool,
    CachePoolConfig,
    DEFAULT_POOL_CONFIGS,
    KeyBuilder,
    pool_configs_from_settings,
)

from .cache_warming import (
    CacheWarmer,
    WarmingJob,
)

from .invalidation import (
    CASCADE_TARGETS,
    CacheInvalidator,
    InvalidationEvent,
)

__all__ = [
    # Core classes
    'MISSING',
    'CacheEntry',
    'CacheManager',
    'CacheMetrics',
    'CachePool',
    'CachePoolConfig',
    'DEFAULT_POOL_CONFIGS',
    'KeyBuilder',

    # Cache warming
    'CacheWarmer',
    'WarmingJob',

    # Cache invalidation
    'CASCADE_TARGETS',
    'CacheInvalidator',
    'InvalidationEvent',

    # Factory functions
    'pool_configs_from_settings',
]
