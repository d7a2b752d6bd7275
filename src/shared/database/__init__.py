"""
Query performance monitoring and index advisory for the Cold Caller data layer.

This package provides:
- A query interceptor that aggregates timing and retains slow samples
- Pattern analysis, recommendations and health status
- A catalog-driven index advisor with impact estimates and benchmarks
"""

from .performance_monitor import (
    QueryType,
    QuerySample,
    QueryWindow,
    PerformanceMonitor,
    classify_query,
    extract_table,
    extract_tables,
    extract_columns,
)

from .index_advisor import (
    IndexKind,
    Priority,
    CatalogEntry,
    ExistingIndex,
    TableStatistics,
    ImpactEstimate,
    IndexRecommendation,
    IndexAdvisor,
    INDEX_CATALOG,
    extract_columns_from_index,
    index_exists,
)

__all__ = [
    # Enums and data classes
    'QueryType',
    'QuerySample',
    'IndexKind',
    'Priority',
    'CatalogEntry',
    'ExistingIndex',
    'TableStatistics',
    'ImpactEstimate',
    'IndexRecommendation',
    'INDEX_CATALOG',

    # Core classes
    'QueryWindow',
    'PerformanceMonitor',
    'IndexAdvisor',

    # Helpers
    'classify_query',
    'extract_table',
    'extract_tables',
    'extract_columns',
    'extract_columns_from_index',
    'index_exists',
]
