"""
Query performance monitoring for the Cold Caller data layer.

The monitor is a query interceptor: the database manager calls
``after_query`` once per execution. It keeps O(1) aggregate counters, a
bounded buffer of slow samples, and derives pattern analysis and health
status on demand.
"""

import asyncio
import re
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, MetricUnit, get_metrics_collector


class QueryType(str, Enum):
    """Query type enumeration."""
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CREATE = "CREATE"
    DROP = "DROP"
    ALTER = "ALTER"
    OTHER = "OTHER"


_PREFIXED_TYPES = [t for t in QueryType if t is not QueryType.OTHER]

_TABLE_PATTERNS = [
    re.compile(r'FROM\s+[`"]?(\w+)[`"]?', re.IGNORECASE),
    re.compile(r'INTO\s+[`"]?(\w+)[`"]?', re.IGNORECASE),
    re.compile(r'UPDATE\s+[`"]?(\w+)[`"]?', re.IGNORECASE),
]
_FROM_JOIN_PATTERN = re.compile(r'(?:FROM|JOIN)\s+[`"]?(\w+)[`"]?', re.IGNORECASE)
_WHERE_PATTERN = re.compile(r'WHERE\s+.*?(?:ORDER|GROUP|LIMIT|$)', re.IGNORECASE | re.DOTALL)
_WHERE_COLUMN_PATTERN = re.compile(r'[`"]?(\w+)[`"]?\s*[=<>!]')
_ORDER_PATTERN = re.compile(r'ORDER\s+BY\s+(.*?)(?:LIMIT|$)', re.IGNORECASE | re.DOTALL)

MAX_SAMPLE_SQL_LENGTH = 200


def classify_query(sql: str) -> QueryType:
    """Classify a statement by its leading keyword."""
    head = sql.lstrip().upper()
    for query_type in _PREFIXED_TYPES:
        if head.startswith(query_type.value):
            return query_type
    return QueryType.OTHER


def extract_table(sql: str) -> Optional[str]:
    """Best-effort table guess from FROM, then INTO, then UPDATE clauses."""
    try:
        for pattern in _TABLE_PATTERNS:
            match = pattern.search(sql)
            if match:
                return match.group(1)
    except (TypeError, re.error):
        pass
    return None


def extract_tables(sql: str) -> List[str]:
    """Distinct tables named in FROM and JOIN clauses, in order of appearance."""
    tables = []
    for table in _FROM_JOIN_PATTERN.findall(sql):
        if table not in tables:
            tables.append(table)
    return tables


def extract_columns(sql: str) -> List[str]:
    """Columns compared in WHERE and listed in ORDER BY."""
    columns = []

    where = _WHERE_PATTERN.search(sql)
    if where:
        for column in _WHERE_COLUMN_PATTERN.findall(where.group(0)):
            if column not in columns:
                columns.append(column)

    order = _ORDER_PATTERN.search(sql)
    if order:
        for part in order.group(1).split(','):
            column = re.sub(r'\s+(ASC|DESC)$', '', part.strip(), flags=re.IGNORECASE)
            if column and column not in columns:
                columns.append(column)

    return columns


def truncate_sql(sql: str) -> str:
    if len(sql) > MAX_SAMPLE_SQL_LENGTH:
        return sql[:MAX_SAMPLE_SQL_LENGTH] + '...'
    return sql


@dataclass
class QuerySample:
    """A retained slow query."""
    sql: str
    duration_ms: float
    timestamp: datetime
    query_type: QueryType
    table: Optional[str] = None
    has_error: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sql': self.sql,
            'duration': round(self.duration_ms),
            'timestamp': self.timestamp.isoformat(),
            'type': self.query_type.value,
            'table': self.table,
            'has_error': self.has_error,
            'error': self.error,
        }


@dataclass
class _Aggregate:
    count: int = 0
    total_time: float = 0.0
    slow: int = 0

    @property
    def average(self) -> float:
        return self.total_time / self.count if self.count else 0.0


class QueryWindow:
    """Temporary observer collecting every query for a bounded period."""

    def __init__(self, threshold_ms: float):
        self.threshold_ms = threshold_ms
        self.query_count = 0
        self.slow_queries: List[Dict[str, Any]] = []

    def record(self, sql: str, duration_ms: float) -> None:
        self.query_count += 1
        if duration_ms > self.threshold_ms:
            self.slow_queries.append({
                'sql': sql[:MAX_SAMPLE_SQL_LENGTH],
                'duration': round(duration_ms),
                'timestamp': time.time(),
            })


def most_frequent_slow_patterns(samples: List[Dict[str, Any]], limit: int = 5) -> List[Dict[str, Any]]:
    """Group slow samples by the tables they touch; most frequent first."""
    patterns: Dict[str, Dict[str, Any]] = {}

    for sample in samples:
        pattern = '_'.join(extract_tables(sample['sql']))
        entry = patterns.setdefault(pattern, {'count': 0, 'total_duration': 0, 'example': sample['sql']})
        entry['count'] += 1
        entry['total_duration'] += sample['duration']
        entry['avg_duration'] = entry['total_duration'] / entry['count']

    ranked = sorted(patterns.items(), key=lambda item: item[1]['count'], reverse=True)
    return [{'pattern': pattern, **data} for pattern, data in ranked[:limit]]


# Fields worth a single-column index when no index name mentions them
COMMON_INDEX_FIELDS = {
    'leads': ['email', 'phone', 'status', 'priority', 'assignedTo', 'nextFollowUpDate'],
    'contacts': ['leadId', 'type', 'isPrimary'],
    'call_logs': ['leadId', 'initiatedAt', 'status', 'agentId'],
}


class PerformanceMonitor:
    """Records every query and reports aggregate and slow-query statistics."""

    def __init__(
        self,
        slow_query_threshold_ms: float = 1000.0,
        max_slow_queries: int = 100,
        metrics: Optional[MetricsCollector] = None,
        connection_stats: Optional[Callable[[], Dict[str, int]]] = None,
        sample_interval: Optional[float] = None,
    ):
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.logger = get_logger(__name__, 'performance_monitor')
        self.collector = metrics or get_metrics_collector()
        self.connection_stats = connection_stats
        self.sample_interval = sample_interval

        self.slow_queries: Deque[QuerySample] = deque(maxlen=max_slow_queries)
        self.enabled = False
        self._windows: List[QueryWindow] = []
        self._sampler_task: Optional[asyncio.Task] = None

        self._query_counter = self.collector.get_counter('database_queries_total', 'Executed queries')
        self._slow_counter = self.collector.get_counter('database_slow_queries_total', 'Slow queries')
        self._duration = self.collector.get_histogram(
            'database_query_duration_ms', 'Query duration', MetricUnit.MILLISECONDS
        )
        self._active_connections = self.collector.get_gauge('database_connections_active', 'Active connections')

        self._reset_counters()

    def _reset_counters(self) -> None:
        self.total_queries = 0
        self.total_time = 0.0
        self.slow_query_count = 0
        self.error_count = 0
        self.by_type: Dict[QueryType, _Aggregate] = {t: _Aggregate() for t in QueryType}
        self.by_table: Dict[str, _Aggregate] = defaultdict(_Aggregate)
        self.peak_connections = 0
        self.start_time = time.time()
        self.last_reset = self.start_time

    async def start(self) -> None:
        """Enable recording and the optional connection sampler."""
        if self.enabled:
            self.logger.warning("Performance monitoring is already running", operation="start")
            return

        self.enabled = True
        if self.sample_interval and self.connection_stats:
            self._sampler_task = asyncio.create_task(self._sample_loop())
        self.logger.info("Query performance monitoring enabled", operation="start")

    async def stop(self) -> None:
        """Disable recording and stop the sampler."""
        if not self.enabled:
            return

        self.enabled = False
        if self._sampler_task:
            self._sampler_task.cancel()
            try:
                await self._sampler_task
            except asyncio.CancelledError:
                pass
            self._sampler_task = None
        self.logger.info("Query performance monitoring stopped", operation="stop")

    async def _sample_loop(self) -> None:
        while True:
            try:
                self.sample_connections()
            except Exception as e:
                self.logger.error(f"Error sampling connections: {e}", operation="sample_connections")
            await asyncio.sleep(self.sample_interval)

    def sample_connections(self) -> Dict[str, int]:
        """Read current connection usage and update the peak."""
        if self.connection_stats is None:
            return {'active': 0, 'peak': self.peak_connections, 'total': 0}

        stats = dict(self.connection_stats())
        self.peak_connections = max(self.peak_connections, stats.get('peak', 0), stats.get('active', 0))
        stats['peak'] = self.peak_connections
        self._active_connections.set(stats.get('active', 0))
        return stats

    def after_query(self, sql: str, duration_ms: float, error: Optional[BaseException] = None) -> None:
        """Interceptor hook called by the database manager after every execution."""
        for window in self._windows:
            window.record(sql, duration_ms)

        if self.enabled:
            self.record_query(sql, duration_ms, error)

    def record_query(self, sql: str, duration_ms: float, error: Optional[BaseException] = None) -> None:
        """Record one execution; slow queries are counted, retained and logged here."""
        query_type = classify_query(sql)
        table = extract_table(sql)
        is_slow = duration_ms > self.slow_query_threshold_ms

        self.total_queries += 1
        self.total_time += duration_ms
        aggregate = self.by_type[query_type]
        aggregate.count += 1
        aggregate.total_time += duration_ms
        if error is not None:
            self.error_count += 1

        if table:
            table_aggregate = self.by_table[table]
            table_aggregate.count += 1
            table_aggregate.total_time += duration_ms
            if is_slow:
                table_aggregate.slow += 1

        self._query_counter.increment(query_type=query_type.value, status='error' if error else 'success')
        self._duration.observe(duration_ms, query_type=query_type.value)

        if is_slow:
            self.slow_query_count += 1
            sample = QuerySample(
                sql=truncate_sql(sql),
                duration_ms=duration_ms,
                timestamp=datetime.utcnow(),
                query_type=query_type,
                table=table,
                has_error=error is not None,
                error=str(error) if error is not None else None,
            )
            self.slow_queries.append(sample)
            self._slow_counter.increment(query_type=query_type.value)
            self.logger.warning(
                f"Slow query detected ({duration_ms:.2f}ms): {sample.sql}",
                operation="record_query",
                duration_ms=duration_ms,
                table=table,
            )

    def get_performance_stats(self) -> Dict[str, Any]:
        """Aggregate statistics computed from counters."""
        uptime = time.time() - self.start_time
        average = self.total_time / self.total_queries if self.total_queries else 0.0

        return {
            'uptime': int(uptime),
            'queries': {
                'total': self.total_queries,
                'average_time': round(average, 2),
                'total_time': round(self.total_time, 2),
                'slow_queries': self.slow_query_count,
                'retained_slow_queries': len(self.slow_queries),
                'errors': self.error_count,
                'query_rate': round(self.total_queries / uptime, 2) if uptime > 0 else 0.0,
                'by_type': {
                    query_type.value: {
                        'count': agg.count,
                        'percentage': round(agg.count / self.total_queries * 100, 1) if self.total_queries else 0,
                        'average_time': round(agg.average, 2),
                    }
                    for query_type, agg in self.by_type.items()
                },
                'by_table': {
                    table: {
                        'count': agg.count,
                        'average_time': round(agg.average, 2),
                        'slow_queries': agg.slow,
                    }
                    for table, agg in self.by_table.items()
                },
            },
            'connections': self.sample_connections(),
            'recent_slow_queries': [sample.to_dict() for sample in list(self.slow_queries)[-10:]],
        }

    def analyze_query_patterns(self) -> Dict[str, Any]:
        """Detect performance issues and suggest optimisations."""
        analysis = {'issues': [], 'suggestions': [], 'optimizations': []}
        stats = self.get_performance_stats()
        queries = stats['queries']

        if queries['average_time'] > 100:
            analysis['issues'].append({
                'type': 'high_average_query_time',
                'severity': 'medium',
                'description': f"Average query time is {queries['average_time']}ms (threshold: 100ms)",
                'impact': 'Performance degradation',
            })
            analysis['suggestions'].append('Consider adding database indexes for frequently queried fields')
            analysis['suggestions'].append('Review and optimize slow queries')

        if queries['slow_queries'] > 10:
            analysis['issues'].append({
                'type': 'many_slow_queries',
                'severity': 'high',
                'description': f"{queries['slow_queries']} slow queries detected",
                'impact': 'Poor user experience',
            })
            analysis['suggestions'].append('Analyze slow query patterns and add appropriate indexes')
            analysis['suggestions'].append('Consider query optimization or data restructuring')

        if stats['connections'].get('active', 0) > 15:
            analysis['issues'].append({
                'type': 'high_connection_usage',
                'severity': 'medium',
                'description': f"{stats['connections']['active']} active connections",
                'impact': 'Resource consumption',
            })
            analysis['suggestions'].append('Review connection pooling configuration')

        select_percentage = queries['by_type'][QueryType.SELECT.value]['percentage']
        if self.total_queries and select_percentage < 70:
            analysis['issues'].append({
                'type': 'low_read_ratio',
                'severity': 'low',
                'description': f"Only {select_percentage}% of queries are SELECT statements",
                'impact': 'Possible inefficient data access patterns',
            })
            analysis['suggestions'].append('Consider caching frequently accessed data')

        for table, table_stats in queries['by_table'].items():
            if table_stats['average_time'] > 200:
                analysis['issues'].append({
                    'type': 'slow_table_queries',
                    'severity': 'medium',
                    'description': f"{table} queries average {table_stats['average_time']}ms",
                    'impact': f"Slow performance for {table} operations",
                    'table': table,
                })
                analysis['optimizations'].append({
                    'table': table,
                    'suggestion': f"Add indexes for commonly queried {table} fields",
                    'priority': 'high',
                })

            if table_stats['slow_queries'] > 5:
                analysis['optimizations'].append({
                    'table': table,
                    'suggestion': f"Optimize {table} queries - {table_stats['slow_queries']} slow queries detected",
                    'priority': 'medium',
                })

        return analysis

    def analyze_join_patterns(self) -> List[Dict[str, Any]]:
        """Multi-table joins among retained slow samples."""
        patterns = []
        for sample in self.slow_queries:
            if 'join' not in sample.sql.lower():
                continue
            tables = extract_tables(sample.sql)
            if len(tables) > 1:
                patterns.append({
                    'tables': tables,
                    'duration': round(sample.duration_ms),
                    'sql_snippet': sample.sql[:100],
                })
        return patterns

    def analyze_frequent_operations(self, min_count: int = 10) -> List[Dict[str, Any]]:
        """Query types executed more than min_count times."""
        return [
            {'type': query_type.value, 'count': agg.count, 'avg_time': round(agg.average, 2)}
            for query_type, agg in self.by_type.items()
            if agg.count > min_count
        ]

    def most_frequent_slow_patterns(self, limit: int = 5) -> List[Dict[str, Any]]:
        """Most common table combinations among retained slow samples."""
        return most_frequent_slow_patterns([s.to_dict() for s in self.slow_queries], limit)

    async def generate_optimization_recommendations(self, catalog) -> List[Dict[str, Any]]:
        """Missing single-column indexes plus per-table query optimisations."""
        recommendations = []

        try:
            for table, fields in COMMON_INDEX_FIELDS.items():
                index_names = [index['name'] for index in await catalog.list_indexes(table)]
                for column in fields:
                    if any(column in name for name in index_names):
                        continue
                    recommendations.append({
                        'type': 'create_index',
                        'table': table,
                        'field': column,
                        'priority': 'high',
                        'sql': f"CREATE INDEX idx_{table}_{column} ON {table}({column})",
                        'benefit': 'Faster queries on frequently accessed field',
                    })

            for optimization in self.analyze_query_patterns()['optimizations']:
                recommendations.append({'type': 'query_optimization', **optimization})

        except Exception as e:
            self.logger.error(f"Error generating recommendations: {e}", operation="generate_recommendations")

        return recommendations

    def reset_metrics(self) -> None:
        """Zero all counters and drop retained samples."""
        self._reset_counters()
        self.slow_queries.clear()
        self.logger.info("Performance metrics reset", operation="reset_metrics")

    async def health_check(self, ping: Callable[[], Awaitable[Any]]) -> Dict[str, Any]:
        """Combine round-trip time and detected issues; never raises."""
        try:
            start = time.perf_counter()
            await ping()
            connection_time = (time.perf_counter() - start) * 1000

            stats = self.get_performance_stats()
            issues = self.analyze_query_patterns()['issues']
            critical = [issue for issue in issues if issue['severity'] == 'high']

            health = {
                'status': 'healthy',
                'timestamp': datetime.utcnow().isoformat(),
                'connection_time': round(connection_time, 2),
                'performance': {
                    'average_query_time': stats['queries']['average_time'],
                    'slow_queries': stats['queries']['slow_queries'],
                    'active_connections': stats['connections'].get('active', 0),
                },
                'issues': len(issues),
                'critical_issues': len(critical),
            }

            if connection_time > 1000 or critical:
                health['status'] = 'unhealthy'
            elif connection_time > 500 or len(issues) > 3:
                health['status'] = 'degraded'

            return health

        except Exception as e:
            self.logger.error(f"Database health check failed: {e}", operation="health_check")
            return {
                'status': 'unhealthy',
                'timestamp': datetime.utcnow().isoformat(),
                'error': str(e),
            }

    async def observe_window(
        self,
        duration_s: float,
        threshold_ms: float = 100.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> Dict[str, Any]:
        """Watch every query for duration_s seconds and summarise what was slow."""
        window = QueryWindow(threshold_ms)
        started = time.time()
        self._windows.append(window)
        self.logger.info(f"Starting query window for {duration_s}s", operation="observe_window")

        try:
            await sleep(duration_s)
        finally:
            self._windows.remove(window)

        slow_count = len(window.slow_queries)
        result = {
            'start_time': started,
            'end_time': time.time(),
            'duration': duration_s,
            'query_count': window.query_count,
            'slow_queries': window.slow_queries,
            'analysis': {
                'avg_queries_per_second': window.query_count / duration_s if duration_s else 0.0,
                'slow_query_percentage': slow_count / window.query_count * 100 if window.query_count else 0.0,
                'most_frequent_slow_patterns': most_frequent_slow_patterns(window.slow_queries),
            },
        }

        self.logger.info(
            f"Query window complete: {window.query_count} queries, {slow_count} slow",
            operation="observe_window",
        )
        return result
