"""
Index advisory engine for the Cold Caller data layer.

Compares a hand-curated catalog of useful indexes against the indexes that
actually exist, estimates the impact of each missing one, and can apply the
recommended DDL with a before/after benchmark.

Impact figures are a closed-form heuristic for operator guidance. They are
not a query planner cost model.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, get_metrics_collector
from .performance_monitor import PerformanceMonitor, extract_columns, extract_tables


class IndexKind(str, Enum):
    """Kinds of recommended index."""
    SINGLE = "single"
    COMPOSITE = "composite"
    UNIQUE = "unique"


class Priority(str, Enum):
    """Recommendation priority."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_WEIGHTS = {Priority.HIGH: 0.7, Priority.MEDIUM: 0.4, Priority.LOW: 0.2}
PRIORITY_SORT_RANK = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}
PRIORITY_ORDER = {Priority.HIGH: 1, Priority.MEDIUM: 2, Priority.LOW: 3}
KIND_ORDER = {IndexKind.UNIQUE: 1, IndexKind.SINGLE: 2, IndexKind.COMPOSITE: 3}

BYTES_PER_INDEXED_COLUMN = 32
BYTES_PER_ROW_ESTIMATE = 1024


@dataclass(frozen=True)
class CatalogEntry:
    """A curated index suggestion."""
    columns: Tuple[str, ...]
    kind: IndexKind
    priority: Priority
    rationale: str


def _entry(columns, kind, priority, rationale) -> CatalogEntry:
    return CatalogEntry(tuple(columns), IndexKind(kind), Priority(priority), rationale)


INDEX_CATALOG: Dict[str, List[CatalogEntry]] = {
    'leads': [
        _entry(['email'], 'unique', 'high', 'Primary lookup field'),
        _entry(['phone'], 'single', 'high', 'Frequently searched'),
        _entry(['status'], 'single', 'medium', 'Status filtering'),
        _entry(['priority'], 'single', 'medium', 'Priority sorting'),
        _entry(['assignedTo'], 'single', 'medium', 'Agent filtering'),
        _entry(['nextFollowUpDate'], 'single', 'medium', 'Date range queries'),
        _entry(['createdAt'], 'single', 'low', 'Date sorting'),
        _entry(['status', 'priority'], 'composite', 'high', 'Combined filtering'),
        _entry(['assignedTo', 'status'], 'composite', 'medium', 'Agent dashboard queries'),
    ],
    'contacts': [
        _entry(['leadId'], 'single', 'high', 'Foreign key lookups'),
        _entry(['type'], 'single', 'medium', 'Contact type filtering'),
        _entry(['isPrimary'], 'single', 'low', 'Primary contact queries'),
        _entry(['leadId', 'isPrimary'], 'composite', 'medium', 'Primary contact lookup'),
    ],
    'call_logs': [
        _entry(['leadId'], 'single', 'high', 'Call history lookups'),
        _entry(['initiatedAt'], 'single', 'high', 'Time-based queries'),
        _entry(['status'], 'single', 'medium', 'Call status filtering'),
        _entry(['agentId'], 'single', 'medium', 'Agent performance queries'),
        _entry(['duration'], 'single', 'low', 'Duration analysis'),
        _entry(['leadId', 'initiatedAt'], 'composite', 'high', 'Lead call history'),
        _entry(['agentId', 'initiatedAt'], 'composite', 'medium', 'Agent activity reports'),
    ],
    'enhanced_call_logs': [
        _entry(['leadId'], 'single', 'high', 'Enhanced call lookups'),
        _entry(['callId'], 'single', 'medium', 'Call correlation'),
        _entry(['sentiment'], 'single', 'low', 'Sentiment analysis'),
        _entry(['qualityScore'], 'single', 'low', 'Quality filtering'),
    ],
    'notes': [
        _entry(['leadId'], 'single', 'high', 'Note lookups by lead'),
        _entry(['createdAt'], 'single', 'medium', 'Chronological sorting'),
        _entry(['tags'], 'single', 'low', 'Tag-based searches'),
        _entry(['leadId', 'createdAt'], 'composite', 'medium', 'Lead note timeline'),
    ],
    'note_templates': [
        _entry(['category'], 'single', 'medium', 'Template categorization'),
        _entry(['isActive'], 'single', 'low', 'Active template filtering'),
    ],
}


@dataclass
class ExistingIndex:
    """An index found in the live catalog."""
    name: str
    sql: Optional[str]
    columns: List[str]
    unique: bool
    kind: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'sql': self.sql,
            'columns': self.columns,
            'unique': self.unique,
            'type': self.kind,
        }


@dataclass
class TableStatistics:
    """Row count and rough size of a table."""
    row_count: int = 0
    estimated_size: int = 0


@dataclass
class ImpactEstimate:
    """Heuristic impact of adding an index."""
    performance_gain: float = 0.0
    storage_cost: int = 0
    maintenance_overhead: str = 'low'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'performance_gain': self.performance_gain,
            'storage_cost': self.storage_cost,
            'maintenance_overhead': self.maintenance_overhead,
        }


@dataclass
class IndexRecommendation:
    """A missing index with its DDL and estimated impact."""
    table: str
    columns: List[str]
    kind: IndexKind
    priority: Priority
    rationale: str
    sql: str
    implementation_order: int
    estimated_impact: ImpactEstimate = field(default_factory=ImpactEstimate)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table,
            'columns': list(self.columns),
            'type': self.kind.value,
            'priority': self.priority.value,
            'reason': self.rationale,
            'sql': self.sql,
            'implementation_order': self.implementation_order,
            'estimated_impact': self.estimated_impact.to_dict(),
        }


_INDEX_COLUMNS_PATTERN = re.compile(r'\((.*?)\)')


def extract_columns_from_index(sql: Optional[str]) -> List[str]:
    """Column names from the first parenthesised list of an index definition."""
    if not sql:
        return []
    match = _INDEX_COLUMNS_PATTERN.search(sql)
    if not match:
        return []
    return [re.sub(r'["`]', '', column.strip()) for column in match.group(1).split(',')]


def determine_index_kind(sql: Optional[str]) -> str:
    if not sql:
        return 'unknown'
    if 'UNIQUE' in sql:
        return 'unique'
    if 'PRIMARY KEY' in sql:
        return 'primary'
    return 'index'


def index_exists(existing: Iterable[ExistingIndex], columns: Sequence[str]) -> bool:
    """True when some index covers exactly these columns in this order."""
    return any(list(index.columns) == list(columns) for index in existing)


def generate_index_sql(table: str, entry: Union[CatalogEntry, IndexRecommendation], quote: bool = False) -> str:
    """CREATE [UNIQUE] INDEX idx_{table}_{cols} ON {table}({cols}), columns double-quoted when quote is set."""
    index_name = f"idx_{table}_{'_'.join(entry.columns)}"
    unique = 'UNIQUE ' if entry.kind is IndexKind.UNIQUE else ''
    columns = [f'"{column}"' for column in entry.columns] if quote else list(entry.columns)
    return f"CREATE {unique}INDEX {index_name} ON {table}({', '.join(columns)})"


def implementation_order(entry: CatalogEntry) -> int:
    return PRIORITY_ORDER[entry.priority] * 10 + KIND_ORDER[entry.kind]


def _benchmark_queries(now: datetime) -> List[Dict[str, Any]]:
    return [
        {
            'name': 'lead_by_email',
            'query': 'SELECT * FROM leads WHERE email = :email',
            'params': {'email': 'test@example.com'},
        },
        {
            'name': 'leads_by_status',
            'query': 'SELECT * FROM leads WHERE status = :status',
            'params': {'status': 'active'},
        },
        {
            'name': 'calls_by_date_range',
            'query': 'SELECT * FROM call_logs WHERE "initiatedAt" BETWEEN :start AND :end',
            'params': {'start': now - timedelta(days=1), 'end': now},
        },
        {
            'name': 'agent_performance',
            'query': 'SELECT "agentId", COUNT(*) AS calls FROM call_logs '
                     'WHERE "agentId" IS NOT NULL GROUP BY "agentId"',
            'params': {},
        },
    ]


class IndexAdvisor:
    """Recommends, applies and benchmarks indexes."""

    def __init__(
        self,
        catalog,
        monitor: PerformanceMonitor,
        metrics: Optional[MetricsCollector] = None,
        index_catalog: Optional[Dict[str, List[CatalogEntry]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.catalog = catalog
        self.monitor = monitor
        self.logger = get_logger(__name__, 'index_advisor')
        self.collector = metrics or get_metrics_collector()
        self.index_catalog = index_catalog if index_catalog is not None else INDEX_CATALOG
        self._sleep = sleep
        self.last_analysis: Optional[Dict[str, Any]] = None

        self._creations = self.collector.get_counter('index_creations_total', 'Index DDL applied')

    async def get_existing_indexes(self) -> Dict[str, List[ExistingIndex]]:
        """Introspect indexes for every catalogued table; failures yield an empty list."""
        indexes = {}

        for table in self.index_catalog:
            try:
                rows = await self.catalog.list_indexes(table)
                indexes[table] = [
                    ExistingIndex(
                        name=row['name'],
                        sql=row.get('sql'),
                        columns=extract_columns_from_index(row.get('sql')),
                        unique='UNIQUE' in (row.get('sql') or ''),
                        kind=determine_index_kind(row.get('sql')),
                    )
                    for row in rows
                    if not row['name'].startswith('sqlite_')
                ]
            except Exception as e:
                self.logger.warning(
                    f"Could not analyze indexes for table {table}: {e}",
                    operation="get_existing_indexes",
                )
                indexes[table] = []

        return indexes

    async def get_table_statistics(self, table: str) -> TableStatistics:
        """Row count and size estimate; zeros on failure."""
        try:
            row_count = await self.catalog.count_rows(table)
            return TableStatistics(row_count=row_count, estimated_size=row_count * BYTES_PER_ROW_ESTIMATE)
        except Exception as e:
            self.logger.debug(f"No statistics for {table}: {e}", operation="get_table_statistics")
            return TableStatistics()

    async def estimate_impact(self, table: str, entry: CatalogEntry) -> ImpactEstimate:
        """Heuristic gain, storage and maintenance estimate for one catalog entry."""
        try:
            stats = await self.get_table_statistics(table)
            size_multiplier = min(stats.row_count / 10000, 2)

            if entry.kind is IndexKind.COMPOSITE and len(entry.columns) > 3:
                overhead = 'high'
            elif entry.kind is IndexKind.UNIQUE:
                overhead = 'medium'
            else:
                overhead = 'low'

            return ImpactEstimate(
                performance_gain=PRIORITY_WEIGHTS[entry.priority] * (1 + size_multiplier),
                storage_cost=stats.row_count * BYTES_PER_INDEXED_COLUMN * len(entry.columns),
                maintenance_overhead=overhead,
            )
        except Exception:
            return ImpactEstimate()

    async def generate_recommendations(
        self, existing: Optional[Dict[str, List[ExistingIndex]]] = None
    ) -> List[IndexRecommendation]:
        """Catalog entries with no exactly matching index, highest priority and gain first."""
        try:
            if existing is None:
                existing = await self.get_existing_indexes()

            recommendations = []
            for table, entries in self.index_catalog.items():
                table_indexes = existing.get(table, [])
                for entry in entries:
                    if index_exists(table_indexes, entry.columns):
                        continue
                    recommendations.append(IndexRecommendation(
                        table=table,
                        columns=list(entry.columns),
                        kind=entry.kind,
                        priority=entry.priority,
                        rationale=entry.rationale,
                        sql=generate_index_sql(table, entry),
                        implementation_order=implementation_order(entry),
                        estimated_impact=await self.estimate_impact(table, entry),
                    ))

            recommendations.sort(
                key=lambda r: (PRIORITY_SORT_RANK[r.priority], r.estimated_impact.performance_gain),
                reverse=True,
            )
            return recommendations

        except Exception as e:
            self.logger.error(f"Failed to generate index recommendations: {e}", operation="generate_recommendations")
            return []

    def analyze_query_patterns(self) -> Dict[str, Any]:
        """Slow samples, frequent operations and join patterns from the monitor."""
        try:
            slow = list(self.monitor.slow_queries)[-10:]
            return {
                'slow_queries': [
                    {
                        'sql': sample.sql,
                        'duration': round(sample.duration_ms),
                        'frequency': 1,
                        'tables_involved': extract_tables(sample.sql),
                        'columns_used': extract_columns(sample.sql),
                    }
                    for sample in slow
                ],
                'frequent_operations': self.monitor.analyze_frequent_operations(),
                'join_patterns': self.monitor.analyze_join_patterns(),
            }
        except Exception as e:
            self.logger.error(f"Failed to analyze query patterns: {e}", operation="analyze_query_patterns")
            return {'slow_queries': [], 'frequent_operations': [], 'join_patterns': []}

    def identify_bottlenecks(self) -> List[Dict[str, Any]]:
        queries = self.monitor.get_performance_stats()['queries']
        bottlenecks = []

        if queries['average_time'] > 100:
            bottlenecks.append({
                'type': 'slow_queries',
                'severity': 'medium',
                'description': f"Average query time is {queries['average_time']:.2f}ms",
            })

        if queries['slow_queries'] > 10:
            bottlenecks.append({
                'type': 'frequent_slow_queries',
                'severity': 'high',
                'description': f"{queries['slow_queries']} slow queries detected",
            })

        return bottlenecks

    def calculate_performance_impact(self) -> Dict[str, Any]:
        """Current performance, known bottlenecks and projected gains."""
        try:
            queries = self.monitor.get_performance_stats()['queries']
            return {
                'current_performance': {
                    'avg_query_time': queries['average_time'],
                    'slow_query_count': queries['slow_queries'],
                    'total_queries': queries['total'],
                },
                'index_effectiveness': {
                    'indexes_used': 'Requires EXPLAIN analysis',
                    'table_scans': 'Requires query plan analysis',
                    'join_efficiency': 'Requires detailed profiling',
                },
                'bottlenecks': self.identify_bottlenecks(),
                'projected_improvements': {
                    'estimated_query_time_reduction': '30-50%',
                    'estimated_throughput_increase': '20-40%',
                    'estimated_resource_usage_reduction': '15-25%',
                    'note': 'Estimates based on typical index performance improvements',
                },
            }
        except Exception as e:
            self.logger.error(f"Failed to calculate performance impact: {e}", operation="calculate_performance_impact")
            return {}

    async def analyze(self) -> Dict[str, Any]:
        """Full analysis: existing indexes, query patterns, recommendations, impact."""
        self.logger.info("Starting database index analysis", operation="analyze")

        existing = await self.get_existing_indexes()
        analysis = {
            'timestamp': datetime.utcnow().isoformat(),
            'existing': existing,
            'query_patterns': self.analyze_query_patterns(),
            'recommendations': await self.generate_recommendations(existing),
            'performance_impact': self.calculate_performance_impact(),
        }

        self.last_analysis = analysis
        self.logger.info(
            f"Index analysis completed: {len(analysis['recommendations'])} recommendations",
            operation="analyze",
        )
        return analysis

    async def benchmark(self) -> Dict[str, Any]:
        """Run the fixed query battery; per-query errors are captured."""
        benchmarks = {'timestamp': time.time(), 'tests': []}

        for test in _benchmark_queries(datetime.utcnow()):
            try:
                start = time.perf_counter()
                rows = await self.catalog.execute(test['query'], test['params'])
                benchmarks['tests'].append({
                    'name': test['name'],
                    'duration': (time.perf_counter() - start) * 1000,
                    'rows_returned': len(rows),
                    'status': 'success',
                })
            except Exception as e:
                benchmarks['tests'].append({
                    'name': test['name'],
                    'error': str(e),
                    'status': 'error',
                })

        return benchmarks

    @staticmethod
    def compare_benchmarks(before: Dict[str, Any], after: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Per-test duration delta and improvement percentage."""
        after_by_name = {test['name']: test for test in after.get('tests', [])}
        comparison = []

        for test in before.get('tests', []):
            other = after_by_name.get(test['name'])
            if not other or test['status'] != 'success' or other['status'] != 'success':
                continue
            delta = test['duration'] - other['duration']
            comparison.append({
                'name': test['name'],
                'before': test['duration'],
                'after': other['duration'],
                'delta': delta,
                'improvement_percent': delta / test['duration'] * 100 if test['duration'] > 0 else 0.0,
            })

        return comparison

    async def implement(
        self,
        recommendations: Optional[List[IndexRecommendation]] = None,
        dry_run: bool = False,
        max_indexes: int = 5,
        priority_filter: Sequence[str] = ('high', 'medium'),
        settle_delay: float = 1.0,
    ) -> Dict[str, Any]:
        """
        Apply recommended index DDL one statement at a time.

        Args:
            recommendations: Recommendations to apply (defaults to the last analysis)
            dry_run: Report what would be applied without executing DDL
            max_indexes: Cap on how many recommendations are attempted
            priority_filter: Priorities eligible for application
            settle_delay: Seconds to wait before the after-benchmark

        Returns:
            Dictionary with implemented, errors and before/after benchmarks
        """
        if recommendations is None and self.last_analysis:
            recommendations = self.last_analysis['recommendations']

        if not recommendations:
            self.logger.info("No index recommendations to implement", operation="implement")
            return {'implemented': [], 'errors': [], 'performance_before': None, 'performance_after': None}

        # PostgreSQL folds unquoted camelCase columns to lower case
        quote = getattr(self.catalog, 'dialect', 'sqlite') == 'postgresql'
        allowed = {Priority(p) for p in priority_filter}
        selected = [rec for rec in recommendations if rec.priority in allowed][:max_indexes]
        verb = 'Simulating' if dry_run else 'Implementing'
        self.logger.info(f"{verb} {len(selected)} index recommendations", operation="implement")

        results = {
            'implemented': [],
            'errors': [],
            'performance_before': await self.benchmark(),
            'performance_after': None,
        }

        for rec in selected:
            label = f"{rec.table} ({', '.join(rec.columns)})"
            try:
                start = time.perf_counter()
                if not dry_run:
                    sql = generate_index_sql(rec.table, rec, quote=True) if quote else rec.sql
                    await self.catalog.execute_ddl(sql)
                    self._creations.increment(table=rec.table)

                results['implemented'].append({
                    **rec.to_dict(),
                    'implementation_time': (time.perf_counter() - start) * 1000,
                    'status': 'simulated' if dry_run else 'implemented',
                    'timestamp': datetime.utcnow().isoformat(),
                })
                self.logger.info(f"{'Simulated' if dry_run else 'Implemented'} index: {label}", operation="implement")

            except Exception as e:
                results['errors'].append({
                    **rec.to_dict(),
                    'error': str(e),
                    'timestamp': datetime.utcnow().isoformat(),
                })
                self.logger.error(f"Failed to implement index {label}: {e}", operation="implement")

        if not dry_run and results['implemented']:
            # Indexes may not be visible to the planner immediately
            await self._sleep(settle_delay)
            results['performance_after'] = await self.benchmark()
            results['comparison'] = self.compare_benchmarks(
                results['performance_before'], results['performance_after']
            )

        self.logger.info(
            f"Index {'simulation' if dry_run else 'implementation'} completed: "
            f"{len(results['implemented'])} successful, {len(results['errors'])} failed",
            operation="implement",
        )
        return results

    async def monitor_index_usage(self, duration_s: float = 300.0, threshold_ms: float = 100.0) -> Dict[str, Any]:
        """Observe live queries for a while and summarise slow patterns."""
        return await self.monitor.observe_window(duration_s, threshold_ms)

    def find_unused_indexes(self) -> List[ExistingIndex]:
        """Unused index detection; no usage statistics are collected, so nothing is reported."""
        return []

    @staticmethod
    def generate_implementation_plan(recommendations: List[IndexRecommendation]) -> Dict[str, Any]:
        """Group recommendations into priority-ordered phases."""
        phases = [
            (Priority.HIGH, 'Critical Performance Indexes', '1-2 hours', '40-60%'),
            (Priority.MEDIUM, 'Secondary Optimization Indexes', '2-4 hours', '20-30%'),
            (Priority.LOW, 'Fine-tuning Indexes', '1-2 hours', '10-15%'),
        ]
        plan = {'phases': [], 'success_criteria': []}

        for number, (priority, name, estimated_time, improvement) in enumerate(phases, start=1):
            selected = [rec.to_dict() for rec in recommendations if rec.priority is priority]
            if selected:
                plan['phases'].append({
                    'phase': number,
                    'name': name,
                    'recommendations': selected,
                    'estimated_time': estimated_time,
                    'expected_improvement': improvement,
                })

        return plan

    @staticmethod
    def assess_risk(recommendations: List[IndexRecommendation]) -> Dict[str, Any]:
        """Static risk narrative; rollback is a manual DROP INDEX."""
        return {
            'overall_risk': 'Low',
            'storage_impact': 'Minimal',
            'downtime_required': 'None',
            'rollback_plan': 'Indexes can be dropped manually with DROP INDEX if needed',
            'monitoring_requirements': [
                'Monitor query performance before and after',
                'Track storage usage growth',
                'Watch for lock contention during peak hours',
            ],
        }

    async def generate_report(self) -> Dict[str, Any]:
        """Executive summary, current state, recommendations, plan and risk."""
        analysis = await self.analyze()
        recommendations = analysis['recommendations']
        impact = analysis['performance_impact']

        return {
            'timestamp': datetime.utcnow().isoformat(),
            'executive_summary': {
                'total_recommendations': len(recommendations),
                'high_priority_recommendations': sum(1 for r in recommendations if r.priority is Priority.HIGH),
                'estimated_performance_improvement': '30-50%',
                'implementation_effort': 'Low to Medium',
            },
            'current_state': {
                'existing_indexes': {
                    table: [index.to_dict() for index in indexes]
                    for table, indexes in analysis['existing'].items()
                },
                'performance_metrics': impact.get('current_performance'),
                'bottlenecks': impact.get('bottlenecks'),
            },
            'recommendations': [rec.to_dict() for rec in recommendations],
            'implementation_plan': self.generate_implementation_plan(recommendations),
            'risk_assessment': self.assess_risk(recommendations),
        }
