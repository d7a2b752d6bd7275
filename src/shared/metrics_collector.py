"""
Metrics collection for the Cold Caller data layer.

Provides counters, gauges, histograms and timers for cache, query and backup
activity, plus process-level resource sampling via psutil. Collectors are
passed explicitly to the components that record into them.
"""

import time
import psutil
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional, Union
from dataclasses import dataclass, field
from collections import deque
from enum import Enum
import json
import statistics

from .logging_config import get_logger


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMER = "timer"


class MetricUnit(str, Enum):
    """Metric units."""
    COUNT = "count"
    BYTES = "bytes"
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    PERCENT = "percent"


@dataclass
class MetricValue:
    """A single metric value with metadata."""
    name: str
    value: Union[int, float]
    metric_type: MetricType
    unit: MetricUnit
    timestamp: datetime
    tags: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'name': self.name,
            'value': self.value,
            'type': self.metric_type.value,
            'unit': self.unit.value,
            'timestamp': self.timestamp.isoformat(),
            'tags': self.tags,
            'labels': self.labels
        }


@dataclass
class MetricSeries:
    """A bounded time series of metric values."""
    name: str
    metric_type: MetricType
    unit: MetricUnit
    values: deque = field(default_factory=lambda: deque(maxlen=1000))
    tags: Dict[str, str] = field(default_factory=dict)
    last_updated: Optional[datetime] = None

    def add_value(self, value: Union[int, float], timestamp: Optional[datetime] = None, **labels):
        """Add a value to the series."""
        timestamp = timestamp or datetime.utcnow()
        self.values.append(MetricValue(
            name=self.name,
            value=value,
            metric_type=self.metric_type,
            unit=self.unit,
            timestamp=timestamp,
            tags=self.tags,
            labels=labels
        ))
        self.last_updated = timestamp

    def get_latest_value(self) -> Optional[MetricValue]:
        """Get the latest value."""
        return self.values[-1] if self.values else None

    def calculate_statistics(self, window_minutes: int = 5) -> Dict[str, float]:
        """Calculate statistics for recent values."""
        cutoff_time = datetime.utcnow() - timedelta(minutes=window_minutes)
        recent_values = [v.value for v in self.values if v.timestamp >= cutoff_time]

        if not recent_values:
            return {}

        return {
            'count': len(recent_values),
            'sum': sum(recent_values),
            'min': min(recent_values),
            'max': max(recent_values),
            'mean': statistics.mean(recent_values),
            'median': statistics.median(recent_values),
        }


class Counter:
    """Counter metric that only increases."""

    def __init__(self, collector: 'MetricsCollector', name: str, description: str = "",
                 tags: Dict[str, str] = None):
        self.collector = collector
        self.name = name
        self.description = description
        self.tags = tags or {}
        self._value = 0
        self._lock = threading.Lock()

    def increment(self, amount: Union[int, float] = 1, **labels):
        """Increment the counter."""
        with self._lock:
            self._value += amount
            value = self._value

        self.collector.record_metric(
            self.name, value, MetricType.COUNTER, MetricUnit.COUNT,
            tags=self.tags, **labels
        )

    def get_value(self) -> Union[int, float]:
        """Get current value."""
        with self._lock:
            return self._value

    def reset(self):
        """Reset counter to zero."""
        with self._lock:
            self._value = 0


class Gauge:
    """Gauge metric that can increase or decrease."""

    def __init__(self, collector: 'MetricsCollector', name: str, description: str = "",
                 unit: MetricUnit = MetricUnit.COUNT, tags: Dict[str, str] = None):
        self.collector = collector
        self.name = name
        self.description = description
        self.unit = unit
        self.tags = tags or {}
        self._value = 0
        self._lock = threading.Lock()

    def _record(self, value, labels):
        self.collector.record_metric(
            self.name, value, MetricType.GAUGE, self.unit,
            tags=self.tags, **labels
        )

    def set(self, value: Union[int, float], **labels):
        """Set the gauge value."""
        with self._lock:
            self._value = value
        self._record(value, labels)

    def increment(self, amount: Union[int, float] = 1, **labels):
        """Increment the gauge."""
        with self._lock:
            self._value += amount
            value = self._value
        self._record(value, labels)

    def decrement(self, amount: Union[int, float] = 1, **labels):
        """Decrement the gauge."""
        with self._lock:
            self._value -= amount
            value = self._value
        self._record(value, labels)

    def get_value(self) -> Union[int, float]:
        """Get current value."""
        with self._lock:
            return self._value


class Histogram:
    """Histogram metric for tracking distributions."""

    def __init__(self, collector: 'MetricsCollector', name: str, description: str = "",
                 unit: MetricUnit = MetricUnit.COUNT, buckets: List[float] = None,
                 tags: Dict[str, str] = None):
        self.collector = collector
        self.name = name
        self.description = description
        self.unit = unit
        self.tags = tags or {}
        self.buckets = buckets or [10, 50, 100, 250, 500, 1000, 5000, float('inf')]
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: Union[int, float], **labels):
        """Observe a value."""
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

        self.collector.record_metric(
            self.name, value, MetricType.HISTOGRAM, self.unit,
            tags=self.tags, **labels
        )

    def get_statistics(self) -> Dict[str, Any]:
        """Get histogram statistics."""
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'buckets': self._bucket_counts.copy()
            }


class Timer:
    """Timer metric for measuring durations in milliseconds."""

    def __init__(self, collector: 'MetricsCollector', name: str, description: str = "",
                 tags: Dict[str, str] = None):
        self.name = name
        self.description = description
        self.tags = tags or {}
        self.histogram = Histogram(collector, f"{name}_duration", description,
                                   MetricUnit.MILLISECONDS, tags=tags)

    def time(self, **labels):
        """Context manager for timing operations."""
        return TimerContext(self, labels)

    def record(self, duration_ms: float, **labels):
        """Record a duration."""
        self.histogram.observe(duration_ms, **labels)


class TimerContext:
    """Context manager for timing operations."""

    def __init__(self, timer: Timer, labels: Dict[str, str]):
        self.timer = timer
        self.labels = labels
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.timer.record((time.perf_counter() - self.start_time) * 1000, **self.labels)


def _series_key(name: str, tags: Optional[Dict[str, str]]) -> str:
    return f"{name}:{json.dumps(tags or {}, sort_keys=True)}"


class MetricsCollector:
    """Central metrics collection system."""

    def __init__(self):
        self.logger = get_logger(__name__, 'metrics_collector')
        self.metrics: Dict[str, MetricSeries] = {}
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self.histograms: Dict[str, Histogram] = {}
        self.timers: Dict[str, Timer] = {}

        self.stats = {
            'metrics_recorded': 0,
            'start_time': datetime.utcnow(),
            'last_collection_time': None
        }

    def record_metric(
        self,
        name: str,
        value: Union[int, float],
        metric_type: MetricType,
        unit: MetricUnit,
        timestamp: Optional[datetime] = None,
        tags: Dict[str, str] = None,
        **labels
    ):
        """Record a metric value."""
        timestamp = timestamp or datetime.utcnow()
        series_key = _series_key(name, tags)

        if series_key not in self.metrics:
            self.metrics[series_key] = MetricSeries(
                name=name,
                metric_type=metric_type,
                unit=unit,
                tags=tags or {}
            )

        self.metrics[series_key].add_value(value, timestamp, **labels)

        self.stats['metrics_recorded'] += 1
        self.stats['last_collection_time'] = timestamp

    def get_counter(self, name: str, description: str = "", tags: Dict[str, str] = None) -> Counter:
        """Get or create a counter."""
        key = _series_key(name, tags)
        if key not in self.counters:
            self.counters[key] = Counter(self, name, description, tags)
        return self.counters[key]

    def get_gauge(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                  tags: Dict[str, str] = None) -> Gauge:
        """Get or create a gauge."""
        key = _series_key(name, tags)
        if key not in self.gauges:
            self.gauges[key] = Gauge(self, name, description, unit, tags)
        return self.gauges[key]

    def get_histogram(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                      buckets: List[float] = None, tags: Dict[str, str] = None) -> Histogram:
        """Get or create a histogram."""
        key = _series_key(name, tags)
        if key not in self.histograms:
            self.histograms[key] = Histogram(self, name, description, unit, buckets, tags)
        return self.histograms[key]

    def get_timer(self, name: str, description: str = "", tags: Dict[str, str] = None) -> Timer:
        """Get or create a timer."""
        key = _series_key(name, tags)
        if key not in self.timers:
            self.timers[key] = Timer(self, name, description, tags)
        return self.timers[key]

    def collect_process_metrics(self) -> Dict[str, Any]:
        """Sample process resource usage and record it as gauges."""
        try:
            process = psutil.Process()
            memory = process.memory_info()
            snapshot = {
                'rss_bytes': memory.rss,
                'vms_bytes': memory.vms,
                'cpu_percent': process.cpu_percent(interval=None),
                'num_threads': process.num_threads(),
                'uptime_seconds': time.time() - process.create_time(),
            }
        except (psutil.Error, OSError) as e:
            self.logger.warning(f"Failed to sample process metrics: {e}", operation="collect_process_metrics")
            return {}

        self.get_gauge('process_memory_rss', 'Resident memory', MetricUnit.BYTES).set(snapshot['rss_bytes'])
        self.get_gauge('process_cpu_percent', 'Process CPU usage', MetricUnit.PERCENT).set(snapshot['cpu_percent'])
        self.get_gauge('process_threads', 'Process thread count').set(snapshot['num_threads'])
        return snapshot

    def get_metric_series(self, name: str, tags: Dict[str, str] = None) -> Optional[MetricSeries]:
        """Get a metric series."""
        return self.metrics.get(_series_key(name, tags))

    def get_metrics_summary(self, window_minutes: int = 5) -> Dict[str, Any]:
        """Get summary of all metrics."""
        summary = {
            'total_metrics': len(self.metrics),
            'collection_stats': self.stats.copy(),
            'metrics': {}
        }

        for series_key, series in self.metrics.items():
            latest_value = series.get_latest_value()
            summary['metrics'][series_key] = {
                'name': series.name,
                'type': series.metric_type.value,
                'unit': series.unit.value,
                'tags': series.tags,
                'latest_value': latest_value.value if latest_value else None,
                'statistics': series.calculate_statistics(window_minutes),
                'value_count': len(series.values)
            }

        return summary

    def export_metrics(self, format_type: str = 'json') -> str:
        """Export metrics in specified format."""
        if format_type == 'json':
            return json.dumps(self.get_metrics_summary(), default=str, indent=2)
        elif format_type == 'prometheus':
            return self._export_prometheus_format()
        else:
            raise ValueError(f"Unsupported format: {format_type}")

    def _export_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        for series in self.metrics.values():
            latest_value = series.get_latest_value()
            if not latest_value:
                continue

            metric_name = series.name.replace('-', '_').replace('.', '_')
            lines.append(f"# HELP {metric_name} {series.name}")
            lines.append(f"# TYPE {metric_name} {series.metric_type.value}")

            labels = [f'{k}="{v}"' for k, v in series.tags.items()]
            labels.extend(f'{k}="{v}"' for k, v in latest_value.labels.items())
            label_str = '{' + ','.join(labels) + '}' if labels else ''

            lines.append(f"{metric_name}{label_str} {latest_value.value}")

        return '\n'.join(lines)


_default_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the process-wide default collector, used when none is injected."""
    global _default_collector
    if _default_collector is None:
        _default_collector = MetricsCollector()
    return _default_collector
