"""
Tests for query performance monitoring.

Covers query classification, slow query retention, pattern analysis,
health status and observation windows.
"""

from unittest.mock import AsyncMock

import pytest

from src.shared.database import (
    PerformanceMonitor,
    QueryType,
    classify_query,
    extract_columns,
    extract_table,
    extract_tables,
)


@pytest.fixture
async def monitor(metrics):
    monitor = PerformanceMonitor(slow_query_threshold_ms=1000, max_slow_queries=100, metrics=metrics)
    await monitor.start()
    yield monitor
    await monitor.stop()


class TestQueryParsing:
    """Test SQL classification helpers."""

    def test_classify_query(self):
        """Test classification by leading keyword."""
        assert classify_query("SELECT * FROM leads") is QueryType.SELECT
        assert classify_query("  insert into contacts values (1)") is QueryType.INSERT
        assert classify_query("UPDATE leads SET status = 'new'") is QueryType.UPDATE
        assert classify_query("PRAGMA table_info(leads)") is QueryType.OTHER

    def test_extract_table(self):
        """Test table extraction from FROM, INTO and UPDATE."""
        assert extract_table('SELECT * FROM "leads" WHERE id = 1') == "leads"
        assert extract_table("INSERT INTO call_logs (id) VALUES (1)") == "call_logs"
        assert extract_table("UPDATE contacts SET value = 'x'") == "contacts"
        assert extract_table("SELECT 1") is None

    def test_extract_tables_and_columns(self):
        """Test join table and filter column extraction."""
        sql = ("SELECT * FROM leads JOIN call_logs ON call_logs.leadId = leads.id "
               "WHERE status = 'new' ORDER BY createdAt DESC")

        assert extract_tables(sql) == ["leads", "call_logs"]
        assert extract_columns(sql) == ["status", "createdAt"]


class TestPerformanceMonitor:
    """Test the query interceptor and its statistics."""

    def test_slow_query_threshold(self, monitor):
        """Test that only queries above the threshold are slow."""
        monitor.after_query("SELECT * FROM leads WHERE email = 'a@b.c'", 1500)
        monitor.after_query("SELECT * FROM leads WHERE id = 1", 999)

        stats = monitor.get_performance_stats()
        assert stats["queries"]["total"] == 2
        assert stats["queries"]["slow_queries"] == 1
        assert len(monitor.slow_queries) == 1

        sample = monitor.slow_queries[0]
        assert sample.duration_ms == 1500
        assert sample.table == "leads"
        assert sample.query_type is QueryType.SELECT

    def test_threshold_is_exclusive(self, monitor):
        """Test that a query exactly at the threshold is not slow."""
        monitor.after_query("SELECT 1", 1000)
        assert monitor.slow_query_count == 0

    async def test_not_recorded_until_started(self, metrics):
        """Test that a stopped monitor ignores executions."""
        monitor = PerformanceMonitor(metrics=metrics)
        monitor.after_query("SELECT 1", 5000)
        assert monitor.total_queries == 0

        await monitor.start()
        monitor.after_query("SELECT 1", 5000)
        assert monitor.total_queries == 1
        await monitor.stop()

    async def test_slow_buffer_is_bounded(self, metrics):
        """Test that the retained slow samples never exceed the configured size."""
        monitor = PerformanceMonitor(slow_query_threshold_ms=100, max_slow_queries=3, metrics=metrics)
        await monitor.start()

        for i in range(5):
            monitor.after_query(f"SELECT * FROM leads WHERE id = {i}", 500)

        stats = monitor.get_performance_stats()
        assert len(monitor.slow_queries) == 3
        assert stats["queries"]["slow_queries"] == 5
        assert stats["queries"]["retained_slow_queries"] == 3
        assert monitor.slow_queries[0].sql.endswith("id = 2")
        await monitor.stop()

    def test_long_sql_is_truncated(self, monitor):
        """Test that retained SQL is cut to 200 characters."""
        monitor.after_query("SELECT * FROM leads WHERE " + "x = 1 AND " * 50, 2000)
        sql = monitor.slow_queries[0].sql

        assert len(sql) == 203
        assert sql.endswith("...")

    def test_errors_are_counted(self, monitor):
        """Test that failed executions are counted."""
        monitor.after_query("SELECT * FROM missing", 3, RuntimeError("no such table"))
        assert monitor.get_performance_stats()["queries"]["errors"] == 1

    def test_stats_by_type_and_table(self, monitor):
        """Test per-type and per-table aggregates."""
        monitor.after_query("SELECT * FROM leads", 10)
        monitor.after_query("SELECT * FROM leads", 30)
        monitor.after_query("INSERT INTO contacts (id) VALUES (1)", 20)

        queries = monitor.get_performance_stats()["queries"]
        assert queries["average_time"] == 20.0
        assert queries["by_type"]["SELECT"]["count"] == 2
        assert queries["by_type"]["SELECT"]["percentage"] == pytest.approx(66.7)
        assert queries["by_table"]["leads"]["average_time"] == 20.0
        assert queries["by_table"]["contacts"]["count"] == 1

    def test_metrics_are_published(self, monitor, metrics):
        """Test that counters reach the injected collector."""
        monitor.after_query("SELECT 1", 1500)

        assert metrics.get_counter("database_queries_total").get_value() == 1
        assert metrics.get_counter("database_slow_queries_total").get_value() == 1
        assert metrics.get_histogram("database_query_duration_ms").get_statistics()["count"] == 1

    def test_connection_stats(self, metrics):
        """Test that the connection sampler tracks the peak."""
        samples = iter([{"active": 4, "peak": 4, "total": 10}, {"active": 1, "peak": 4, "total": 12}])
        monitor = PerformanceMonitor(metrics=metrics, connection_stats=lambda: next(samples))

        assert monitor.sample_connections()["active"] == 4
        assert monitor.sample_connections() == {"active": 1, "peak": 4, "total": 12}

    def test_reset_metrics(self, monitor):
        """Test that reset clears counters and samples."""
        monitor.after_query("SELECT 1", 1500)
        monitor.reset_metrics()

        assert monitor.total_queries == 0
        assert not monitor.slow_queries


class TestPatternAnalysis:
    """Test issue detection and recommendations."""

    def test_no_issues_without_traffic(self, monitor):
        """Test that an idle monitor reports nothing."""
        analysis = monitor.analyze_query_patterns()
        assert analysis == {"issues": [], "suggestions": [], "optimizations": []}

    def test_many_slow_queries(self, monitor):
        """Test detection of slow query volume and slow tables."""
        for _ in range(11):
            monitor.after_query("SELECT * FROM call_logs WHERE agentId = 'a1'", 1200)

        analysis = monitor.analyze_query_patterns()
        issue_types = {issue["type"]: issue["severity"] for issue in analysis["issues"]}

        assert issue_types["high_average_query_time"] == "medium"
        assert issue_types["many_slow_queries"] == "high"
        assert issue_types["slow_table_queries"] == "medium"
        assert {"table": "call_logs", "priority": "high"}.items() <= analysis["optimizations"][0].items()
        assert analysis["optimizations"][1]["priority"] == "medium"

    def test_low_read_ratio(self, monitor):
        """Test detection of write-heavy traffic."""
        monitor.after_query("SELECT * FROM leads", 1)
        monitor.after_query("UPDATE leads SET status = 'new'", 1)

        issues = monitor.analyze_query_patterns()["issues"]
        assert [issue["type"] for issue in issues] == ["low_read_ratio"]

    def test_join_patterns(self, monitor):
        """Test that slow joins are reported with their tables."""
        monitor.after_query("SELECT * FROM leads JOIN contacts ON contacts.leadId = leads.id", 1500)
        monitor.after_query("SELECT * FROM leads", 1500)

        patterns = monitor.analyze_join_patterns()
        assert len(patterns) == 1
        assert patterns[0]["tables"] == ["leads", "contacts"]

    async def test_recommendations_for_missing_indexes(self, monitor):
        """Test index suggestions for fields no index mentions."""
        catalog = AsyncMock()
        catalog.list_indexes.return_value = []

        recommendations = await monitor.generate_optimization_recommendations(catalog)
        create = [rec for rec in recommendations if rec["type"] == "create_index"]

        assert len(create) == 13
        assert create[0]["sql"] == "CREATE INDEX idx_leads_email ON leads(email)"

    async def test_recommendations_skip_indexed_fields(self, monitor):
        """Test that indexed fields are not recommended again."""
        catalog = AsyncMock()
        catalog.list_indexes.side_effect = lambda table: [{"name": f"idx_{table}_leadId"}]

        recommendations = await monitor.generate_optimization_recommendations(catalog)
        fields = {(rec["table"], rec["field"]) for rec in recommendations}

        assert ("contacts", "leadId") not in fields
        assert ("contacts", "type") in fields


class TestHealthCheck:
    """Test database health classification."""

    async def test_healthy(self, monitor):
        """Test a fast ping with no issues."""
        health = await monitor.health_check(AsyncMock())
        assert health["status"] == "healthy"
        assert health["issues"] == 0

    async def test_critical_issue_is_unhealthy(self, monitor):
        """Test that a high severity issue makes the database unhealthy."""
        for _ in range(11):
            monitor.after_query("SELECT 1", 1500)

        health = await monitor.health_check(AsyncMock())
        assert health["status"] == "unhealthy"
        assert health["critical_issues"] == 1

    async def test_ping_failure(self, monitor):
        """Test that a failing ping is reported, not raised."""
        health = await monitor.health_check(AsyncMock(side_effect=ConnectionError("refused")))
        assert health["status"] == "unhealthy"
        assert health["error"] == "refused"


class TestObservationWindow:
    """Test bounded query observation."""

    async def test_window_collects_queries(self, metrics):
        """Test that a window sees every query even while recording is off."""
        monitor = PerformanceMonitor(metrics=metrics)

        async def traffic(seconds):
            monitor.after_query("SELECT * FROM leads WHERE status = 'new'", 150)
            monitor.after_query("SELECT 1", 5)

        result = await monitor.observe_window(10, threshold_ms=100, sleep=traffic)

        assert result["query_count"] == 2
        assert len(result["slow_queries"]) == 1
        assert result["analysis"]["avg_queries_per_second"] == pytest.approx(0.2)
        assert result["analysis"]["slow_query_percentage"] == 50
        assert result["analysis"]["most_frequent_slow_patterns"][0]["pattern"] == "leads"
        assert monitor.total_queries == 0
        assert not monitor._windows
