"""
Integration tests against an in-memory SQLite contact store.

Exercises query execution, interception, catalog introspection, connection
retry, and the cache warmer and index advisor running on real storage.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from src.contact_store import CORE_TABLES, DatabaseManager, quote_identifier, verify_models
from src.contact_store.schema import run_migrations
from src.shared.caching import CacheManager, CacheWarmer
from src.shared.database import IndexAdvisor, PerformanceMonitor
from src.shared.errors import TransientInfrastructureError

NOW = datetime(2024, 3, 1, 12, 0, 0)


class RecordingInterceptor:
    """Collects every statement the manager reports."""

    def __init__(self):
        self.calls = []

    def after_query(self, sql, duration_ms, error=None):
        self.calls.append((sql, duration_ms, error))


async def insert_lead(db, first, priority="medium", updated=NOW - timedelta(days=3), active=True):
    await db.execute(
        'INSERT INTO leads ("firstName", "lastName", phone, status, priority, "isActive", "createdAt", "updatedAt") '
        "VALUES (:first, 'Tester', '555-0100', 'new', :priority, :active, :ts, :ts)",
        {"first": first, "priority": priority, "active": active, "ts": updated},
    )


class TestDatabaseManager:
    """Test execution and introspection."""

    async def test_execute_returns_dicts(self, db):
        """Test that rows come back as plain dictionaries."""
        await insert_lead(db, "Ada")
        rows = await db.execute('SELECT "firstName", priority FROM leads')

        assert rows == [{"firstName": "Ada", "priority": "medium"}]

    async def test_interceptor_sees_every_statement(self, db):
        """Test successful and failed executions reach the interceptor."""
        recorder = RecordingInterceptor()
        db.add_interceptor(recorder)

        await db.execute("SELECT 1")
        with pytest.raises(Exception):
            await db.execute("SELECT * FROM no_such_table")
        db.remove_interceptor(recorder)
        await db.execute("SELECT 2")

        assert [call[0] for call in recorder.calls] == ["SELECT 1", "SELECT * FROM no_such_table"]
        assert recorder.calls[0][2] is None
        assert recorder.calls[1][2] is not None
        assert all(call[1] >= 0 for call in recorder.calls)

    async def test_failing_interceptor_does_not_break_queries(self, db):
        """Test that interceptor errors are logged and swallowed."""
        broken = RecordingInterceptor()
        broken.after_query = lambda *args: 1 / 0
        db.add_interceptor(broken)

        assert await db.execute("SELECT 1 AS one") == [{"one": 1}]

    async def test_catalog_introspection(self, db):
        """Test tables, columns, DDL and row counts."""
        await insert_lead(db, "Ada")

        assert await db.table_exists("leads")
        assert not await db.table_exists("opportunities")
        assert "leadId" in await db.table_columns("call_logs")
        assert "CREATE TABLE contacts" in await db.table_ddl("contacts")
        assert await db.table_ddl("opportunities") is None
        assert await db.count_rows("leads") == 1
        assert len(await db.select_all("migrations")) == 3

    async def test_list_indexes(self, db):
        """Test that created indexes are listed with their DDL."""
        await db.execute_ddl("CREATE INDEX idx_leads_phone ON leads(phone)")
        indexes = await db.list_indexes("leads")

        assert {"name": "idx_leads_phone", "sql": "CREATE INDEX idx_leads_phone ON leads(phone)"} in indexes

    async def test_connection_stats(self, db):
        """Test that executions are counted."""
        before = db.get_connection_stats()["total"]
        await db.ping()
        stats = db.get_connection_stats()

        assert stats["total"] == before + 1
        assert stats["active"] == 0
        assert stats["peak"] >= 1

    async def test_health_check(self, db):
        """Test a healthy connection."""
        health = await db.health_check()
        assert health["status"] == "healthy"
        assert health["connected"] is True

    async def test_health_check_after_close(self, db):
        """Test that a closed manager reports unhealthy without raising."""
        await db.close()
        health = await db.health_check()

        assert health["status"] == "unhealthy"
        assert "not initialized" in health["error"]

    def test_quote_identifier(self):
        """Test identifier validation."""
        assert quote_identifier("leadId") == '"leadId"'
        with pytest.raises(ValueError):
            quote_identifier('leads"; DROP TABLE leads; --')

    async def test_database_name(self, db):
        """Test the in-memory database name."""
        assert db.dialect == "sqlite"
        assert db.database_name == ":memory:"


class TestConnectWithRetry:
    """Test exponential backoff on connection failures."""

    async def test_retries_then_raises(self, memory_db_settings):
        """Test the delays between attempts and the final error."""
        manager = DatabaseManager(memory_db_settings)
        sleep = AsyncMock()

        with patch.object(manager, "connect", AsyncMock(side_effect=ConnectionRefusedError("refused"))):
            with pytest.raises(TransientInfrastructureError) as excinfo:
                await manager.connect_with_retry(retries=3, base_delay=0.5, sleep=sleep)

        assert excinfo.value.attempts == 3
        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]

    async def test_recovers_after_failure(self, memory_db_settings):
        """Test that a later attempt can succeed."""
        manager = DatabaseManager(memory_db_settings)
        connect = AsyncMock(side_effect=[ConnectionRefusedError("refused"), None])

        with patch.object(manager, "connect", connect):
            await manager.connect_with_retry(retries=3, base_delay=0.0, sleep=AsyncMock())

        assert connect.await_count == 2


class TestSchema:
    """Test migrations and model verification."""

    async def test_migrations_are_recorded_once(self, db):
        """Test that a second run records nothing new."""
        assert await run_migrations(db) == []
        names = [row["name"] for row in await db.execute("SELECT name FROM migrations ORDER BY name")]
        assert names == ["001_create_leads_table", "002_create_contacts_table", "003_create_call_logs_table"]

    async def test_verify_models(self, db):
        """Test that every model table exists."""
        assert await verify_models(db) == {"leads": True, "contacts": True, "call_logs": True}

    async def test_verify_models_reports_missing_tables(self, db):
        """Test that a dropped table fails verification."""
        await db.execute_ddl("DROP TABLE call_logs")
        with pytest.raises(RuntimeError, match="call_logs"):
            await verify_models(db)

    def test_core_tables_order(self):
        """Test that parent tables come before their children."""
        assert CORE_TABLES.index("leads") < CORE_TABLES.index("contacts")
        assert CORE_TABLES.index("leads") < CORE_TABLES.index("call_logs")


class TestWarmingOnStorage:
    """Test cache warming queries against real tables."""

    async def test_warm_all(self, db, metrics):
        """Test popular leads and dashboard stats."""
        await insert_lead(db, "Urgent", priority="high")
        await insert_lead(db, "Recent", updated=NOW - timedelta(hours=2))
        await insert_lead(db, "Stale", active=False)
        await db.execute(
            'INSERT INTO call_logs ("leadId", "phoneNumber", direction, status, "initiatedAt", "createdAt", "updatedAt") '
            "VALUES (1, '555-0100', 'outbound', 'completed', :ts, :ts, :ts)",
            {"ts": NOW - timedelta(hours=1)},
        )

        cache = CacheManager(metrics=metrics)
        warmer = CacheWarmer(cache, now=lambda: NOW)
        warmer.register_default_jobs()

        assert await warmer.warm_all(db) == {"popular_leads": True, "common_stats": True}
        assert sorted(cache.pool("leads").keys()) == ["lead:1", "lead:2"]
        assert cache.get("stats", "dashboard:stats") == {"totalLeads": 3, "activeLeads": 2, "todayCalls": 1}


class TestIndexAdvisorOnStorage:
    """Test applying recommendations to real tables."""

    async def test_applied_index_is_no_longer_recommended(self, db, metrics):
        """Test the recommend, implement, re-analyse round trip."""
        monitor = PerformanceMonitor(metrics=metrics)
        db.add_interceptor(monitor)
        advisor = IndexAdvisor(db, monitor, metrics=metrics, sleep=AsyncMock())

        before = await advisor.generate_recommendations()
        composite = [rec for rec in before if rec.table == "call_logs" and rec.columns == ["leadId", "initiatedAt"]]
        assert len(composite) == 1

        results = await advisor.implement(composite)
        assert results["errors"] == []
        assert len(results["implemented"]) == 1
        assert {test["status"] for test in results["performance_after"]["tests"]} == {"success"}

        after = await advisor.generate_recommendations()
        assert not [rec for rec in after if rec.table == "call_logs" and rec.columns == ["leadId", "initiatedAt"]]
        assert len(after) == len(before) - 1
