"""
Shared fixtures for the data layer test suite.
"""

import os

os.environ.setdefault("TESTING", "1")

import pytest

from src.contact_store.database import DatabaseManager
from src.contact_store.schema import run_migrations
from src.shared.config import BackupSettings, DatabaseSettings
from src.shared.metrics_collector import MetricsCollector


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def memory_db_settings():
    return DatabaseSettings(
        database_url=None,
        db_dialect="sqlite",
        db_sqlite_path=":memory:",
        db_retry_attempts=1,
        db_retry_delay=0.0,
    )


@pytest.fixture
async def db(memory_db_settings):
    """Connected in-memory SQLite database with the schema created."""
    manager = DatabaseManager(memory_db_settings)
    await manager.connect()
    await run_migrations(manager)
    yield manager
    await manager.close()


@pytest.fixture
def backup_settings(tmp_path):
    return BackupSettings(
        backup_directory=str(tmp_path / "backups"),
        backup_compression=True,
        backup_formats="sql,json",
        backup_retention_daily=7,
    )
