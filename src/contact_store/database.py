"""
Contact Store - Database Connection and Query Execution
Storage access for leads, contacts and call logs.

This module handles database connectivity with retry, query execution
through a declared interceptor chain, catalog introspection and
connection statistics.
"""
import asyncio
import re
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool
import structlog

from ..shared.config import DatabaseSettings
from ..shared.errors import TransientInfrastructureError

logger = structlog.get_logger(__name__)

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class QueryInterceptor(Protocol):
    """Receives every statement after it completes."""

    def after_query(self, sql: str, duration_ms: float, error: Optional[BaseException] = None) -> None:
        ...


class QueryExecutor(Protocol):
    """What backup, warming and advisory code needs from storage."""

    dialect: str
    database_name: str

    async def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        ...

    async def execute_ddl(self, sql: str) -> None:
        ...


def quote_identifier(name: str) -> str:
    """Double-quote a table or column name after validating it."""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return f'"{name}"'


class DatabaseManager:
    """
    Manages the async engine for the contact store.
    Every execution is timed and reported to the interceptors the manager
    was constructed with.
    """

    def __init__(self, settings: DatabaseSettings, interceptors: Iterable[QueryInterceptor] = ()):
        self.settings = settings
        self.interceptors: List[QueryInterceptor] = list(interceptors)
        self.engine: Optional[AsyncEngine] = None
        self._is_connected = False

        self._active = 0
        self._peak = 0
        self._total = 0

    def add_interceptor(self, interceptor: QueryInterceptor) -> None:
        self.interceptors.append(interceptor)

    def remove_interceptor(self, interceptor: QueryInterceptor) -> None:
        if interceptor in self.interceptors:
            self.interceptors.remove(interceptor)

    @property
    def dialect(self) -> str:
        if self.engine is not None:
            return self.engine.dialect.name
        url = self.settings.database_url or ''
        if url.startswith('postgresql'):
            return 'postgresql'
        if url.startswith('sqlite'):
            return 'sqlite'
        return self.settings.db_dialect

    @property
    def database_name(self) -> str:
        if self.engine is not None and self.engine.url.database:
            return Path(self.engine.url.database).name if self.dialect == 'sqlite' else self.engine.url.database
        return self.settings.get_database_name()

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def _create_engine(self) -> AsyncEngine:
        url = self.settings.get_database_url()
        s = self.settings

        if url.startswith('sqlite'):
            if s.database_url is None and s.db_sqlite_path == ':memory:':
                # One shared connection, otherwise every checkout sees an empty database
                return create_async_engine(
                    'sqlite+aiosqlite://',
                    echo=s.db_echo,
                    poolclass=StaticPool,
                    connect_args={'check_same_thread': False},
                )
            if s.database_url is None:
                Path(s.db_sqlite_path).parent.mkdir(parents=True, exist_ok=True)
            return create_async_engine(url, echo=s.db_echo)

        connect_args = {'ssl': 'require'} if s.db_ssl else {}
        return create_async_engine(
            url,
            echo=s.db_echo,
            pool_size=s.db_pool_max,
            max_overflow=0,
            pool_timeout=s.db_pool_acquire / 1000,
            pool_recycle=3600,
            pool_pre_ping=True,
            connect_args=connect_args,
        )

    async def connect(self) -> None:
        """Create the engine if needed and verify connectivity."""
        if self.engine is None:
            self.engine = self._create_engine()

        await self.ping()
        self._is_connected = True
        logger.info(
            "Database connection established",
            dialect=self.dialect,
            database=self.database_name,
            pool_max=self.settings.db_pool_max,
            pool_min=self.settings.db_pool_min,
        )

    async def connect_with_retry(
        self,
        retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """
        Connect, retrying with exponential backoff.

        Waits base_delay * 2^attempt seconds between attempts and raises
        TransientInfrastructureError once every attempt has failed.
        """
        retries = retries or self.settings.db_retry_attempts
        base_delay = self.settings.db_retry_delay if base_delay is None else base_delay

        for attempt in range(retries):
            try:
                await self.connect()
                return
            except Exception as e:
                logger.error("Database connection attempt failed", attempt=attempt + 1, error=str(e))
                if attempt == retries - 1:
                    logger.error("All database connection attempts failed", attempts=retries)
                    raise TransientInfrastructureError(
                        f"Could not connect after {retries} attempts: {e}", attempts=retries
                    ) from e

                delay = base_delay * (2 ** attempt)
                logger.info("Retrying database connection", delay_seconds=delay)
                await sleep(delay)

    def _bind(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not params:
            return {}
        if self.dialect != 'sqlite':
            return dict(params)
        # SQLite stores timestamps as text; compare against the same format
        bound = {}
        for key, value in params.items():
            if isinstance(value, datetime):
                value = value.isoformat(sep=' ')
            elif isinstance(value, date):
                value = value.isoformat()
            bound[key] = value
        return bound

    def _notify(self, sql: str, duration_ms: float, error: Optional[BaseException]) -> None:
        for interceptor in self.interceptors:
            try:
                interceptor.after_query(sql, duration_ms, error)
            except Exception as e:
                logger.warning("Query interceptor failed", interceptor=type(interceptor).__name__, error=str(e))

    async def _run(self, sql: str, runner) -> Any:
        if self.engine is None:
            raise RuntimeError("Database not initialized. Call connect() first.")

        self._active += 1
        self._total += 1
        self._peak = max(self._peak, self._active)
        start = time.perf_counter()
        error = None

        try:
            async with self.engine.begin() as conn:
                return await runner(conn)
        except Exception as e:
            error = e
            raise
        finally:
            self._active -= 1
            self._notify(sql, (time.perf_counter() - start) * 1000, error)

    async def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Execute a statement with named binds and return rows as dicts."""
        bound = self._bind(params)

        async def runner(conn):
            result = await conn.execute(text(sql), bound)
            if result.returns_rows:
                return [dict(row) for row in result.mappings().all()]
            return []

        return await self._run(sql, runner)

    async def execute_ddl(self, sql: str) -> None:
        """Execute a DDL statement verbatim, without bind parameter parsing."""
        async def runner(conn):
            await conn.exec_driver_sql(sql)

        await self._run(sql, runner)

    async def run_sync(self, fn: Callable[..., Any]) -> Any:
        """Run a synchronous SQLAlchemy callable (e.g. metadata.create_all) in a transaction."""
        if self.engine is None:
            raise RuntimeError("Database not initialized. Call connect() first.")
        async with self.engine.begin() as conn:
            return await conn.run_sync(fn)

    async def ping(self) -> None:
        """Round-trip a trivial query."""
        await self.execute("SELECT 1")

    async def list_indexes(self, table: str) -> List[Dict[str, Any]]:
        """Indexes on a table as [{name, sql}]."""
        if self.dialect == 'sqlite':
            return await self.execute(
                "SELECT name, sql FROM sqlite_master WHERE type = 'index' AND tbl_name = :table",
                {'table': table},
            )
        return await self.execute(
            "SELECT indexname AS name, indexdef AS sql FROM pg_indexes "
            "WHERE schemaname = current_schema() AND tablename = :table",
            {'table': table},
        )

    async def table_exists(self, table: str) -> bool:
        if self.dialect == 'sqlite':
            rows = await self.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = :table",
                {'table': table},
            )
        else:
            rows = await self.execute(
                "SELECT table_name AS name FROM information_schema.tables "
                "WHERE table_schema = current_schema() AND table_name = :table",
                {'table': table},
            )
        return bool(rows)

    async def _pg_columns(self, table: str) -> List[Dict[str, Any]]:
        return await self.execute(
            "SELECT column_name, data_type, is_nullable, column_default "
            "FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = :table "
            "ORDER BY ordinal_position",
            {'table': table},
        )

    async def table_columns(self, table: str) -> List[str]:
        if self.dialect == 'sqlite':
            rows = await self.execute(f"PRAGMA table_info({quote_identifier(table)})")
            return [row['name'] for row in rows]
        return [row['column_name'] for row in await self._pg_columns(table)]

    async def table_ddl(self, table: str) -> Optional[str]:
        """CREATE TABLE statement for a table, or None when it does not exist."""
        if self.dialect == 'sqlite':
            rows = await self.execute(
                "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = :table",
                {'table': table},
            )
            return rows[0]['sql'] if rows else None

        columns = await self._pg_columns(table)
        if not columns:
            return None

        definitions = []
        for column in columns:
            definition = f"  {quote_identifier(column['column_name'])} {column['data_type']}"
            if column['is_nullable'] == 'NO':
                definition += " NOT NULL"
            if column['column_default'] is not None:
                definition += f" DEFAULT {column['column_default']}"
            definitions.append(definition)

        return f"CREATE TABLE {quote_identifier(table)} (\n" + ",\n".join(definitions) + "\n)"

    async def count_rows(self, table: str) -> int:
        rows = await self.execute(f"SELECT COUNT(*) AS row_count FROM {quote_identifier(table)}")
        return int(rows[0]['row_count']) if rows else 0

    async def select_all(self, table: str) -> List[Dict[str, Any]]:
        return await self.execute(f"SELECT * FROM {quote_identifier(table)}")

    def get_connection_stats(self) -> Dict[str, int]:
        """Active, peak and total executions."""
        return {
            'active': self._active,
            'peak': self._peak,
            'total': self._total,
            'pool_max': self.settings.db_pool_max,
        }

    async def health_check(self) -> Dict[str, Any]:
        """
        Connectivity check for monitoring.
        Returns status information and never raises.
        """
        status = {
            "status": "unhealthy",
            "connected": False,
            "response_time_ms": None,
            "error": None,
        }

        try:
            start_time = time.perf_counter()
            await self.ping()
            status.update({
                "status": "healthy",
                "connected": True,
                "response_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
            })
        except Exception as e:
            status["error"] = str(e)
            logger.error("Database health check failed", error=str(e))

        return status

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._is_connected = False
            logger.info("Database connections closed")
