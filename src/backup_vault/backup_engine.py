"""
Backup Vault - Backup Engine
Full-database export for the Cold Caller data layer.

Each run exports the core tables as SQL and/or JSON, optionally gzip
compresses them, writes every artifact atomically, records a checksum
manifest and prunes old backups according to the retention policy.
"""
import asyncio
import gzip
import json
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ..contact_store.database import quote_identifier
from ..contact_store.schema import CORE_TABLES
from ..shared.config import BackupSettings
from ..shared.errors import BackupError
from ..shared.logging_config import get_logger
from ..shared.metrics_collector import MetricsCollector, get_metrics_collector
from .manifest import BackupFileRecord, BackupManifest, atomic_write_bytes, verify_manifest
from .retention import RetentionPolicy, manifest_name

BACKUP_FORMAT_VERSION = "1.0.0"
SUPPORTED_FORMATS = ('sql', 'json')

# Statements that disable and re-enable foreign key enforcement around a restore
FOREIGN_KEY_TOGGLES = {
    'sqlite': ("PRAGMA foreign_keys = OFF;", "PRAGMA foreign_keys = ON;"),
    'postgresql': ("SET session_replication_role = replica;", "SET session_replication_role = DEFAULT;"),
    'mysql': ("SET FOREIGN_KEY_CHECKS = 0;", "SET FOREIGN_KEY_CHECKS = 1;"),
}


@dataclass
class BackupResult:
    """Outcome of one backup run."""
    success: bool
    files: List[str] = field(default_factory=list)
    size: int = 0
    duration_ms: float = 0.0
    errors: List[Dict[str, str]] = field(default_factory=list)
    manifest: Optional[str] = None
    deleted: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'files': self.files,
            'size': self.size,
            'duration_ms': self.duration_ms,
            'errors': self.errors,
            'manifest': self.manifest,
            'deleted': self.deleted,
        }


def backup_timestamp(moment: datetime) -> str:
    """ISO-8601 timestamp with ':' and '.' replaced so it is safe in file names."""
    iso = moment.isoformat(timespec='milliseconds') + 'Z'
    return iso.replace(':', '-').replace('.', '-')


def sql_literal(value: Any, dialect: str = 'sqlite') -> str:
    """Render a Python value as a SQL literal for INSERT statements."""
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        if dialect == 'postgresql':
            return 'TRUE' if value else 'FALSE'
        return '1' if value else '0'
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    elif isinstance(value, (datetime, date)):
        value = value.isoformat()
    elif isinstance(value, bytes):
        return f"X'{value.hex()}'"
    else:
        value = str(value)
    return "'" + value.replace("'", "''") + "'"


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def read_artifact(path: Union[str, Path]) -> str:
    """Return the text content of an artifact, decompressing .gz files."""
    path = Path(path)
    data = path.read_bytes()
    if path.suffix == '.gz':
        data = gzip.decompress(data)
    return data.decode('utf-8')


class BackupEngine:
    """Exports the contact store to backup artifacts."""

    def __init__(
        self,
        executor,
        settings: BackupSettings,
        environment: str = 'development',
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.executor = executor
        self.settings = settings
        self.environment = getattr(environment, 'value', environment)
        self.clock = clock or datetime.utcnow
        self.logger = get_logger(__name__, 'backup_vault')
        self.collector = metrics or get_metrics_collector()
        self.directory = Path(settings.backup_directory)
        self.tables: List[str] = list(CORE_TABLES)
        self.retention = RetentionPolicy(
            product=settings.backup_product,
            daily_days=settings.backup_retention_daily,
        )

        self._runs = self.collector.get_counter('backup_runs_total', 'Backup runs')
        self._bytes = self.collector.get_counter('backup_bytes_written', 'Backup bytes written')

    def ensure_directory(self) -> Path:
        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"Created backup directory: {self.directory}", operation="ensure_directory")
        return self.directory

    def artifact_name(self, backup_type: str, fmt: str, stamp: str) -> str:
        name = f"{self.settings.backup_product}_{backup_type}_{self.environment}_{stamp}.{fmt}"
        return name + '.gz' if self.settings.backup_compression else name

    async def export_sql(self, generated_at: datetime) -> str:
        """Schema and data of every core table as a SQL script."""
        dialect = self.executor.dialect
        lines = [
            "-- Cold Caller Database Backup",
            f"-- Generated: {generated_at.isoformat()}Z",
            f"-- Environment: {self.environment}",
            f"-- Database: {self.executor.database_name}",
            "",
        ]
        disable_fk, enable_fk = FOREIGN_KEY_TOGGLES.get(dialect, (None, None))
        if disable_fk:
            lines += [disable_fk, ""]

        for table in self.tables:
            ddl = await self.executor.table_ddl(table)
            if ddl is None:
                self.logger.warning(f"Table {table} not found, skipping", operation="export_sql")
                continue

            self.logger.debug(f"Exporting table: {table}", operation="export_sql")
            lines += [ddl.rstrip().rstrip(';') + ';', ""]

            rows = await self.executor.select_all(table)
            if not rows:
                continue

            columns = await self.executor.table_columns(table)
            column_list = ', '.join(quote_identifier(column) for column in columns)
            lines.append(f"-- Data for table {table}")
            for row in rows:
                values = ', '.join(sql_literal(row.get(column), dialect) for column in columns)
                lines.append(f"INSERT INTO {quote_identifier(table)} ({column_list}) VALUES ({values});")
            lines.append("")

        if enable_fk:
            lines.append(enable_fk)
        return '\n'.join(lines) + '\n'

    async def export_json(self, generated_at: datetime) -> str:
        """Every core table's rows as an indented JSON document."""
        document = {
            'metadata': {
                'timestamp': generated_at.isoformat() + 'Z',
                'environment': self.environment,
                'database': self.executor.database_name,
                'version': BACKUP_FORMAT_VERSION,
            },
            'data': {},
        }

        for table in self.tables:
            if await self.executor.table_ddl(table) is None:
                continue
            rows = await self.executor.select_all(table)
            document['data'][table] = rows
            self.logger.debug(f"Exported {len(rows)} {table} records", operation="export_json")

        return json.dumps(document, indent=2, default=_json_default)

    def write_artifact(self, name: str, content: str) -> Path:
        data = content.encode('utf-8')
        if self.settings.backup_compression:
            data = gzip.compress(data)

        if len(data) > self.settings.backup_max_file_size:
            self.logger.warning(
                f"Backup artifact {name} is {len(data)} bytes, above the configured limit",
                operation="write_artifact",
            )

        path = atomic_write_bytes(self.directory / name, data)
        self._bytes.increment(len(data))
        return path

    async def create_backup(
        self,
        backup_type: str = 'full',
        formats: Optional[Sequence[str]] = None,
        skip_cleanup: bool = False,
        timeout: Optional[float] = None,
    ) -> BackupResult:
        """
        Run one backup.

        Args:
            backup_type: Type tag used in artifact names (full or incremental)
            formats: Export formats, defaults to the configured formats
            skip_cleanup: Do not prune old backups after writing
            timeout: Optional limit in seconds for the whole run

        Raises:
            BackupError: If no artifact could be written or the run timed out
        """
        run = self._create_backup(backup_type, formats, skip_cleanup)
        if timeout is None:
            return await run

        try:
            return await asyncio.wait_for(run, timeout)
        except asyncio.TimeoutError as e:
            self._runs.increment(status='failed')
            self.logger.error(f"Backup timed out after {timeout}s", operation="create_backup")
            raise BackupError(f"Backup timed out after {timeout}s") from e

    async def _create_backup(
        self,
        backup_type: str,
        formats: Optional[Sequence[str]],
        skip_cleanup: bool,
    ) -> BackupResult:
        formats = list(formats or self.settings.get_formats())
        unknown = [fmt for fmt in formats if fmt not in SUPPORTED_FORMATS]
        if unknown:
            raise BackupError(f"Unsupported backup formats: {', '.join(unknown)}")

        self.logger.info("Starting database backup", operation="create_backup", backup_type=backup_type)
        start = time.perf_counter()
        generated_at = self.clock()
        stamp = backup_timestamp(generated_at)

        self.ensure_directory()

        written: List[Path] = []
        errors: List[Dict[str, str]] = []
        exporters = {'sql': self.export_sql, 'json': self.export_json}

        for fmt in formats:
            name = self.artifact_name(backup_type, fmt, stamp)
            try:
                content = await exporters[fmt](generated_at)
                written.append(self.write_artifact(name, content))
                self.logger.info(f"{fmt.upper()} backup created: {name}", operation="create_backup")
            except Exception as e:
                errors.append({'format': fmt, 'file': name, 'error': str(e)})
                self.logger.error(f"{fmt.upper()} backup failed: {e}", operation="create_backup")

        if not written:
            self._runs.increment(status='failed')
            raise BackupError("Backup produced no artifacts", errors=errors)

        manifest = BackupManifest(
            timestamp=generated_at.isoformat() + 'Z',
            environment=self.environment,
            database=self.executor.database_name,
            files=[BackupFileRecord.from_file(path) for path in written],
        )
        manifest_path = manifest.write(self.directory / manifest_name(stamp))
        self.logger.info(f"Backup manifest created: {manifest_path.name}", operation="create_backup")

        deleted: List[str] = []
        if not skip_cleanup:
            keep = [path.name for path in written] + [manifest_path.name]
            try:
                deleted = self.retention.clean(self.directory, now=generated_at, keep=keep)
            except Exception as e:
                self.logger.error(f"Backup cleanup failed: {e}", operation="cleanup")

        files = [str(path) for path in written] + [str(manifest_path)]
        size = sum(Path(path).stat().st_size for path in files)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        self._runs.increment(status='success')
        self.logger.info(
            f"Backup completed in {duration_ms}ms: {len(files)} files, {size / 1024 / 1024:.2f} MB",
            operation="create_backup",
        )

        return BackupResult(
            success=True,
            files=files,
            size=size,
            duration_ms=duration_ms,
            errors=errors,
            manifest=str(manifest_path),
            deleted=deleted,
        )

    def verify_backup(self, manifest_path: Union[str, Path]) -> Dict[str, Any]:
        """
        Verify every artifact listed in a manifest.

        Raises:
            ManifestMissingError: If the manifest does not exist
            BackupIntegrityError: If an artifact is missing or altered
        """
        manifest_path = Path(manifest_path)
        manifest = BackupManifest.load(manifest_path)
        verified = verify_manifest(manifest, base_dir=manifest_path.parent)
        self.logger.info(f"Verified {len(verified)} backup files", operation="verify_backup")
        return {
            'manifest': str(manifest_path),
            'timestamp': manifest.timestamp,
            'verified': verified,
        }

    def clean_old_backups(self, now: Optional[datetime] = None) -> List[str]:
        return self.retention.clean(self.directory, now=now or self.clock())
