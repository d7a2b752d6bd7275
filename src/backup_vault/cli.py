"""
Backup Vault - Command Line Interface

coldcaller-backup [--incremental] [--sql-only | --json-only] [--no-cleanup]
coldcaller-backup --verify backup_<timestamp>.meta.json
"""
import asyncio
import json
import sys
from typing import Any, Dict, Optional
from uuid import uuid4

import click

from ..contact_store.database import DatabaseManager
from ..shared.config import Settings, get_settings
from ..shared.logging_config import CorrelationContext, get_logger
from .backup_engine import BackupEngine

logger = get_logger(__name__, 'backup_vault')


def build_options(incremental: bool, sql_only: bool, json_only: bool, no_cleanup: bool) -> Dict[str, Any]:
    """Translate command line flags into create_backup arguments."""
    if sql_only:
        formats = ['sql']
    elif json_only:
        formats = ['json']
    else:
        formats = ['sql', 'json']

    return {
        'backup_type': 'incremental' if incremental else 'full',
        'formats': formats,
        'skip_cleanup': no_cleanup,
    }


async def run_backup(
    options: Dict[str, Any],
    settings: Optional[Settings] = None,
    database: Optional[DatabaseManager] = None,
) -> Dict[str, Any]:
    """Connect, run one backup and close the connection."""
    settings = settings or get_settings()
    db = database or DatabaseManager(settings.database)

    try:
        await db.connect_with_retry()
        engine = BackupEngine(db, settings.backup, environment=settings.environment)
        result = await engine.create_backup(**options)
        return result.to_dict()
    finally:
        await db.close()


def run_verify(manifest_path: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    engine = BackupEngine(None, settings.backup, environment=settings.environment)
    return engine.verify_backup(manifest_path)


@click.command()
@click.option('--incremental', is_flag=True, help='Tag the backup as incremental')
@click.option('--sql-only', is_flag=True, help='Only write the SQL export')
@click.option('--json-only', is_flag=True, help='Only write the JSON export')
@click.option('--no-cleanup', is_flag=True, help='Skip retention pruning')
@click.option('--verify', 'verify_path', type=click.Path(), help='Verify an existing backup manifest instead')
def backup(incremental, sql_only, json_only, no_cleanup, verify_path):
    """Cold Caller database backup."""
    try:
        if verify_path:
            result = run_verify(verify_path)
            click.echo(f"Verified {len(result['verified'])} files from {result['manifest']}")
            return

        options = build_options(incremental, sql_only, json_only, no_cleanup)
        with CorrelationContext(run_id_value=f"backup-{uuid4().hex[:12]}"):
            result = asyncio.run(run_backup(options))
        click.echo(json.dumps(result, indent=2))

    except Exception as e:
        logger.error(f"Command failed: {e}", operation="backup_cli")
        click.echo(f"Command failed: {e}", err=True)
        sys.exit(1)


def main():
    backup()


if __name__ == '__main__':
    main()
