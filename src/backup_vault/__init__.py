"""
Backup Vault - Database Backups

This module implements full-database export for the contact store.

The Backup Vault provides:
- SQL and JSON exports with optional gzip compression
- Checksum manifests and verification
- Day-granular retention pruning
"""

from .backup_engine import BackupEngine, BackupResult, read_artifact, sql_literal
from .manifest import BackupFileRecord, BackupManifest, compute_checksum, verify_manifest
from .retention import RetentionPolicy

__all__ = [
    'BackupEngine',
    'BackupResult',
    'read_artifact',
    'sql_literal',
    'BackupFileRecord',
    'BackupManifest',
    'compute_checksum',
    'verify_manifest',
    'RetentionPolicy',
]
