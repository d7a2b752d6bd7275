"""
Exception taxonomy for the Cold Caller data layer.

Transient infrastructure errors are retried during startup and then become
fatal. Integrity errors are always surfaced to the operator and never
repaired silently.
"""

from typing import Any, Dict, List, Optional


class DataLayerError(Exception):
    """Base class for all data-layer errors."""


class ConfigurationError(DataLayerError):
    """Invalid or inconsistent configuration."""


class TransientInfrastructureError(DataLayerError):
    """Connection refused, timeout or another retryable storage failure."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class BackupError(DataLayerError):
    """A backup run failed as a whole."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class IntegrityError(DataLayerError):
    """Stored data does not match what was recorded about it."""


class BackupIntegrityError(IntegrityError):
    """A backup artifact is missing or its checksum does not match the manifest."""

    def __init__(self, message: str, failures: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.failures = failures or []


class ManifestMissingError(IntegrityError):
    """The manifest describing a backup run could not be found or parsed."""
