"""
Backup Vault - Manifests and Checksums
Describes the artifacts produced by one backup run and verifies them later.
"""
import hashlib
import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Union

from ..shared.errors import BackupIntegrityError, ManifestMissingError

PathLike = Union[str, Path]

_CHUNK_SIZE = 1024 * 1024


def compute_checksum(path: PathLike) -> str:
    """SHA-256 of a file's bytes as lowercase hex."""
    digest = hashlib.sha256()
    with open(path, 'rb') as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def atomic_write_bytes(path: PathLike, data: bytes) -> Path:
    """
    Write data to a temporary sibling and rename it over path.

    Readers never observe a partially written file; on failure the
    temporary file is removed and path is left untouched.
    """
    target = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix='.tmp', dir=target.parent)
    try:
        with os.fdopen(fd, 'wb') as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return target


@dataclass
class BackupFileRecord:
    """One artifact listed in a manifest."""
    name: str
    path: str
    size: int
    checksum: str
    created: str

    @classmethod
    def from_file(cls, path: PathLike) -> 'BackupFileRecord':
        path = Path(path)
        stat = path.stat()
        return cls(
            name=path.name,
            path=str(path),
            size=stat.st_size,
            checksum=compute_checksum(path),
            created=datetime.utcfromtimestamp(stat.st_mtime).isoformat() + 'Z',
        )


@dataclass
class BackupManifest:
    """Metadata file written next to the artifacts of a backup run."""
    timestamp: str
    environment: str
    database: str
    files: List[BackupFileRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'environment': self.environment,
            'database': self.database,
            'files': [asdict(record) for record in self.files],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupManifest':
        return cls(
            timestamp=data['timestamp'],
            environment=data['environment'],
            database=data['database'],
            files=[BackupFileRecord(**record) for record in data.get('files', [])],
        )

    def write(self, path: PathLike) -> Path:
        return atomic_write_bytes(path, json.dumps(self.to_dict(), indent=2).encode('utf-8'))

    @classmethod
    def load(cls, path: PathLike) -> 'BackupManifest':
        """
        Read a manifest from disk.

        Raises:
            ManifestMissingError: If the manifest file does not exist
        """
        path = Path(path)
        if not path.is_file():
            raise ManifestMissingError(f"Backup manifest not found: {path}")
        with open(path, 'r', encoding='utf-8') as handle:
            return cls.from_dict(json.load(handle))


def verify_manifest(manifest: BackupManifest, base_dir: PathLike = None) -> List[str]:
    """
    Re-hash every artifact a manifest lists.

    Artifacts are looked up by recorded path first, then by name inside
    base_dir so a copied backup directory still verifies.

    Returns:
        Names of the verified artifacts

    Raises:
        BackupIntegrityError: If any artifact is missing or its checksum differs
    """
    failures = []
    verified = []

    for record in manifest.files:
        candidates = [Path(record.path)]
        if base_dir is not None:
            candidates.append(Path(base_dir) / record.name)
        path = next((candidate for candidate in candidates if candidate.is_file()), None)

        if path is None:
            failures.append({'name': record.name, 'reason': 'missing'})
            continue

        actual = compute_checksum(path)
        if actual != record.checksum:
            failures.append({
                'name': record.name,
                'reason': 'checksum mismatch',
                'expected': record.checksum,
                'actual': actual,
            })
            continue

        verified.append(record.name)

    if failures:
        names = ', '.join(failure['name'] for failure in failures)
        raise BackupIntegrityError(f"Backup verification failed for: {names}", failures=failures)

    return verified
