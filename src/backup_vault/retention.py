"""
Backup Vault - Retention
Day-granular pruning of old backup artifacts.

Artifacts are grouped by (backup type, calendar day). The lexicographically
last name in a group is its primary. Once a group is older than the daily
retention window every file in it is deleted; until then only the extras
are removed. A run's manifest is deleted together with the last
artifact carrying its timestamp.
"""
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from ..shared.logging_config import get_logger

BACKUP_EXTENSIONS = ('.sql', '.sql.gz', '.json', '.json.gz')
MANIFEST_SUFFIX = '.meta.json'

_STAMP = re.compile(r'_(\d{4}-\d{2}-\d{2}T[0-9-]+Z)\.')


def manifest_name(stamp: str) -> str:
    return f"backup_{stamp}{MANIFEST_SUFFIX}"


def run_stamp(name: str) -> Optional[str]:
    """The run timestamp embedded in an artifact name, or None."""
    match = _STAMP.search(name)
    return match.group(1) if match else None


@dataclass
class RetentionPolicy:
    """Daily retention for one product's backup directory."""
    product: str = 'coldcaller'
    daily_days: int = 7

    def __post_init__(self):
        self.logger = get_logger(__name__, 'backup_vault')
        self._pattern = re.compile(
            rf'^{re.escape(self.product)}_([A-Za-z0-9]+)_(\w+?)_(\d{{4}}-\d{{2}}-\d{{2}})T'
        )

    def is_backup_file(self, name: str) -> bool:
        return name.startswith(f"{self.product}_") and name.endswith(BACKUP_EXTENSIONS)

    def parse(self, name: str) -> Optional[Tuple[str, str]]:
        """(type, date) for a backup file name, or None if it does not match."""
        match = self._pattern.match(name)
        if not match:
            return None
        return match.group(1), match.group(3)

    def group(self, names: List[str]) -> Dict[Tuple[str, str], List[str]]:
        groups: Dict[Tuple[str, str], List[str]] = defaultdict(list)
        for name in names:
            if not self.is_backup_file(name):
                continue
            key = self.parse(name)
            if key:
                groups[key].append(name)
        return dict(groups)

    def select_deletions(self, names: List[str], now: datetime, keep: Iterable[str] = ()) -> List[str]:
        """Names that should be deleted given the files present at `now`, never those in keep."""
        keep = set(keep)
        to_delete = []

        for (_, day), files in sorted(self.group(names).items()):
            files = sorted(files, reverse=True)
            primary, extras = files[0], files[1:]

            age_days = (now - datetime.strptime(day, '%Y-%m-%d')).days
            if age_days > self.daily_days:
                to_delete.append(primary)
            to_delete.extend(extras)

        return [name for name in to_delete if name not in keep]

    def clean(
        self,
        directory: Union[str, Path],
        now: Optional[datetime] = None,
        keep: Iterable[str] = (),
    ) -> List[str]:
        """
        Delete expired and superseded backups from directory.

        Files named in keep, such as the artifacts of the run that just
        finished, are never deleted. Manifests whose runs lost their last
        artifact in this pass are deleted too. Failures to delete a single
        file are logged and skipped; running clean again without new
        backups deletes nothing.

        Returns:
            Names of the deleted files
        """
        directory = Path(directory)
        now = now or datetime.utcnow()

        if not directory.is_dir():
            return []

        keep = set(keep)
        names = [entry.name for entry in directory.iterdir() if entry.is_file()]
        deleted = []

        for name in self.select_deletions(names, now, keep):
            try:
                (directory / name).unlink()
                deleted.append(name)
                self.logger.debug(f"Deleted backup {name}", operation="retention")
            except OSError as e:
                self.logger.error(f"Failed to delete backup {name}: {e}", operation="retention")

        deleted += self._prune_manifests(directory, deleted, keep)
        self.logger.info(f"Cleaned {len(deleted)} old backup files", operation="retention")
        return deleted

    def _prune_manifests(self, directory: Path, deleted: List[str], keep: Set[str]) -> List[str]:
        remaining = {
            run_stamp(entry.name)
            for entry in directory.iterdir()
            if entry.is_file() and not entry.name.endswith(MANIFEST_SUFFIX)
        }
        orphaned = {run_stamp(name) for name in deleted} - remaining - {None}

        pruned = []
        for stamp in sorted(orphaned):
            name = manifest_name(stamp)
            path = directory / name
            if name in keep or not path.is_file():
                continue
            try:
                path.unlink()
                pruned.append(name)
                self.logger.debug(f"Deleted manifest {name}", operation="retention")
            except OSError as e:
                self.logger.error(f"Failed to delete manifest {name}: {e}", operation="retention")
        return pruned
