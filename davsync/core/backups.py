"""Timestamped backups taken before a file is overwritten."""

import logging
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
SNAPSHOT_RE = re.compile(r"^(?P<stamp>\d{8}-\d{6})(?:-(?P<seq>\d+))?(?P<suffix>\.[^/]*)?$")


@dataclass(frozen=True)
class BackupEntry:
    """One snapshot of a tracked file."""

    identifier: str
    timestamp: datetime
    snapshot_path: Path
    sequence: int = 0  # Disambiguates snapshots taken within the same second

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.sequence)


class BackupRotator:
    """Keeps per-identifier snapshots under `<backup_dir>/<identifier>/`.

    Retention: the newest `min_count` snapshots are always kept; older ones
    are deleted once they exceed `max_age_days`.
    """

    def __init__(
        self,
        backup_dir: Path,
        min_count: int = 10,
        max_age_days: int = 30,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.min_count = min_count
        self.max_age_days = max_age_days
        self._clock = clock

    def area(self, identifier: str) -> Path:
        return self.backup_dir / identifier

    def snapshot(self, identifier: str, path: Path, suffix: str | None = None) -> BackupEntry | None:
        """Copy a file into the backup area, then prune.

        Args:
            identifier: Tracked file identifier
            path: File whose current content is about to be replaced
            suffix: Name suffix for the snapshot, default path.suffix

        Returns:
            The new BackupEntry, or None if the file does not exist
        """
        path = Path(path)
        if not path.exists():
            return None

        area = self.area(identifier)
        area.mkdir(parents=True, exist_ok=True)

        now = self._clock().replace(microsecond=0)
        stamp = now.strftime(TIMESTAMP_FORMAT)
        if suffix is None:
            suffix = path.suffix

        sequence = 0
        target = area / f"{stamp}{suffix}"
        while target.exists():
            sequence += 1
            target = area / f"{stamp}-{sequence}{suffix}"

        shutil.copy2(path, target)
        logger.info("Backed up %s -> %s", path, target)

        self.prune(identifier)
        return BackupEntry(identifier=identifier, timestamp=now, snapshot_path=target, sequence=sequence)

    def list_entries(self, identifier: str) -> list[BackupEntry]:
        """All snapshots for an identifier, newest first."""
        area = self.area(identifier)
        if not area.is_dir():
            return []

        entries = []
        for child in area.iterdir():
            match = SNAPSHOT_RE.match(child.name)
            if not match or not child.is_file():
                continue
            try:
                timestamp = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT)
            except ValueError:
                continue
            entries.append(BackupEntry(
                identifier=identifier,
                timestamp=timestamp,
                snapshot_path=child,
                sequence=int(match.group("seq") or 0),
            ))

        entries.sort(key=lambda e: e.sort_key, reverse=True)
        return entries

    def prune(self, identifier: str) -> list[Path]:
        """Delete snapshots beyond the minimum count that are too old.

        Returns:
            Paths that were deleted
        """
        entries = self.list_entries(identifier)
        cutoff = self._clock() - timedelta(days=self.max_age_days)

        removed = []
        for entry in entries[self.min_count:]:
            if entry.timestamp >= cutoff:
                continue
            try:
                entry.snapshot_path.unlink()
            except FileNotFoundError:
                continue
            removed.append(entry.snapshot_path)

        if removed:
            logger.debug("Pruned %d backup(s) of %s", len(removed), identifier)
        return removed
