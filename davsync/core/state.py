"""Sync state tracking and change detection."""

import fcntl
import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import StateError
from .client import RemoteInfo

logger = logging.getLogger(__name__)

STATE_FILENAME = "sync-state.json"


class Action(str, Enum):
    """What a sync decides to do with one file."""

    SKIP = "skip"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    CONFLICT = "conflict"


@dataclass
class SyncState:
    """State recorded for one identifier after its last successful sync."""

    identifier: str
    last_local_hash: str  # SHA-256 of local content
    last_remote_hash: str  # SHA-256 of the content last sent or received
    remote_etag: str  # RemoteInfo.fingerprint observed right after the sync
    last_sync_time: str  # ISO timestamp

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary."""
        return {
            "last_local_hash": self.last_local_hash,
            "last_remote_hash": self.last_remote_hash,
            "remote_etag": self.remote_etag,
            "last_sync_time": self.last_sync_time,
        }

    @classmethod
    def from_dict(cls, identifier: str, data: dict[str, str]) -> "SyncState":
        """Create from dictionary."""
        return cls(
            identifier=identifier,
            last_local_hash=data.get("last_local_hash", ""),
            last_remote_hash=data.get("last_remote_hash", ""),
            remote_etag=data.get("remote_etag", ""),
            last_sync_time=data.get("last_sync_time", ""),
        )


@dataclass
class SyncStateData:
    """Complete sync state for all tracked identifiers."""

    version: str = "1.0"
    files: dict[str, SyncState] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "version": self.version,
            "files": {k: v.to_dict() for k, v in self.files.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncStateData":
        """Create from dictionary."""
        files = {}
        for identifier, file_data in (data.get("files") or {}).items():
            files[identifier] = SyncState.from_dict(identifier, file_data)
        return cls(
            version=data.get("version", "1.0"),
            files=files,
        )


@dataclass
class Decision:
    """Outcome of comparing both sides against the recorded state."""

    action: Action
    local_hash: str | None
    remote: RemoteInfo | None
    local_changed: bool = False
    remote_changed: bool = False
    message: str = ""


class SyncStateStore:
    """Loads, saves and compares per-identifier sync state."""

    def __init__(self, state_dir: Path) -> None:
        """Initialize state manager.

        Args:
            state_dir: Directory holding sync-state.json
        """
        self.state_file = Path(state_dir) / STATE_FILENAME
        self._state: SyncStateData | None = None

    @property
    def state(self) -> SyncStateData:
        """Get or load the state data."""
        if self._state is None:
            self._state = self._load_state()
        return self._state

    def _load_state(self) -> SyncStateData:
        """Load state from disk or create empty.

        Raises:
            StateError: If the file exists but is not a valid state document
        """
        if not self.state_file.exists():
            return SyncStateData()
        try:
            with open(self.state_file, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
            return SyncStateData.from_dict(data)
        except (ValueError, AttributeError) as e:
            raise StateError(f"Sync state file {self.state_file} is unreadable: {e}") from e

    def reload(self) -> None:
        """Drop the cached copy so the next access rereads the file."""
        self._state = None

    def save(self) -> None:
        """Save state to disk, replacing the file atomically."""
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.state_file.parent, prefix=".sync-state-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self.state.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(tmp_name, self.state_file)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def compute_hash(content: bytes) -> str:
        """Compute SHA-256 hash of content."""
        return hashlib.sha256(content).hexdigest()

    @staticmethod
    def hash_file(filepath: Path) -> str | None:
        """Compute SHA-256 hash of a file, or None if it does not exist."""
        hasher = hashlib.sha256()
        try:
            with open(filepath, "rb") as f:
                for chunk in iter(lambda: f.read(8192), b""):
                    hasher.update(chunk)
        except FileNotFoundError:
            return None
        return hasher.hexdigest()

    def get(self, identifier: str) -> SyncState | None:
        """Get state for a specific identifier."""
        return self.state.files.get(identifier)

    def record(
        self,
        identifier: str,
        local_hash: str,
        remote_hash: str,
        remote_etag: str,
    ) -> SyncState:
        """Update and persist state after a successful sync.

        Other processes may have recorded other identifiers since this
        store was loaded, so the file is reread under a lock first.
        """
        entry = SyncState(
            identifier=identifier,
            last_local_hash=local_hash,
            last_remote_hash=remote_hash,
            remote_etag=remote_etag,
            last_sync_time=datetime.now(timezone.utc).isoformat(),
        )
        with self._file_lock():
            self.reload()
            self.state.files[identifier] = entry
            self.save()
        return entry

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_file.with_suffix(".lock"), "a") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def decide(self, identifier: str, local_path: Path, remote: RemoteInfo | None) -> Decision:
        """Compare current local and remote state with the last sync.

        - neither side changed -> SKIP
        - only local changed (or remote missing) -> UPLOAD
        - only remote changed (or local missing) -> DOWNLOAD
        - both changed -> CONFLICT (the engine settles identical content)

        Args:
            identifier: Tracked file identifier
            local_path: Local file
            remote: Current remote properties, None if the resource is absent

        Returns:
            Decision with the chosen action
        """
        previous = self.get(identifier)
        local_hash = self.hash_file(local_path)

        if local_hash is None and remote is None:
            return Decision(Action.SKIP, None, None, message="Missing on both sides")

        if previous is None:
            local_changed = local_hash is not None
            remote_changed = remote is not None
        else:
            local_changed = local_hash is not None and local_hash != previous.last_local_hash
            remote_changed = remote is not None and remote.fingerprint != previous.remote_etag

        if local_hash is None:
            return Decision(Action.DOWNLOAD, None, remote, False, True, "Local file missing, restoring from remote")
        if remote is None:
            return Decision(Action.UPLOAD, local_hash, None, True, False, "Remote resource missing")

        if local_changed and remote_changed:
            return Decision(
                Action.CONFLICT,
                local_hash,
                remote,
                True,
                True,
                "Both local and remote changed since last sync",
            )
        if local_changed:
            return Decision(Action.UPLOAD, local_hash, remote, True, False, "Local changed")
        if remote_changed:
            return Decision(Action.DOWNLOAD, local_hash, remote, False, True, "Remote changed")
        return Decision(Action.SKIP, local_hash, remote, message="Already in sync")

