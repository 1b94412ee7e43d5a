"""Sync, put and get operations between local files and WebDAV resources."""

import logging
import os
import shutil
import tempfile
from collections.abc import Callable, Iterable
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from ..errors import ConflictUnresolved, DavSyncError, TransferError
from ..models.config import FileEntry
from .backups import BackupRotator
from .client import LockToken, RemoteInfo
from .locks import LockCoordinator
from .state import Action, Decision, SyncStateStore

logger = logging.getLogger(__name__)

ConfirmHook = Callable[[FileEntry, Action], bool]


class TransferClient(Protocol):
    def put(self, url: str, local_path: Path, token: str | None = None) -> None: ...

    def get(self, url: str, dest_path: Path, token: str | None = None) -> None: ...

    def lock(self, url: str, timeout: int) -> LockToken: ...

    def unlock(self, url: str, token: str) -> None: ...

    def stat(self, url: str) -> RemoteInfo | None: ...

    def close(self) -> None: ...

class Phase(str, Enum):
    """Steps one file goes through during a sync."""

    IDLE = "idle"
    LOCKING = "locking"
    DECIDING = "deciding"
    TRANSFERRING = "transferring"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


class ConflictPolicy(str, Enum):
    """Which side wins when both changed."""

    NONE = "none"
    OVERWRITE_LOCAL = "overwrite-local"
    OVERWRITE_REMOTE = "overwrite-remote"


@dataclass
class SyncResult:
    """Result of a sync operation on one file."""

    identifier: str
    success: bool
    action: str
    message: str
    conflict: bool = False
    skipped: bool = False
    uploaded: int = 0
    downloaded: int = 0
    snapshots: int = 0
    phase: Phase = Phase.DONE


class _Progress:
    """Phase and counters for one running operation."""

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        self.phase = Phase.IDLE
        self.uploaded = 0
        self.downloaded = 0
        self.snapshots = 0

    def enter(self, phase: Phase) -> None:
        logger.debug("%s: %s -> %s", self.identifier, self.phase.value, phase.value)
        self.phase = phase

    def result(self, success: bool, action: Action | str, message: str, **kwargs: bool) -> SyncResult:
        return SyncResult(
            identifier=self.identifier,
            success=success,
            action=action.value if isinstance(action, Action) else action,
            message=message,
            uploaded=self.uploaded,
            downloaded=self.downloaded,
            snapshots=self.snapshots,
            phase=self.phase,
            **kwargs,
        )


class SyncEngine:
    """Decides and drives the transfer for each tracked file.

    Every operation runs inside an ExitStack holding, in order, the local
    lock, the remote lock and any temporary download file; unwinding the
    stack releases them in reverse on every exit path.
    """

    def __init__(
        self,
        client: TransferClient,
        state: SyncStateStore,
        locks: LockCoordinator,
        backups: BackupRotator,
        policy: ConflictPolicy = ConflictPolicy.NONE,
        force: bool = False,
        confirm: ConfirmHook | None = None,
        dry_run: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            client: TransferClient for GET/PUT/PROPFIND
            state: Persisted per-identifier state
            locks: Local and remote lock coordinator
            backups: Snapshot and retention manager
            policy: Conflict resolution policy
            force: Skip the confirmation hook
            confirm: Called before discarding unsynced changes; False declines
            dry_run: Decide only, never snapshot or transfer
        """
        self.client = client
        self.state = state
        self.locks = locks
        self.backups = backups
        self.policy = policy
        self.force = force
        self.confirm = confirm
        self.dry_run = dry_run

    def sync(self, entry: FileEntry) -> SyncResult:
        """Bring one file in step, in whichever direction changed."""
        return self._run(entry, None)

    def put(self, entry: FileEntry) -> SyncResult:
        """Upload one file regardless of what changed."""
        return self._run(entry, Action.UPLOAD)

    def get(self, entry: FileEntry) -> SyncResult:
        """Download one file regardless of what changed."""
        return self._run(entry, Action.DOWNLOAD)

    def sync_all(self, entries: Iterable[FileEntry]) -> list[SyncResult]:
        """Sync each file in turn. One failure never stops the rest."""
        return [self.sync(entry) for entry in entries]

    def close(self) -> None:
        """Close the transfer client."""
        self.client.close()

    def _run(self, entry: FileEntry, forced: Action | None) -> SyncResult:
        progress = _Progress(entry.identifier)
        action: Action | str = forced or "sync"

        try:
            with ExitStack() as stack:
                progress.enter(Phase.LOCKING)
                stack.enter_context(self.locks.local(entry.identifier))
                before_lock = self.client.stat(entry.remote_url)
                token = stack.enter_context(self.locks.remote(entry.remote_url))
                lock_token = token.token if token else None

                progress.enter(Phase.DECIDING)
                remote = self.client.stat(entry.remote_url) if token else before_lock
                if before_lock is None and _created_by_lock(remote):
                    # LOCK on an unmapped URL leaves an empty resource behind
                    remote = None
                self.state.reload()
                decision = self.state.decide(entry.identifier, entry.local_path, remote)

                if (
                    forced is None
                    and decision.action is Action.CONFLICT
                    and not self.dry_run
                    and self._same_content(entry, decision, lock_token, stack)
                ):
                    progress.enter(Phase.FINALIZING)
                    self._finalize(entry)
                    progress.enter(Phase.DONE)
                    return progress.result(
                        True, Action.SKIP, f"{entry.identifier}: Both sides changed to the same content", skipped=True
                    )

                action = self._choose(entry, decision, forced)

                if action is Action.SKIP:
                    progress.enter(Phase.DONE)
                    return progress.result(True, action, f"{entry.identifier}: {decision.message}", skipped=True)

                if self._discards_changes(decision, action) and not self._confirmed(entry, action):
                    progress.enter(Phase.DONE)
                    return progress.result(
                        False,
                        action,
                        f"{entry.identifier}: overwrite declined, nothing transferred",
                        conflict=decision.action is Action.CONFLICT,
                        skipped=True,
                    )

                if self.dry_run:
                    progress.enter(Phase.DONE)
                    return progress.result(
                        True, action, f"[DRY RUN] Would {action.value} {entry.identifier} ({decision.message})",
                        skipped=True,
                    )

                progress.enter(Phase.TRANSFERRING)
                if action is Action.UPLOAD:
                    self._upload(entry, decision, lock_token, progress, stack)
                else:
                    self._download(entry, lock_token, progress, stack)

                progress.enter(Phase.FINALIZING)
                self._finalize(entry)

            progress.enter(Phase.DONE)
            verb = "Uploaded" if action is Action.UPLOAD else "Downloaded"
            return progress.result(True, action, f"{verb} {entry.identifier} ({decision.message})")

        except ConflictUnresolved as e:
            progress.enter(Phase.ERROR)
            return progress.result(False, Action.CONFLICT, str(e), conflict=True)
        except (DavSyncError, OSError) as e:
            failed_in = progress.phase
            progress.enter(Phase.ERROR)
            logger.debug("%s failed while %s", entry.identifier, failed_in.value, exc_info=True)
            return progress.result(False, action, f"{entry.identifier}: {e}")

    def _choose(self, entry: FileEntry, decision: Decision, forced: Action | None) -> Action:
        if decision.local_hash is None and decision.remote is None:
            raise TransferError(f"{entry.local_path} does not exist locally or at {entry.remote_url}")

        if forced is Action.UPLOAD and decision.local_hash is None:
            raise TransferError(f"Cannot upload {entry.identifier}: {entry.local_path} does not exist")
        if forced is Action.DOWNLOAD and decision.remote is None:
            raise TransferError(f"Cannot download {entry.identifier}: {entry.remote_url} does not exist")
        if forced is not None:
            return forced

        if decision.action is Action.CONFLICT:
            if self.policy is ConflictPolicy.OVERWRITE_LOCAL:
                logger.info("%s: conflict, remote wins", entry.identifier)
                return Action.DOWNLOAD
            if self.policy is ConflictPolicy.OVERWRITE_REMOTE:
                logger.info("%s: conflict, local wins", entry.identifier)
                return Action.UPLOAD
            raise ConflictUnresolved(
                f"{entry.identifier}: {decision.message}; rerun with --overwrite-local or --overwrite-remote"
            )
        return decision.action

    @staticmethod
    def _discards_changes(decision: Decision, action: Action) -> bool:
        """True if the transfer overwrites changes made since the last sync."""
        if action is Action.UPLOAD:
            return decision.remote_changed and decision.remote is not None
        if action is Action.DOWNLOAD:
            return decision.local_changed and decision.local_hash is not None
        return False

    def _confirmed(self, entry: FileEntry, action: Action) -> bool:
        if self.force or self.confirm is None:
            return True
        return self.confirm(entry, action)

    def _same_content(self, entry: FileEntry, decision: Decision, token: str | None, stack: ExitStack) -> bool:
        """Whether both sides changed to identical bytes.

        A size mismatch settles it without a download.
        """
        remote = decision.remote
        if remote is None or decision.local_hash is None:
            return False
        if remote.content_length is not None and remote.content_length != entry.local_path.stat().st_size:
            return False
        fetched = self._fetch_remote(entry, token, stack)
        return self.state.hash_file(fetched) == decision.local_hash

    def _fetch_remote(self, entry: FileEntry, token: str | None, stack: ExitStack) -> Path:
        """GET the remote body into a temp file removed when the stack unwinds."""
        target = entry.local_path
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
        os.close(fd)
        tmp_path = Path(tmp_name)
        stack.callback(_remove_temp, tmp_path)
        self.client.get(entry.remote_url, tmp_path, token)
        return tmp_path

    def _snapshot(self, entry: FileEntry, progress: _Progress) -> None:
        if self.backups.snapshot(entry.identifier, entry.local_path) is not None:
            progress.snapshots += 1

    def _upload(
        self,
        entry: FileEntry,
        decision: Decision,
        token: str | None,
        progress: _Progress,
        stack: ExitStack,
    ) -> None:
        if decision.remote_changed and decision.remote is not None:
            replaced = self._fetch_remote(entry, token, stack)
            if self.backups.snapshot(entry.identifier, replaced, suffix=entry.local_path.suffix) is not None:
                progress.snapshots += 1
        self._snapshot(entry, progress)
        self.client.put(entry.remote_url, entry.local_path, token)
        progress.uploaded += 1
        logger.info("PUT %s -> %s", entry.local_path, entry.remote_url)

    def _download(self, entry: FileEntry, token: str | None, progress: _Progress, stack: ExitStack) -> None:
        target = entry.local_path
        self._snapshot(entry, progress)

        tmp_path = self._fetch_remote(entry, token, stack)

        if target.exists():
            shutil.copymode(target, tmp_path)
        else:
            os.chmod(tmp_path, _default_mode())
        os.replace(tmp_path, target)
        progress.downloaded += 1
        logger.info("GET %s -> %s", entry.remote_url, target)

    def _finalize(self, entry: FileEntry) -> None:
        local_hash = self.state.hash_file(entry.local_path)
        if local_hash is None:
            raise TransferError(f"{entry.local_path} vanished after transfer")
        remote = self.client.stat(entry.remote_url)
        self.state.record(
            entry.identifier,
            local_hash=local_hash,
            remote_hash=local_hash,
            remote_etag=remote.fingerprint if remote else "",
        )


def _created_by_lock(remote: RemoteInfo | None) -> bool:
    return remote is not None and remote.content_length == 0


def _remove_temp(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove temporary file %s: %s", path, e)


def _default_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask
