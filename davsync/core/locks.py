"""Local and remote locking for one sync operation."""

import fcntl
import json
import logging
import os
import socket
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Protocol

from ..errors import DavSyncError, LockContention, RemoteLockFailed, RemoteUnlockFailed, TransferError
from .client import LockToken

logger = logging.getLogger(__name__)


class LockingClient(Protocol):
    def lock(self, url: str, timeout: int) -> LockToken: ...

    def unlock(self, url: str, token: str) -> None: ...


@dataclass
class LocalLock:
    """An advisory lock held on a per-identifier marker file."""

    identifier: str
    marker_path: Path
    handle: IO[str] | None = field(default=None, repr=False)

    @property
    def held(self) -> bool:
        return self.handle is not None


class LockCoordinator:
    """Serializes access per identifier on this host and per resource on the server.

    Local locks are `flock` locks on `<lock_dir>/<identifier>.lock`, so a
    crashed holder never leaves a stale lock behind. Remote locks are
    exclusive WebDAV write locks whose lifetime the server bounds.
    """

    def __init__(
        self,
        lock_dir: Path,
        client: LockingClient | None = None,
        lock_retries: int = 2,
        retry_delay: float = 1.0,
        lock_timeout: int = 300,
        skip_remote: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize coordinator.

        Args:
            lock_dir: Directory holding the marker files
            client: TransferClient used for LOCK/UNLOCK
            lock_retries: Extra attempts after the first failed local acquire
            retry_delay: Fixed pause between local attempts, in seconds
            lock_timeout: Timeout hint sent with LOCK, in seconds
            skip_remote: Make remote acquire/release no-ops
            sleep: Sleep function (replaced in tests)
        """
        self.lock_dir = Path(lock_dir)
        self.client = client
        self.lock_retries = lock_retries
        self.retry_delay = retry_delay
        self.lock_timeout = lock_timeout
        self.skip_remote = skip_remote
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Local
    # -------------------------------------------------------------------------

    def acquire_local(self, identifier: str) -> LocalLock:
        """Take the host-wide lock for an identifier.

        Raises:
            LockContention: If still held elsewhere after the retry budget
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        marker = self.lock_dir / f"{identifier}.lock"

        attempts = self.lock_retries + 1
        for attempt in range(1, attempts + 1):
            handle = open(marker, "a+")
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                handle.close()
                if attempt == attempts:
                    break
                logger.debug("Local lock for %s busy, attempt %d/%d", identifier, attempt, attempts)
                self._sleep(self.retry_delay)
                continue
            except OSError:
                handle.close()
                raise

            self._write_owner(handle, identifier)
            logger.debug("Acquired local lock %s", marker)
            return LocalLock(identifier=identifier, marker_path=marker, handle=handle)

        raise LockContention(
            f"'{identifier}' is locked by another davsync process ({marker}); gave up after {attempts} attempts"
        )

    @staticmethod
    def _write_owner(handle: IO[str], identifier: str) -> None:
        handle.seek(0)
        handle.truncate()
        json.dump(
            {
                "identifier": identifier,
                "pid": os.getpid(),
                "hostname": socket.gethostname(),
                "acquired_at": datetime.now(timezone.utc).isoformat(),
            },
            handle,
        )
        handle.flush()

    def release_local(self, lock: LocalLock | None) -> None:
        """Release a local lock. Safe to call more than once."""
        if lock is None or lock.handle is None:
            return
        handle, lock.handle = lock.handle, None
        try:
            fcntl.flock(handle, fcntl.LOCK_UN)
        except OSError as e:
            logger.warning("Failed to unlock %s: %s", lock.marker_path, e)
        finally:
            handle.close()
        logger.debug("Released local lock %s", lock.marker_path)

    @contextmanager
    def local(self, identifier: str) -> Iterator[LocalLock]:
        lock = self.acquire_local(identifier)
        try:
            yield lock
        finally:
            self.release_local(lock)

    # -------------------------------------------------------------------------
    # Remote
    # -------------------------------------------------------------------------

    def acquire_remote(self, url: str, timeout: int | None = None) -> LockToken | None:
        """Take an exclusive WebDAV write lock on url.

        Returns:
            LockToken, or None when remote locking is disabled

        Raises:
            RemoteLockFailed: If the LOCK fails or yields no token
        """
        if self.skip_remote:
            return None
        if self.client is None:
            raise RemoteLockFailed(f"No client available to lock {url}")

        try:
            token = self.client.lock(url, timeout or self.lock_timeout)
        except TransferError as e:
            raise RemoteLockFailed(f"LOCK {url} failed: {e}") from e

        if not token.token:
            raise RemoteLockFailed(f"Server granted a lock on {url} without a lock token")

        logger.debug("Acquired remote lock on %s (%ss)", url, token.timeout_seconds)
        return token

    def release_remote(self, token: LockToken | None) -> None:
        """UNLOCK a resource. Failures are logged, never raised."""
        if self.skip_remote or token is None or self.client is None:
            return
        try:
            self.client.unlock(token.remote_url, token.token)
        except DavSyncError as e:
            warning = RemoteUnlockFailed(
                f"UNLOCK {token.remote_url} failed ({e}); the server releases it after "
                f"{token.timeout_seconds}s"
            )
            logger.warning("%s", warning)
            return
        logger.debug("Released remote lock on %s", token.remote_url)

    @contextmanager
    def remote(self, url: str, timeout: int | None = None) -> Iterator[LockToken | None]:
        token = self.acquire_remote(url, timeout)
        try:
            yield token
        finally:
            self.release_remote(token)
