"""Shared fixtures: an in-memory WebDAV server and a wired-up engine."""

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import pytest

from davsync.core.backups import BackupRotator
from davsync.core.client import LockToken, RemoteInfo
from davsync.core.locks import LockCoordinator
from davsync.core.operations import SyncEngine
from davsync.core.state import SyncStateStore
from davsync.errors import TransferError
from davsync.models.config import FileEntry


class FakeTransferClient:
    """Implements the TransferClient calls against a dict and records them."""

    def __init__(self) -> None:
        self.resources: dict[str, bytes] = {}
        self.etags: dict[str, str] = {}
        self.locks: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.grant_empty_token = False
        self.fail_on: set[str] = set()
        self.lock_creates_empty = False
        self.closed = False
        self._etag_seq = itertools.count(1)
        self._token_seq = itertools.count(1)

    def count(self, verb: str) -> int:
        return sum(1 for call_verb, _ in self.calls if call_verb == verb)

    @property
    def transfers(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("PUT", "GET")]

    def remote_write(self, url: str, content: bytes) -> None:
        """Change a resource behind the engine's back."""
        self.resources[url] = content
        self.etags[url] = f'"e{next(self._etag_seq)}"'

    def _maybe_fail(self, verb: str, url: str) -> None:
        if verb in self.fail_on:
            raise TransferError(f"{verb} {url} failed", 500)

    def put(self, url: str, local_path: Path, token: str | None = None) -> None:
        self.calls.append(("PUT", url))
        self._maybe_fail("PUT", url)
        held = self.locks.get(url)
        if held is not None and held != token:
            raise TransferError(f"PUT {url} -> 423", 423)
        self.remote_write(url, Path(local_path).read_bytes())

    def get(self, url: str, dest_path: Path, token: str | None = None) -> None:
        self.calls.append(("GET", url))
        self._maybe_fail("GET", url)
        if url not in self.resources:
            raise TransferError(f"GET {url} -> 404", 404)
        Path(dest_path).write_bytes(self.resources[url])

    def lock(self, url: str, timeout: int) -> LockToken:
        self.calls.append(("LOCK", url))
        self._maybe_fail("LOCK", url)
        if url in self.locks:
            raise TransferError(f"LOCK {url} -> 423", 423)
        if self.lock_creates_empty and url not in self.resources:
            self.remote_write(url, b"")
        token = "" if self.grant_empty_token else f"opaquelocktoken:t{next(self._token_seq)}"
        if token:
            self.locks[url] = token
        return LockToken(url, token, datetime.now(timezone.utc), timeout)

    def unlock(self, url: str, token: str) -> None:
        self.calls.append(("UNLOCK", url))
        self._maybe_fail("UNLOCK", url)
        if self.locks.get(url) != token:
            raise TransferError(f"UNLOCK {url} -> 409", 409)
        del self.locks[url]

    def stat(self, url: str) -> RemoteInfo | None:
        self.calls.append(("PROPFIND", url))
        if url not in self.resources:
            return None
        return RemoteInfo(url=url, etag=self.etags[url], content_length=len(self.resources[url]))

    def close(self) -> None:
        self.closed = True


@dataclass
class Workspace:
    root: Path
    client: FakeTransferClient
    state: SyncStateStore
    locks: LockCoordinator
    backups: BackupRotator
    entry: FileEntry

    def engine(self, **kwargs) -> SyncEngine:
        return SyncEngine(
            client=self.client,
            state=self.state,
            locks=self.locks,
            backups=self.backups,
            **kwargs,
        )

    def make_entry(self, identifier: str, filename: str) -> FileEntry:
        return FileEntry(identifier, self.root / "home" / filename, f"https://ex/{filename}")


@pytest.fixture
def fake_client() -> FakeTransferClient:
    return FakeTransferClient()


@pytest.fixture
def workspace(tmp_path: Path, fake_client: FakeTransferClient) -> Workspace:
    (tmp_path / "home").mkdir()
    state_dir = tmp_path / "state"
    return Workspace(
        root=tmp_path,
        client=fake_client,
        state=SyncStateStore(state_dir),
        locks=LockCoordinator(state_dir / "locks", client=fake_client, lock_retries=2, retry_delay=0),
        backups=BackupRotator(tmp_path / "backups", min_count=10, max_age_days=30),
        entry=FileEntry("doc", tmp_path / "home" / "doc.txt", "https://ex/doc.txt"),
    )


@pytest.fixture(autouse=True)
def _reset_davsync_logger():
    yield
    logger = logging.getLogger("davsync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
