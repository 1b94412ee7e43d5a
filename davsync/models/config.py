"""Configuration and data models for the sync system."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import quote, urljoin, urlparse

import yaml

from ..errors import ConfigError

IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")

DEFAULT_CONFIG_PATH = Path("~/.config/davsync/config.yaml")


def normalize_base_url(url: str) -> str:
    """Validate an absolute http(s) URL and make sure it ends with a slash."""
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"base_url must be an absolute http(s) URL, got {url!r}")
    return url if url.endswith("/") else url + "/"


def default_config_path() -> Path:
    """Config path from $DAVSYNC_CONFIG, else the per-user default."""
    env = os.getenv("DAVSYNC_CONFIG")
    return Path(env).expanduser() if env else DEFAULT_CONFIG_PATH.expanduser()


@dataclass(frozen=True)
class FileEntry:
    """A local file paired with its remote resource."""

    identifier: str
    local_path: Path  # Absolute
    remote_url: str  # Base URL + relative path

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_url: str, base_dir: Path) -> "FileEntry":
        """Create from a config `files:` item.

        Args:
            data: Mapping with `id`, `path` and optional `remote`
            base_url: Normalized base URL (trailing slash)
            base_dir: Directory relative local paths are resolved against

        Returns:
            Resolved FileEntry
        """
        identifier = str(data.get("id", ""))
        if not IDENTIFIER_RE.match(identifier):
            raise ConfigError(f"Invalid file identifier {identifier!r}: use letters, digits and '_'")

        raw_path = data.get("path")
        if not raw_path:
            raise ConfigError(f"File '{identifier}' has no path")
        local_path = Path(str(raw_path)).expanduser()
        if not local_path.is_absolute():
            local_path = base_dir / local_path
        local_path = local_path.resolve()

        remote = str(data.get("remote") or local_path.name).lstrip("/")
        remote_url = urljoin(base_url, quote(remote))

        return cls(identifier=identifier, local_path=local_path, remote_url=remote_url)


@dataclass
class SyncSettings:
    """Sync operation settings."""

    backup_min_count: int = 10
    backup_max_age_days: int = 30
    lock_timeout: int = 300  # Seconds, sent as the LOCK Timeout hint
    transfer_retries: int = 3
    lock_retries: int = 2
    lock_retry_delay: float = 1.0
    username: str = ""
    keyring_service: str = "davsync"
    verify_tls: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncSettings":
        """Create from dictionary, checking numeric bounds."""
        settings = cls(
            backup_min_count=int(data.get("backup_min_count", 10)),
            backup_max_age_days=int(data.get("backup_max_age_days", 30)),
            lock_timeout=int(data.get("lock_timeout", 300)),
            transfer_retries=int(data.get("transfer_retries", 3)),
            lock_retries=int(data.get("lock_retries", 2)),
            lock_retry_delay=float(data.get("lock_retry_delay", 1.0)),
            username=str(data.get("username") or ""),
            keyring_service=str(data.get("keyring_service") or "davsync"),
            verify_tls=bool(data.get("verify_tls", True)),
        )
        if settings.backup_min_count < 1:
            raise ConfigError("backup_min_count must be at least 1")
        for name in ("backup_max_age_days", "lock_timeout", "transfer_retries", "lock_retries"):
            if getattr(settings, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if settings.lock_retry_delay < 0:
            raise ConfigError("lock_retry_delay must not be negative")
        return settings


@dataclass
class SyncConfig:
    """Main configuration: remote base URL, tracked files and storage dirs."""

    base_url: str
    state_dir: Path
    backup_dir: Path
    files: list[FileEntry] = field(default_factory=list)
    settings: SyncSettings = field(default_factory=SyncSettings)

    @classmethod
    def load(cls, config_path: Path) -> "SyncConfig":
        """Load configuration from YAML file."""
        config_path = Path(config_path).expanduser()
        if not config_path.exists():
            raise ConfigError(f"Config not found: {config_path}")

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")

        return cls.from_dict(data, base_dir=config_path.resolve().parent)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path) -> "SyncConfig":
        """Create from an already-parsed mapping."""
        base_url = normalize_base_url(str(data.get("base_url", "")))

        state_dir = _resolve_dir(data.get("state_dir"), base_dir) or base_dir / ".davsync" / "state"
        backup_dir = _resolve_dir(data.get("backup_dir"), base_dir) or state_dir / "backups"

        files: list[FileEntry] = []
        seen: set[str] = set()
        for file_data in data.get("files") or []:
            entry = FileEntry.from_dict(file_data, base_url, base_dir)
            if entry.identifier in seen:
                raise ConfigError(f"Duplicate file identifier '{entry.identifier}'")
            seen.add(entry.identifier)
            files.append(entry)

        settings = SyncSettings.from_dict(data.get("settings") or {})

        return cls(
            base_url=base_url,
            state_dir=state_dir,
            backup_dir=backup_dir,
            files=files,
            settings=settings,
        )

    def get_file(self, identifier: str) -> FileEntry:
        """Look up a configured file by identifier."""
        for entry in self.files:
            if entry.identifier == identifier:
                return entry
        raise ConfigError(f"Unknown file identifier '{identifier}'")


def _resolve_dir(value: Any, base_dir: Path) -> Path | None:
    if not value:
        return None
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path.resolve()
