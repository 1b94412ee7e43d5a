"""Exception hierarchy for sync, locking and transfer failures."""


class DavSyncError(Exception):
    """Base class for all davsync errors."""


class ConfigError(DavSyncError):
    """Configuration file is missing or invalid."""


class AuthError(DavSyncError):
    """Credentials could not be obtained."""


class TransferError(DavSyncError):
    """A WebDAV request failed after its retries were exhausted."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LockContention(DavSyncError):
    """Another process holds the local lock for an identifier."""


class RemoteLockFailed(DavSyncError):
    """The server refused the LOCK or granted one without a usable token."""


class RemoteUnlockFailed(DavSyncError):
    """UNLOCK failed. Reported as a warning, never raised to callers."""


class ConflictUnresolved(DavSyncError):
    """Both sides changed and no overwrite policy was given."""


class StateError(DavSyncError):
    """The sync state file exists but cannot be read."""
