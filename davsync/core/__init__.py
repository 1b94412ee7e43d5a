"""Core sync functionality."""

from .auth import CredentialResolver, Credentials
from .backups import BackupEntry, BackupRotator
from .client import LockToken, RemoteInfo, WebDavClient
from .locks import LocalLock, LockCoordinator
from .operations import ConflictPolicy, Phase, SyncEngine, SyncResult
from .scheduler import Scheduler
from .state import Action, Decision, SyncState, SyncStateStore

__all__ = [
    "Action",
    "BackupEntry",
    "BackupRotator",
    "ConflictPolicy",
    "CredentialResolver",
    "Credentials",
    "Decision",
    "LocalLock",
    "LockCoordinator",
    "LockToken",
    "Phase",
    "RemoteInfo",
    "Scheduler",
    "SyncEngine",
    "SyncResult",
    "SyncState",
    "SyncStateStore",
    "WebDavClient",
]
