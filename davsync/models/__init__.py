"""Data models for sync system."""

from .config import (
    FileEntry,
    SyncConfig,
    SyncSettings,
    default_config_path,
    normalize_base_url,
)

__all__ = [
    "FileEntry",
    "SyncConfig",
    "SyncSettings",
    "default_config_path",
    "normalize_base_url",
]
