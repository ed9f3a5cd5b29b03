"""Core module - Shared configuration and types."""

from permasync.core.config import (
    DEFAULT_RETRYABLE_ERRORS,
    DetectorConfig,
    QueueConfig,
    RetryConfig,
    StabilityConfig,
    SyncConfig,
)
from permasync.core.types import (
    ChangeType,
    DrivePrivacy,
    EntryType,
    FileOperationType,
    FolderOperationType,
    SyncDirection,
    SyncPreference,
    SyncStatus,
    TransferStatus,
)

__all__ = [
    # Config
    "DEFAULT_RETRYABLE_ERRORS",
    "DetectorConfig",
    "QueueConfig",
    "RetryConfig",
    "StabilityConfig",
    "SyncConfig",
    # Types
    "ChangeType",
    "DrivePrivacy",
    "EntryType",
    "FileOperationType",
    "FolderOperationType",
    "SyncDirection",
    "SyncPreference",
    "SyncStatus",
    "TransferStatus",
]
