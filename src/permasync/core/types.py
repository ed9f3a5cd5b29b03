"""Shared types for permasync.

This module defines the string enums stored in the state database and
exchanged between the sync engine and its query surface.
"""

from __future__ import annotations

from enum import Enum


class SyncStatus(str, Enum):
    """Sync status of an entry in the drive metadata cache."""

    SYNCED = "synced"
    DOWNLOADING = "downloading"
    QUEUED = "queued"
    CLOUD_ONLY = "cloud_only"
    PENDING = "pending"
    ERROR = "error"


class SyncPreference(str, Enum):
    """User preference for keeping a remote file on disk."""

    AUTO = "auto"
    ALWAYS_LOCAL = "always_local"
    CLOUD_ONLY = "cloud_only"


class TransferStatus(str, Enum):
    """Status of an upload or download."""

    PENDING = "pending"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is expected."""
        return self in (
            TransferStatus.COMPLETED,
            TransferStatus.FAILED,
            TransferStatus.CANCELLED,
        )


class EntryType(str, Enum):
    """Kind of drive entry."""

    FILE = "file"
    FOLDER = "folder"


class DrivePrivacy(str, Enum):
    """Privacy of a remote drive."""

    PUBLIC = "public"
    PRIVATE = "private"


class SyncDirection(str, Enum):
    """Direction(s) a drive mapping synchronizes in."""

    UPLOAD = "upload"
    DOWNLOAD = "download"
    BIDIRECTIONAL = "bidirectional"

    @property
    def uploads(self) -> bool:
        return self in (SyncDirection.UPLOAD, SyncDirection.BIDIRECTIONAL)

    @property
    def downloads(self) -> bool:
        return self in (SyncDirection.DOWNLOAD, SyncDirection.BIDIRECTIONAL)


class ChangeType(str, Enum):
    """Kind of change recorded in a file version."""

    CREATE = "create"
    UPDATE = "update"
    RENAME = "rename"
    MOVE = "move"
    UNCHANGED = "unchanged"


class FileOperationType(str, Enum):
    """Kind of operation recorded in the file operation history."""

    UPLOAD = "upload"
    DOWNLOAD = "download"
    RENAME = "rename"
    MOVE = "move"
    DELETE = "delete"


class FolderOperationType(str, Enum):
    """Classification of a folder add/delete event pair."""

    RENAME = "rename"
    MOVE = "move"
    RENAME_AND_MOVE = "rename_and_move"
    DELETE = "delete"
    NEW = "new"
