"""Shared types and dataclasses for sync operations.

This module provides:
- SyncErrorCode, SyncError, SyncCancelledError: Error taxonomy
- UploadItem, DownloadItem: In-memory queue entries
- FolderSnapshot, OperationDetection: Folder operation detection
- RemoteUploadResult: Identifiers returned by the remote storage
- SyncEventHandler, RemoteStorage: Collaborator protocols
- Type aliases for callbacks
"""

from __future__ import annotations

import os
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from permasync.core.types import EntryType, FolderOperationType, TransferStatus


class SyncErrorCode(str, Enum):
    """Classification of sync failures."""

    # Network errors
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    NETWORK_OFFLINE = "NETWORK_OFFLINE"
    GATEWAY_ERROR = "GATEWAY_ERROR"

    # File system errors
    INSUFFICIENT_SPACE = "INSUFFICIENT_SPACE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"

    # Data errors
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"
    SIZE_MISMATCH = "SIZE_MISMATCH"
    INVALID_METADATA = "INVALID_METADATA"

    # Sync errors
    SYNC_CANCELLED = "SYNC_CANCELLED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class SyncError(Exception):
    """A classified sync failure.

    Attributes:
        message: Diagnostic message.
        code: Classification of the failure.
        retryable: Whether the operation may succeed if attempted again.
        user_message: Message suitable for display to the user.
        details: Extra diagnostic data (e.g. the original exception).
    """

    def __init__(
        self,
        message: str,
        code: SyncErrorCode,
        retryable: bool,
        user_message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.user_message = user_message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"SyncError({self.code.value}, {self.message!r}, retryable={self.retryable})"


class SyncCancelledError(Exception):
    """An operation was cancelled by the user or by shutdown."""


# Progress callback receives a percentage in [0, 100]
ProgressCallback = Callable[[float], None]


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class UploadItem:
    """An entry of the upload queue.

    Folder entries have a zero size and a file name equal to the last
    component of their local path; they are created on the remote before
    any file.

    Attributes:
        local_path: Absolute path of the file or folder.
        file_name: Name to create on the remote.
        file_size: Size in bytes (0 for folders).
        mapping_id: Drive mapping the item belongs to.
        kind: Whether the item creates a folder or uploads a file.
        status: Queue status.
        progress: Upload progress percentage.
        attempts: Number of times the item was handed to the handler.
        next_attempt_at: Earliest time of the next attempt (retry backoff).
    """

    local_path: str
    file_name: str
    file_size: int
    mapping_id: str | None = None
    kind: EntryType = EntryType.FILE
    id: str = field(default_factory=_new_id)
    status: TransferStatus = TransferStatus.PENDING
    progress: float = 0.0
    error: str | None = None
    error_code: str | None = None
    attempts: int = 0
    next_attempt_at: float = 0.0
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    upload_method: str | None = None
    data_tx_id: str | None = None
    metadata_tx_id: str | None = None
    file_id: str | None = None

    @property
    def is_folder(self) -> bool:
        """Check if the item sorts as a folder."""
        return self.file_size == 0 and os.path.basename(self.local_path) == self.file_name

    @classmethod
    def for_folder(cls, local_path: str, mapping_id: str | None = None) -> UploadItem:
        return cls(
            local_path=local_path,
            file_name=os.path.basename(local_path),
            file_size=0,
            mapping_id=mapping_id,
            kind=EntryType.FOLDER,
        )


@dataclass
class DownloadItem:
    """An entry of the download queue."""

    file_id: str
    file_name: str
    local_path: str
    file_size: int
    data_tx_id: str
    mapping_id: str | None = None
    metadata_tx_id: str | None = None
    priority: int = 0
    id: str = field(default_factory=_new_id)
    status: TransferStatus = TransferStatus.PENDING
    progress: float = 0.0
    error: str | None = None
    attempts: int = 0
    next_attempt_at: float = 0.0
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class FolderSnapshot:
    """Identity and shallow content summary of a folder.

    Attributes:
        path: Absolute folder path.
        name: Last path component.
        parent_path: Containing folder.
        timestamp: When the snapshot was taken.
        file_count: Number of immediate non-hidden files.
        immediate_children: Sorted names of non-hidden immediate entries.
        total_size: Summed size of immediate non-hidden files.
        content_hash: SHA-256 over the sorted ``name:size`` / ``dir:name`` parts.
        remote_folder_id: Remote id of the folder, when known.
    """

    path: str
    name: str
    parent_path: str
    timestamp: float
    file_count: int = 0
    immediate_children: tuple[str, ...] = ()
    total_size: int = 0
    content_hash: str = ""
    remote_folder_id: str | None = None


@dataclass
class OperationDetection:
    """Classification of a folder add or delete."""

    type: FolderOperationType
    old_path: str | None = None
    new_path: str | None = None
    remote_folder_id: str | None = None
    reason: str = ""
    similarity: float | None = None


@dataclass
class RemoteUploadResult:
    """Identifiers of an uploaded file on the remote storage."""

    file_id: str
    data_tx_id: str | None = None
    metadata_tx_id: str | None = None
    upload_method: str | None = None


class SyncEventHandler(Protocol):
    """Receiver of local filesystem events (absolute paths)."""

    def on_file_added(self, path: str) -> None: ...

    def on_file_changed(self, path: str) -> None: ...

    def on_file_removed(self, path: str) -> None: ...

    def on_folder_added(self, path: str) -> None: ...

    def on_folder_removed(self, path: str) -> None: ...


class RemoteStorage(Protocol):
    """Client of the remote storage network."""

    def upload_file(
        self,
        local_path: str,
        parent_remote_folder_id: str | None,
        on_progress: ProgressCallback | None = None,
    ) -> RemoteUploadResult: ...

    def create_folder(self, name: str, parent_remote_folder_id: str | None) -> str: ...

    def download_file(
        self,
        remote_data_tx_id: str,
        dest_path: str,
        on_progress: ProgressCallback | None = None,
    ) -> None: ...
