"""Row types for the sync state database.

This module provides one dataclass per persisted entity:
- DriveMapping / SyncSettings: a remote drive paired with a local folder
- FileMetadataRecord: cached metadata of a remote file or folder
- UploadRecord / DownloadRecord: transfer history
- FolderStructureEntry: known local folders and their remote ids
- FileVersion / FileOperation: version lineage and operation history
- FolderOperationRecord: classified folder renames, moves and deletes
- ProcessedFile: content already uploaded or downloaded for a drive
"""

from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any

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


def _load_json(value: str | None) -> Any:
    return json.loads(value) if value else None


@dataclass
class SyncSettings:
    """Per-drive sync settings, supplied by the user and read-only here."""

    exclude_patterns: list[str] = field(default_factory=list)
    max_file_size: int | None = None
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    upload_priority: int = 0


@dataclass
class DriveMapping:
    """A remote drive synchronized with a local folder.

    Attributes:
        id: Local identifier of the mapping.
        remote_drive_id: Identifier of the drive on the storage network.
        drive_name: Display name.
        privacy: Public or private drive.
        local_folder_path: Absolute path of the synchronized folder.
        root_folder_id: Remote id of the drive root folder.
        is_active: Inactive mappings are kept but not synchronized.
        last_sync_time: Last completed sync pass.
        last_metadata_sync_at: Last remote metadata refresh.
        sync_settings: Exclusions, size limit and direction.
    """

    id: str
    remote_drive_id: str
    drive_name: str
    privacy: DrivePrivacy
    local_folder_path: str
    root_folder_id: str | None = None
    is_active: bool = True
    last_sync_time: float | None = None
    last_metadata_sync_at: float | None = None
    sync_settings: SyncSettings = field(default_factory=SyncSettings)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DriveMapping:
        """Create DriveMapping from database row."""
        return cls(
            id=row["id"],
            remote_drive_id=row["remote_drive_id"],
            drive_name=row["drive_name"],
            privacy=DrivePrivacy(row["privacy"]),
            local_folder_path=row["local_folder_path"],
            root_folder_id=row["root_folder_id"],
            is_active=bool(row["is_active"]),
            last_sync_time=row["last_sync_time"],
            last_metadata_sync_at=row["last_metadata_sync_at"],
            sync_settings=SyncSettings(
                exclude_patterns=_load_json(row["exclude_patterns"]) or [],
                max_file_size=row["max_file_size"],
                sync_direction=SyncDirection(row["sync_direction"] or "bidirectional"),
                upload_priority=row["upload_priority"] or 0,
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class FileMetadataRecord:
    """Cached metadata of a remote drive entry.

    sync_status, sync_preference and download_priority are sticky: a
    re-scan upsert carrying their defaults keeps the stored values.
    last_error follows sync_status: it is kept only with a kept status.
    """

    file_id: str
    mapping_id: str
    name: str
    path: str
    type: EntryType = EntryType.FILE
    parent_folder_id: str | None = None
    size: int | None = None
    last_modified_date: float | None = None
    remote_data_tx_id: str | None = None
    remote_metadata_tx_id: str | None = None
    content_type: str | None = None
    content_hash: str | None = None
    local_path: str | None = None
    local_file_exists: bool = False
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_preference: SyncPreference = SyncPreference.AUTO
    download_priority: int = 0
    last_error: str | None = None
    last_synced_at: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FileMetadataRecord:
        """Create FileMetadataRecord from database row."""
        return cls(
            file_id=row["file_id"],
            mapping_id=row["mapping_id"],
            name=row["name"],
            path=row["path"],
            type=EntryType(row["type"]),
            parent_folder_id=row["parent_folder_id"],
            size=row["size"],
            last_modified_date=row["last_modified_date"],
            remote_data_tx_id=row["data_tx_id"],
            remote_metadata_tx_id=row["metadata_tx_id"],
            content_type=row["content_type"],
            content_hash=row["file_hash"],
            local_path=row["local_path"],
            local_file_exists=bool(row["local_file_exists"]),
            sync_status=SyncStatus(row["sync_status"]),
            sync_preference=SyncPreference(row["sync_preference"] or "auto"),
            download_priority=row["download_priority"] or 0,
            last_error=row["last_error"],
            last_synced_at=row["last_synced_at"],
        )


@dataclass
class UploadRecord:
    """Persisted history of one upload."""

    id: str
    local_path: str
    file_name: str
    file_size: int
    mapping_id: str | None = None
    status: TransferStatus = TransferStatus.PENDING
    progress: float = 0.0
    upload_method: str | None = None
    data_tx_id: str | None = None
    metadata_tx_id: str | None = None
    file_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> UploadRecord:
        """Create UploadRecord from database row."""
        return cls(
            id=row["id"],
            mapping_id=row["mapping_id"],
            local_path=row["local_path"],
            file_name=row["file_name"],
            file_size=row["file_size"],
            status=TransferStatus(row["status"]),
            progress=row["progress"] or 0.0,
            upload_method=row["upload_method"],
            data_tx_id=row["data_tx_id"],
            metadata_tx_id=row["metadata_tx_id"],
            file_id=row["file_id"],
            error=row["error"],
            error_code=row["error_code"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class DownloadRecord:
    """Persisted history of one download."""

    id: str
    file_id: str
    file_name: str
    local_path: str
    file_size: int
    mapping_id: str | None = None
    data_tx_id: str | None = None
    metadata_tx_id: str | None = None
    status: TransferStatus = TransferStatus.PENDING
    progress: float = 0.0
    priority: int = 0
    is_cancelled: bool = False
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DownloadRecord:
        """Create DownloadRecord from database row."""
        return cls(
            id=row["id"],
            mapping_id=row["mapping_id"],
            file_id=row["file_id"],
            file_name=row["file_name"],
            local_path=row["local_path"],
            file_size=row["file_size"],
            data_tx_id=row["data_tx_id"],
            metadata_tx_id=row["metadata_tx_id"],
            status=TransferStatus(row["status"]),
            progress=row["progress"] or 0.0,
            priority=row["priority"] or 0,
            is_cancelled=bool(row["is_cancelled"]),
            error=row["error"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class FolderStructureEntry:
    """A local folder known to the engine."""

    id: str
    mapping_id: str
    folder_path: str
    relative_path: str
    parent_path: str | None = None
    remote_folder_id: str | None = None
    is_deleted: bool = False
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FolderStructureEntry:
        """Create FolderStructureEntry from database row."""
        return cls(
            id=row["id"],
            mapping_id=row["mapping_id"],
            folder_path=row["folder_path"],
            relative_path=row["relative_path"],
            parent_path=row["parent_path"],
            remote_folder_id=row["remote_folder_id"],
            is_deleted=bool(row["is_deleted"]),
            created_at=row["created_at"],
        )


@dataclass
class FileVersion:
    """One version in the lineage of a local file."""

    id: str
    file_hash: str
    file_name: str
    file_path: str
    relative_path: str
    file_size: int
    version: int
    change_type: ChangeType
    mapping_id: str | None = None
    data_tx_id: str | None = None
    metadata_tx_id: str | None = None
    parent_version: str | None = None
    upload_method: str | None = None
    is_latest: bool = True
    created_at: float = field(default_factory=time.time)

    @property
    def remote_ids(self) -> list[str]:
        """Remote transaction ids of this version."""
        return [tx for tx in (self.data_tx_id, self.metadata_tx_id) if tx]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FileVersion:
        """Create FileVersion from database row."""
        return cls(
            id=row["id"],
            mapping_id=row["mapping_id"],
            file_hash=row["file_hash"],
            file_name=row["file_name"],
            file_path=row["file_path"],
            relative_path=row["relative_path"],
            file_size=row["file_size"],
            data_tx_id=row["data_tx_id"],
            metadata_tx_id=row["metadata_tx_id"],
            version=row["version"],
            parent_version=row["parent_version"],
            change_type=ChangeType(row["change_type"]),
            upload_method=row["upload_method"],
            is_latest=bool(row["is_latest"]),
            created_at=row["created_at"],
        )


@dataclass
class FileOperation:
    """An entry of the file operation history."""

    id: str
    file_hash: str
    operation: FileOperationType
    mapping_id: str | None = None
    from_path: str | None = None
    to_path: str | None = None
    metadata: dict[str, Any] | None = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FileOperation:
        """Create FileOperation from database row."""
        return cls(
            id=row["id"],
            mapping_id=row["mapping_id"],
            file_hash=row["file_hash"],
            operation=FileOperationType(row["operation"]),
            from_path=row["from_path"],
            to_path=row["to_path"],
            metadata=_load_json(row["metadata"]),
            timestamp=row["timestamp"],
        )


@dataclass
class FolderOperationRecord:
    """A classified folder operation."""

    id: str
    mapping_id: str
    operation_type: FolderOperationType
    old_path: str | None = None
    new_path: str | None = None
    remote_folder_id: str | None = None
    reason: str = ""
    detected_at: float = field(default_factory=time.time)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FolderOperationRecord:
        """Create FolderOperationRecord from database row."""
        return cls(
            id=row["id"],
            mapping_id=row["mapping_id"],
            operation_type=FolderOperationType(row["operation_type"]),
            old_path=row["old_path"],
            new_path=row["new_path"],
            remote_folder_id=row["remote_folder_id"],
            reason=row["reason"] or "",
            detected_at=row["detected_at"],
        )


@dataclass
class ProcessedFile:
    """Content already transferred for a drive, keyed by hash."""

    file_hash: str
    mapping_id: str
    file_name: str
    file_size: int
    local_path: str
    source: str
    remote_id: str | None = None
    processed_at: float = field(default_factory=time.time)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ProcessedFile:
        """Create ProcessedFile from database row."""
        return cls(
            file_hash=row["file_hash"],
            mapping_id=row["mapping_id"],
            file_name=row["file_name"],
            file_size=row["file_size"],
            local_path=row["local_path"],
            source=row["source"],
            remote_id=row["remote_id"],
            processed_at=row["processed_at"],
        )
