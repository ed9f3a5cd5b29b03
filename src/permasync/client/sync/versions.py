"""File version lineage.

This module provides:
- VersionManager: Detects content changes and records versions and operations

Every upload of a file creates a version. Versions of a path form a chain
(``parent_version``) with exactly one latest entry.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import TYPE_CHECKING, Any

from permasync.client.records import FileOperation, FileVersion
from permasync.client.sync.stability import calculate_hash
from permasync.core.types import ChangeType, FileOperationType

if TYPE_CHECKING:
    from permasync.client.state import SyncStateStore
    from permasync.client.sync.types import RemoteUploadResult

logger = logging.getLogger(__name__)

_OPERATION_FOR_CHANGE = {
    ChangeType.CREATE: FileOperationType.UPLOAD,
    ChangeType.UPDATE: FileOperationType.UPLOAD,
    ChangeType.RENAME: FileOperationType.RENAME,
    ChangeType.MOVE: FileOperationType.MOVE,
}


class VersionManager:
    """Version history of the files of one drive mapping."""

    def __init__(
        self,
        store: SyncStateStore,
        sync_folder: str,
        mapping_id: str | None = None,
    ) -> None:
        self.store = store
        self.sync_folder = os.path.abspath(sync_folder)
        self.mapping_id = mapping_id

    def get_relative_path(self, file_path: str) -> str:
        """Path relative to the sync folder, with forward slashes."""
        relative = os.path.relpath(os.path.abspath(file_path), self.sync_folder)
        return relative.replace("\\", "/")

    def get_latest_version(self, file_path: str) -> FileVersion | None:
        return self.store.get_latest_version(file_path, self.mapping_id)

    def detect_file_change(self, file_path: str, file_hash: str | None = None) -> ChangeType:
        """Compare a file with its latest recorded version.

        A path without history whose content matches the latest version of
        a path that no longer exists is a rename (same folder) or a move.

        Args:
            file_path: Absolute path of the file.
            file_hash: Known content hash, computed if omitted.
        """
        current = file_hash or calculate_hash(file_path)
        last = self.get_latest_version(file_path)

        if last is None:
            for candidate in self.store.find_latest_versions_by_hash(current, self.mapping_id):
                if candidate.file_path == file_path or os.path.exists(candidate.file_path):
                    continue
                if os.path.dirname(candidate.file_path) == os.path.dirname(file_path):
                    logger.debug("Rename detected: %s -> %s", candidate.file_path, file_path)
                    return ChangeType.RENAME
                logger.debug("Move detected: %s -> %s", candidate.file_path, file_path)
                return ChangeType.MOVE
            logger.debug("New file detected: %s", file_path)
            return ChangeType.CREATE

        if last.file_hash != current:
            logger.debug("File content changed: %s", file_path)
            return ChangeType.UPDATE
        return ChangeType.UNCHANGED

    def create_new_version(
        self,
        file_path: str,
        change_type: ChangeType,
        upload: RemoteUploadResult | None = None,
        file_hash: str | None = None,
    ) -> FileVersion:
        """Record a new latest version of a file and the matching operation.

        Raises:
            ValueError: If change_type is UNCHANGED.
            OSError: If the file cannot be read.
        """
        if change_type is ChangeType.UNCHANGED:
            raise ValueError("An unchanged file does not get a new version")

        file_hash = file_hash or calculate_hash(file_path)
        file_size = os.path.getsize(file_path)
        last = self.get_latest_version(file_path)

        version = FileVersion(
            id=str(uuid.uuid4()),
            mapping_id=self.mapping_id,
            file_hash=file_hash,
            file_name=os.path.basename(file_path),
            file_path=file_path,
            relative_path=self.get_relative_path(file_path),
            file_size=file_size,
            data_tx_id=upload.data_tx_id if upload else None,
            metadata_tx_id=upload.metadata_tx_id if upload else None,
            version=last.version + 1 if last else 1,
            parent_version=last.id if last else None,
            change_type=change_type,
            upload_method=upload.upload_method if upload else None,
        )
        self.store.add_file_version(version)

        self.record_file_operation(
            file_hash,
            _OPERATION_FOR_CHANGE[change_type],
            to_path=file_path,
            metadata={
                "version_id": version.id,
                "upload_method": version.upload_method,
                "file_size": file_size,
            },
        )
        logger.info(
            "Created version %d for %s (%s)", version.version, file_path, change_type.value
        )
        return version

    def record_file_operation(
        self,
        file_hash: str,
        operation: FileOperationType,
        from_path: str | None = None,
        to_path: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> FileOperation:
        entry = FileOperation(
            id=str(uuid.uuid4()),
            mapping_id=self.mapping_id,
            file_hash=file_hash,
            operation=operation,
            from_path=from_path,
            to_path=to_path,
            metadata=metadata,
        )
        self.store.add_file_operation(entry)
        logger.debug("Recorded %s of %s", operation.value, file_hash[:16])
        return entry

    def get_file_version_history(self, file_path: str) -> list[FileVersion]:
        """Versions of a file, newest first."""
        return self.store.list_file_versions(file_path, self.mapping_id)

    def get_file_operation_history(self, file_hash: str) -> list[FileOperation]:
        return self.store.list_file_operations(file_hash)
