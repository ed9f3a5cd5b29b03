"""Sync engine coordinating drive synchronization.

This module provides:
- SyncEngine: Owns one DriveSync per active drive mapping
- DriveSync: Reacts to local changes of one mapping and runs its transfers
- RecentlyDownloaded: Paths written by downloads, not to be re-uploaded

Flow of a local file change:
    watcher -> DriveSync.on_file_added -> UploadQueueManager
    -> DriveSync._upload (stability hash, version check, remote upload)
    -> processed file, new version, file operation, metadata upsert

Folder adds and deletes go through the FolderOperationDetector so that a
rename or move keeps the remote folder ids instead of recreating the tree.
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from permasync.client.records import (
    DriveMapping,
    FileMetadataRecord,
    FolderOperationRecord,
    FolderStructureEntry,
    ProcessedFile,
    SyncSettings,
)
from permasync.client.sync.download_queue import (
    DownloadQueueManager,
    calculate_download_priority,
)
from permasync.client.sync.events import (
    DownloadProgressEvent,
    EventEmitter,
    FileStatusEvent,
    FolderOperationEvent,
    UploadProgressEvent,
)
from permasync.client.sync.folder_detector import FolderOperationDetector
from permasync.client.sync.ignore import DOWNLOAD_SUFFIX, SyncFilter
from permasync.client.sync.queue import UploadQueueManager
from permasync.client.sync.retry import ErrorClassifier, RetryPolicy
from permasync.client.sync.stability import FileStabilityVerifier, calculate_hash
from permasync.client.sync.types import (
    DownloadItem,
    OperationDetection,
    RemoteUploadResult,
    SyncCancelledError,
    UploadItem,
)
from permasync.client.sync.versions import VersionManager
from permasync.client.sync.watcher import FileWatcher
from permasync.core.config import SyncConfig
from permasync.core.types import (
    ChangeType,
    DrivePrivacy,
    EntryType,
    FileOperationType,
    FolderOperationType,
    SyncPreference,
    SyncStatus,
    TransferStatus,
)

if TYPE_CHECKING:
    from permasync.client.state import SyncStateStore
    from permasync.client.sync.types import FolderSnapshot, RemoteStorage

logger = logging.getLogger(__name__)

_MOVES = (
    FolderOperationType.RENAME,
    FolderOperationType.MOVE,
    FolderOperationType.RENAME_AND_MOVE,
)


def _under(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


class RecentlyDownloaded:
    """Paths written by a download within the last ``ttl`` seconds."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._paths: dict[str, float] = {}

    def add(self, path: str) -> None:
        with self._lock:
            self._paths[path] = self._clock() + self.ttl

    def discard(self, path: str) -> None:
        with self._lock:
            self._paths.pop(path, None)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            expires_at = self._paths.get(path)  # type: ignore[call-overload]
            if expires_at is None:
                return False
            if self._clock() >= expires_at:
                del self._paths[path]  # type: ignore[arg-type]
                return False
            return True


class DriveSync:
    """Synchronization of one drive mapping.

    Implements the SyncEventHandler protocol; the file watcher calls it
    with absolute paths below the mapping's local folder.
    """

    def __init__(
        self,
        mapping: DriveMapping,
        store: SyncStateStore,
        storage: RemoteStorage,
        config: SyncConfig | None = None,
        events: EventEmitter | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the drive sync.

        Args:
            mapping: The drive mapping to synchronize.
            store: State database.
            storage: Remote storage client.
            config: Engine configuration.
            events: Emitter receiving progress and status events.
            clock: Time source for retry scheduling.
            sleep: Sleep function of the stability check.
        """
        self.mapping = mapping
        self.store = store
        self.storage = storage
        self.config = config or SyncConfig()
        self.events = events or EventEmitter()
        self.root = os.path.abspath(mapping.local_folder_path)

        self.filter = SyncFilter(self.root, mapping.sync_settings)
        self.verifier = FileStabilityVerifier(self.config.stability, sleep=sleep)
        self.versions = VersionManager(store, self.root, mapping.id)
        self.recently_downloaded = RecentlyDownloaded(self.config.queue.recently_downloaded_ttl)
        self.detector = FolderOperationDetector(
            self.config.detector, on_operation=self._on_folder_operation
        )

        classifier = ErrorClassifier()
        self.uploads = UploadQueueManager(
            handler=self._upload,
            store=store,
            retry_policy=RetryPolicy(self.config.retry),
            classifier=classifier,
            config=self.config.queue,
            on_change=self._on_upload_change,
            clock=clock,
        )
        self.downloads = DownloadQueueManager(
            handler=self._download,
            store=store,
            retry_policy=RetryPolicy(self.config.retry),
            classifier=classifier,
            config=self.config.queue,
            on_change=self._on_download_change,
            clock=clock,
        )

        self._snapshots: dict[str, FolderSnapshot] = {}
        self._lock = threading.Lock()
        self._watcher: FileWatcher | None = None

    @property
    def mapping_id(self) -> str:
        return self.mapping.id

    @property
    def settings(self) -> SyncSettings:
        return self.mapping.sync_settings

    # === Lifecycle ===

    def start(self, watch: bool = True) -> None:
        """Start the queues, the detector sweep and (optionally) the watcher."""
        logger.info("Starting sync of %s at %s", self.mapping.drive_name, self.root)
        self.detector.start()
        self.uploads.start_processing()
        self.downloads.start_processing()
        if watch:
            self._watcher = FileWatcher(self.root, self, ignore_patterns=self.filter.ignore)
            self._watcher.start()

    def stop(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        self.uploads.stop_processing()
        self.downloads.stop_all()
        self.detector.close()
        self.verifier.close()
        logger.info("Stopped sync of %s", self.mapping.drive_name)

    # === Local events ===

    def on_file_added(self, path: str) -> None:
        self.queue_upload(path)

    def on_file_changed(self, path: str) -> None:
        self.queue_upload(path)

    def on_file_removed(self, path: str) -> None:
        """Drop queued uploads of a deleted file and mark it cloud_only."""
        self.uploads.remove_for_path(path)
        metadata = self.store.get_file_metadata_by_path(path)
        self.store.mark_local_missing(self.mapping_id, path)

        latest = self.versions.get_latest_version(path)
        if latest is not None:
            self.versions.record_file_operation(
                latest.file_hash, FileOperationType.DELETE, from_path=path
            )
        if metadata is not None:
            self.events.emit(FileStatusEvent(
                mapping_id=self.mapping_id,
                file_id=metadata.file_id,
                local_path=path,
                status=SyncStatus.CLOUD_ONLY,
            ))
        logger.info("Local file removed: %s", path)

    def on_folder_added(self, path: str) -> None:
        """Classify a folder add and apply it."""
        if self.filter.should_ignore(path):
            return
        try:
            detection = self.detector.on_folder_add(path)
        except OSError as e:
            logger.warning("Cannot read added folder %s: %s", path, e)
            return

        if detection.type in _MOVES and detection.old_path:
            self._apply_folder_move(detection.old_path, path)
        else:
            self.store.add_folder(self._folder_entry(path))
            self._remember_snapshot(path)
            if self.settings.sync_direction.uploads:
                self._queue_tree(path)

    def on_folder_removed(self, path: str) -> None:
        """Hold a folder delete until the detector confirms it."""
        folder = self.store.get_folder_by_path(self.mapping_id, path)
        with self._lock:
            snapshot = self._snapshots.pop(path, None)
        self.detector.on_folder_delete(
            path,
            remote_folder_id=folder.remote_folder_id if folder else None,
            on_confirm=lambda: self._confirm_folder_delete(path),
            snapshot=snapshot,
        )

    def _apply_folder_move(self, old_path: str, new_path: str) -> None:
        moved = self.store.move_folder(self.mapping_id, old_path, new_path)
        if not moved:
            # Folder was never recorded: track it like a new one
            self.store.add_folder(self._folder_entry(new_path))
        with self._lock:
            for key in [k for k in self._snapshots if _under(k, old_path)]:
                del self._snapshots[key]
        self._remember_snapshot(new_path)

        # Pending uploads below the old location follow the folder
        if self.uploads.remove_for_path(old_path) and self.settings.sync_direction.uploads:
            self._queue_tree(new_path)
        logger.info("Folder moved: %s -> %s", old_path, new_path)

    def _confirm_folder_delete(self, path: str) -> None:
        if os.path.isdir(path):
            logger.debug("Folder %s exists again, keeping it", path)
            return
        self.uploads.remove_for_path(path)
        folders = self.store.mark_folder_deleted(self.mapping_id, path)
        files = self.store.mark_local_missing(self.mapping_id, path)
        logger.info(
            "Folder deleted: %s (%d folders, %d files now cloud only)", path, folders, files
        )

    def _on_folder_operation(self, detection: OperationDetection) -> None:
        if detection.type is FolderOperationType.NEW:
            return
        self.store.record_folder_operation(FolderOperationRecord(
            id=str(uuid.uuid4()),
            mapping_id=self.mapping_id,
            operation_type=detection.type,
            old_path=detection.old_path,
            new_path=detection.new_path,
            remote_folder_id=detection.remote_folder_id,
            reason=detection.reason,
        ))
        self.events.emit(FolderOperationEvent(
            mapping_id=self.mapping_id,
            operation=detection.type,
            old_path=detection.old_path,
            new_path=detection.new_path,
            reason=detection.reason,
        ))

    # === Upload side ===

    def queue_upload(self, path: str) -> UploadItem | None:
        """Queue a local file for upload if the drive settings allow it."""
        if path in self.recently_downloaded:
            logger.debug("Skipping %s: written by a download", path)
            return None
        if not os.path.isfile(path) or not self.filter.should_upload(path):
            return None

        item = self.uploads.add_to_queue(UploadItem(
            local_path=path,
            file_name=os.path.basename(path),
            file_size=os.path.getsize(path),
            mapping_id=self.mapping_id,
        ))
        parent = os.path.dirname(path)
        if parent != self.root:
            self._remember_snapshot(parent)
        return item

    def _queue_tree(self, top: str) -> int:
        """Queue a folder, its subfolders and its files; return the item count."""
        count = 0
        for dirpath, dirnames, filenames in os.walk(top):
            dirnames[:] = [
                d for d in sorted(dirnames)
                if not self.filter.should_ignore(os.path.join(dirpath, d))
            ]
            folder = self.store.get_folder_by_path(self.mapping_id, dirpath)
            if folder is None:
                self.store.add_folder(self._folder_entry(dirpath))
            if folder is None or not folder.remote_folder_id:
                self.uploads.add_to_queue(UploadItem.for_folder(dirpath, self.mapping_id))
                count += 1
            self._remember_snapshot(dirpath)
            for name in sorted(filenames):
                if self.queue_upload(os.path.join(dirpath, name)) is not None:
                    count += 1
        return count

    def _upload(self, item: UploadItem) -> RemoteUploadResult | None:
        if item.kind is EntryType.FOLDER:
            if not os.path.isdir(item.local_path):
                raise FileNotFoundError(f"Folder no longer exists: {item.local_path}")
            return RemoteUploadResult(file_id=self._ensure_remote_folder(item.local_path))
        return self._upload_file(item)

    def _upload_file(self, item: UploadItem) -> RemoteUploadResult | None:
        path = item.local_path
        file_hash = self.verifier.wait_for_stable_hash(path)

        change = self.versions.detect_file_change(path, file_hash)
        if change is ChangeType.UNCHANGED:
            logger.info("Skipping %s: content unchanged since last upload", path)
            return None
        processed = self.store.get_processed_file(self.mapping_id, file_hash)
        if processed is not None and processed.source == "download" and processed.local_path == path:
            logger.info("Skipping %s: content was downloaded from the drive", path)
            return None

        parent_id = self._ensure_remote_folder(os.path.dirname(path))
        result = self.storage.upload_file(
            path,
            parent_id,
            on_progress=lambda pct: self.uploads.update_progress(item.id, pct),
        )

        size = os.path.getsize(path)
        self.store.add_processed_file(ProcessedFile(
            file_hash=file_hash,
            mapping_id=self.mapping_id,
            file_name=item.file_name,
            file_size=size,
            local_path=path,
            source="upload",
            remote_id=result.file_id,
        ))
        self.versions.create_new_version(path, change, upload=result, file_hash=file_hash)
        self.store.upsert_file_metadata(FileMetadataRecord(
            file_id=result.file_id,
            mapping_id=self.mapping_id,
            name=item.file_name,
            path=self.versions.get_relative_path(path),
            type=EntryType.FILE,
            parent_folder_id=parent_id,
            size=size,
            last_modified_date=os.path.getmtime(path),
            remote_data_tx_id=result.data_tx_id,
            remote_metadata_tx_id=result.metadata_tx_id,
            content_hash=file_hash,
            local_path=path,
            local_file_exists=True,
            sync_status=SyncStatus.SYNCED,
            last_synced_at=time.time(),
        ))
        self.events.emit(FileStatusEvent(
            mapping_id=self.mapping_id,
            file_id=result.file_id,
            local_path=path,
            status=SyncStatus.SYNCED,
        ))
        return result

    def _ensure_remote_folder(self, path: str) -> str | None:
        """Remote id of a local folder, creating it and its parents if needed."""
        if path == self.root:
            return self.mapping.root_folder_id
        if not _under(path, self.root):
            raise ValueError(f"{path} is outside of {self.root}")

        folder = self.store.get_folder_by_path(self.mapping_id, path)
        if folder is not None and folder.remote_folder_id:
            return folder.remote_folder_id

        parent_id = self._ensure_remote_folder(os.path.dirname(path))
        folder_id = self.storage.create_folder(os.path.basename(path), parent_id)
        if folder is None:
            self.store.add_folder(self._folder_entry(path, folder_id))
        else:
            self.store.update_folder_remote_id(self.mapping_id, path, folder_id)
        logger.info("Created remote folder %s (%s)", path, folder_id)
        return folder_id

    # === Download side ===

    def queue_download(self, file_id: str, priority: int | None = None) -> bool:
        """Queue a remote file for download to its mapped local path.

        Returns:
            False if the file is unknown, excluded or already queued.
        """
        metadata = self.store.get_file_metadata(file_id)
        if metadata is None:
            logger.warning("Cannot download unknown file %s", file_id)
            return False
        if metadata.type is EntryType.FOLDER or not metadata.remote_data_tx_id:
            logger.debug("Nothing to download for %s", metadata.path)
            return False
        relative = metadata.path.lstrip("/")
        if not self.filter.should_download(relative, metadata.size):
            logger.debug("Download of %s excluded by drive settings", relative)
            return False

        if priority is None:
            priority = metadata.download_priority or calculate_download_priority(metadata.size)
        return self.downloads.queue_download(DownloadItem(
            file_id=file_id,
            file_name=metadata.name,
            local_path=metadata.local_path or self._local_path(relative),
            file_size=metadata.size or 0,
            data_tx_id=metadata.remote_data_tx_id,
            mapping_id=self.mapping_id,
            metadata_tx_id=metadata.remote_metadata_tx_id,
            priority=priority,
        ))

    def cancel_download(self, file_id: str) -> bool:
        return self.downloads.cancel_download(file_id)

    def _download(self, item: DownloadItem) -> None:
        dest = item.local_path
        tmp_path = dest + DOWNLOAD_SUFFIX
        try:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
        except OSError as e:
            self.downloads.classifier.handle_filesystem_error(e, dest)

        self.recently_downloaded.add(dest)
        try:
            self.storage.download_file(
                item.data_tx_id,
                tmp_path,
                on_progress=lambda pct: self.downloads.update_progress(item.file_id, pct),
            )
            if item.status == TransferStatus.CANCELLED:
                raise SyncCancelledError(f"Download of {item.file_name} cancelled")
            os.replace(tmp_path, dest)
        except Exception:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

        file_hash = calculate_hash(dest)
        self.recently_downloaded.add(dest)
        self.store.add_processed_file(ProcessedFile(
            file_hash=file_hash,
            mapping_id=self.mapping_id,
            file_name=item.file_name,
            file_size=os.path.getsize(dest),
            local_path=dest,
            source="download",
            remote_id=item.file_id,
        ))
        self.versions.record_file_operation(
            file_hash, FileOperationType.DOWNLOAD, to_path=dest,
            metadata={"file_id": item.file_id},
        )

    # === Remote metadata ===

    def apply_remote_listing(self, entries: Iterable[FileMetadataRecord]) -> int:
        """Store a remote drive listing in the metadata cache.

        Remote folders are recorded in the folder structure with their
        remote ids so they are never created twice.

        Returns:
            Number of entries stored.
        """
        records = list(entries)
        for record in records:
            record.mapping_id = self.mapping_id
        count = self.store.store_drive_metadata(records)

        for record in records:
            if record.type is EntryType.FOLDER:
                path = self._local_path(record.path.lstrip("/"))
                self.store.add_folder(self._folder_entry(path, record.file_id))
        self.store.update_drive_mapping(self.mapping_id, last_metadata_sync_at=time.time())
        logger.info("Stored %d remote entries for %s", count, self.mapping.drive_name)
        return count

    def reconcile(self) -> dict[str, int]:
        """Queue transfers for differences between the cache and the disk.

        Pending remote files missing locally are downloaded unless marked
        cloud_only; local folders and files never uploaded are queued.

        Returns:
            Counts of queued downloads and uploads.
        """
        downloads = 0
        if self.settings.sync_direction.downloads:
            for metadata in self.store.iter_files_by_status(self.mapping_id, SyncStatus.PENDING):
                if metadata.sync_preference is SyncPreference.CLOUD_ONLY:
                    continue
                local_path = metadata.local_path or self._local_path(metadata.path.lstrip("/"))
                if metadata.type is EntryType.FOLDER:
                    os.makedirs(local_path, exist_ok=True)
                    continue
                if os.path.exists(local_path):
                    continue
                if self.queue_download(metadata.file_id):
                    downloads += 1

        uploads = 0
        if self.settings.sync_direction.uploads:
            for dirpath, dirnames, filenames in os.walk(self.root):
                dirnames[:] = [
                    d for d in sorted(dirnames)
                    if not self.filter.should_ignore(os.path.join(dirpath, d))
                ]
                if dirpath != self.root:
                    folder = self.store.get_folder_by_path(self.mapping_id, dirpath)
                    if folder is None or not folder.remote_folder_id:
                        if folder is None:
                            self.store.add_folder(self._folder_entry(dirpath))
                        self.uploads.add_to_queue(UploadItem.for_folder(dirpath, self.mapping_id))
                        uploads += 1
                    self._remember_snapshot(dirpath)
                for name in sorted(filenames):
                    path = os.path.join(dirpath, name)
                    if self.versions.get_latest_version(path) is not None:
                        continue
                    if self.store.get_file_metadata_by_path(path) is not None:
                        continue
                    if self.queue_upload(path) is not None:
                        uploads += 1

        self.store.update_drive_mapping(self.mapping_id, last_sync_time=time.time())
        logger.info(
            "Reconciled %s: %d downloads, %d uploads queued",
            self.mapping.drive_name, downloads, uploads,
        )
        return {"downloads": downloads, "uploads": uploads}

    # === Helpers ===

    def _local_path(self, relative: str) -> str:
        return os.path.join(self.root, *PurePosixPath(relative).parts)

    def _folder_entry(self, path: str, remote_folder_id: str | None = None) -> FolderStructureEntry:
        return FolderStructureEntry(
            id=str(uuid.uuid4()),
            mapping_id=self.mapping_id,
            folder_path=path,
            relative_path=self.versions.get_relative_path(path),
            parent_path=os.path.dirname(path),
            remote_folder_id=remote_folder_id,
        )

    def _remember_snapshot(self, path: str) -> None:
        try:
            snapshot = self.detector.create_snapshot(path)
        except OSError:
            return
        with self._lock:
            self._snapshots[path] = snapshot

    def _on_upload_change(self, item: UploadItem) -> None:
        self.events.emit(UploadProgressEvent(
            upload_id=item.id,
            mapping_id=item.mapping_id,
            local_path=item.local_path,
            file_name=item.file_name,
            status=item.status,
            progress=item.progress,
            error=item.error,
        ))

    def _on_download_change(self, item: DownloadItem) -> None:
        self.events.emit(DownloadProgressEvent(
            download_id=item.id,
            mapping_id=item.mapping_id,
            file_id=item.file_id,
            file_name=item.file_name,
            status=item.status,
            progress=item.progress,
            error=item.error,
        ))


class SyncEngine:
    """Runs the synchronization of every active drive mapping.

    Example:
        >>> engine = SyncEngine(store, storage)
        >>> engine.add_drive("drive-1", "Photos", "/home/me/Photos")
        >>> engine.start()
        ...
        >>> engine.stop()
    """

    def __init__(
        self,
        store: SyncStateStore,
        storage: RemoteStorage,
        config: SyncConfig | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.config = config or SyncConfig()
        self.events = EventEmitter()
        self._drives: dict[str, DriveSync] = {}
        self._lock = threading.Lock()
        self._running = False
        self._watch = True

    @property
    def is_running(self) -> bool:
        return self._running

    def add_drive(
        self,
        remote_drive_id: str,
        drive_name: str,
        local_folder_path: str | Path,
        privacy: DrivePrivacy = DrivePrivacy.PRIVATE,
        root_folder_id: str | None = None,
        sync_settings: SyncSettings | None = None,
    ) -> DriveMapping:
        """Map a remote drive to a local folder.

        The folder is created if missing. A running engine starts syncing
        the new drive right away.

        Raises:
            StateStoreError: If the drive is already mapped to this folder.
        """
        local_path = Path(local_folder_path).expanduser().resolve()
        local_path.mkdir(parents=True, exist_ok=True)
        mapping = self.store.add_drive_mapping(DriveMapping(
            id=str(uuid.uuid4()),
            remote_drive_id=remote_drive_id,
            drive_name=drive_name,
            privacy=privacy,
            local_folder_path=str(local_path),
            root_folder_id=root_folder_id,
            sync_settings=sync_settings or SyncSettings(),
        ))
        if self._running:
            self._start_drive(mapping)
        return mapping

    def remove_drive(self, mapping_id: str) -> bool:
        """Stop syncing a drive and forget everything recorded for it."""
        with self._lock:
            drive = self._drives.pop(mapping_id, None)
        if drive is not None:
            drive.stop()
        return self.store.remove_drive_mapping(mapping_id)

    def get_drive(self, mapping_id: str) -> DriveSync | None:
        with self._lock:
            return self._drives.get(mapping_id)

    def list_drives(self) -> list[DriveSync]:
        with self._lock:
            return list(self._drives.values())

    def start(self, watch: bool = True) -> None:
        """Start one DriveSync per active mapping.

        Args:
            watch: Watch the local folders for changes.
        """
        if self._running:
            return
        self._watch = watch
        self._running = True
        for mapping in self.store.list_active_drive_mappings():
            self._start_drive(mapping)
        logger.info("Sync engine started with %d drives", len(self._drives))

    def stop(self) -> None:
        with self._lock:
            drives = list(self._drives.values())
            self._drives.clear()
        for drive in drives:
            drive.stop()
        self._running = False
        logger.info("Sync engine stopped")

    def get_status(self) -> dict[str, Any]:
        """Queue sizes of every running drive."""
        return {
            drive.mapping_id: {
                "drive_name": drive.mapping.drive_name,
                "uploads": drive.uploads.get_queue_size(),
                "downloads": drive.downloads.get_queue_status(),
            }
            for drive in self.list_drives()
        }

    def _start_drive(self, mapping: DriveMapping) -> None:
        drive = DriveSync(mapping, self.store, self.storage, self.config, events=self.events)
        with self._lock:
            self._drives[mapping.id] = drive
        drive.start(watch=self._watch)
