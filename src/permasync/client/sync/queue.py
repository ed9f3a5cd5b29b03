"""Upload queue with folder-first ordering and single-flight processing.

This module provides:
- UploadQueueManager: In-memory upload queue processed one item at a time
- sort_uploads: Processing order of pending uploads

Items live in an in-memory dict keyed by upload id. The state store, when
given, mirrors every state change as a write-behind log and is never read
back while the queue runs.

Ordering:
    Folders are created before files so every file has a remote parent:
    - Folders first, shallowest path first, then by path
    - Files next, grouped by parent directory, then by file name

Processing:
    A background thread ticks every ``tick_interval`` seconds. A tick does
    nothing while an item is uploading; otherwise the first ready pending
    item is marked uploading and handed to the upload handler. Failures
    are classified and either rescheduled with backoff or marked failed.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from permasync.client.records import UploadRecord
from permasync.client.state import StateStoreError
from permasync.client.sync.retry import ErrorClassifier, RetryPolicy
from permasync.client.sync.types import RemoteUploadResult, UploadItem
from permasync.core.config import QueueConfig
from permasync.core.types import TransferStatus

if TYPE_CHECKING:
    from permasync.client.state import SyncStateStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"

# Performs the upload; raises on failure
UploadHandler = Callable[[UploadItem], RemoteUploadResult | None]
UploadListener = Callable[[UploadItem], None]


def _depth(path: str) -> int:
    return path.count("/") + path.count("\\")


def sort_uploads(items: Iterable[UploadItem]) -> list[UploadItem]:
    """Order uploads for processing: folders by depth, then files by directory."""
    folders: list[UploadItem] = []
    files: list[UploadItem] = []
    for item in items:
        (folders if item.is_folder else files).append(item)
    folders.sort(key=lambda u: (_depth(u.local_path), u.local_path))
    files.sort(key=lambda u: (os.path.dirname(u.local_path), u.file_name))
    return folders + files


class UploadQueueManager:
    """Single-flight upload queue.

    Example:
        >>> queue = UploadQueueManager(handler=upload_one, store=store)
        >>> queue.add_to_queue(UploadItem.for_folder("/sync/docs"))
        >>> queue.start_processing()
        ...
        >>> queue.stop_processing()
    """

    def __init__(
        self,
        handler: UploadHandler,
        store: SyncStateStore | None = None,
        retry_policy: RetryPolicy | None = None,
        classifier: ErrorClassifier | None = None,
        config: QueueConfig | None = None,
        on_change: UploadListener | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the queue.

        Args:
            handler: Performs one upload, returning remote identifiers.
            store: Optional state store mirroring every change.
            retry_policy: Retry decisions and backoff.
            classifier: Maps handler exceptions to SyncError.
            config: Tick interval.
            on_change: Called after every status or progress change.
            clock: Time source for retry scheduling.
        """
        self._handler = handler
        self._store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.config = config or QueueConfig()
        self._on_change = on_change
        self._clock = clock

        self._lock = threading.RLock()
        self._uploads: dict[str, UploadItem] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # === Queue contents ===

    def add_to_queue(self, item: UploadItem) -> UploadItem:
        """Add an upload.

        A pending upload of the same path is reused instead of queuing a
        duplicate.

        Returns:
            The queued item.
        """
        with self._lock:
            for existing in self._uploads.values():
                if (
                    existing.local_path == item.local_path
                    and existing.status == TransferStatus.PENDING
                ):
                    existing.file_size = item.file_size
                    logger.debug("Upload of %s already queued", item.local_path)
                    return existing
            self._uploads[item.id] = item

        logger.info("Added %s to upload queue (ID: %s)", item.file_name, item.id)
        if self._store is not None:
            self._mirror(
                self._store.add_upload,
                UploadRecord(
                    id=item.id,
                    mapping_id=item.mapping_id,
                    local_path=item.local_path,
                    file_name=item.file_name,
                    file_size=item.file_size,
                    status=item.status,
                    created_at=item.created_at,
                ),
            )
        self._notify(item)
        return item

    def remove_from_queue(self, upload_id: str) -> bool:
        with self._lock:
            removed = self._uploads.pop(upload_id, None)
        if removed is not None:
            logger.debug("Upload %s removed from queue", upload_id)
        return removed is not None

    def remove_for_path(self, path: str) -> int:
        """Drop pending uploads at or below a path."""
        prefix = path.rstrip(os.sep) + os.sep
        with self._lock:
            ids = [
                u.id for u in self._uploads.values()
                if u.status == TransferStatus.PENDING
                and (u.local_path == path or u.local_path.startswith(prefix))
            ]
            for upload_id in ids:
                del self._uploads[upload_id]
        for upload_id in ids:
            self._persist(upload_id, status=TransferStatus.CANCELLED)
        return len(ids)

    def get_queue_size(self) -> int:
        with self._lock:
            return len(self._uploads)

    def get_all_uploads(self) -> list[UploadItem]:
        with self._lock:
            return list(self._uploads.values())

    def get_upload_by_id(self, upload_id: str) -> UploadItem | None:
        with self._lock:
            return self._uploads.get(upload_id)

    def get_current_upload(self) -> UploadItem | None:
        """Get the item being uploaded, if any."""
        with self._lock:
            for item in self._uploads.values():
                if item.status == TransferStatus.UPLOADING:
                    return item
        return None

    def update_progress(self, upload_id: str, progress: float) -> None:
        with self._lock:
            item = self._uploads.get(upload_id)
            if item is None:
                return
            item.progress = max(0.0, min(100.0, progress))
        self._persist(upload_id, progress=item.progress)
        self._notify(item)

    def cancel_upload(self, upload_id: str) -> bool:
        """Cancel a pending upload and drop it from the queue.

        Returns:
            True if the upload was pending and is now cancelled.
        """
        with self._lock:
            item = self._uploads.get(upload_id)
            if item is None or item.status != TransferStatus.PENDING:
                return False
            item.status = TransferStatus.FAILED
            item.error = CANCELLED_MESSAGE
            del self._uploads[upload_id]

        logger.info("Upload %s cancelled and removed from queue", upload_id)
        self._persist(upload_id, status=TransferStatus.CANCELLED, error=CANCELLED_MESSAGE)
        self._notify(item)
        return True

    def retry_upload(self, upload_id: str) -> bool:
        """Put a failed upload back to pending.

        Returns:
            True if the upload was failed and is now pending.
        """
        with self._lock:
            item = self._uploads.get(upload_id)
            if item is None or item.status != TransferStatus.FAILED:
                return False
            item.status = TransferStatus.PENDING
            item.error = None
            item.error_code = None
            item.attempts = 0
            item.next_attempt_at = 0.0
        self.retry_policy.reset_retry_delay(upload_id)

        logger.info("Upload %s marked for retry", upload_id)
        self._persist(
            upload_id, status=TransferStatus.PENDING, error=None, error_code=None,
        )
        self._notify(item)
        return True

    def clear_completed(self) -> int:
        with self._lock:
            ids = [
                u.id for u in self._uploads.values()
                if u.status == TransferStatus.COMPLETED
            ]
            for upload_id in ids:
                del self._uploads[upload_id]
        logger.debug("Cleared %d completed uploads from queue", len(ids))
        return len(ids)

    def clear_queue(self) -> int:
        with self._lock:
            count = len(self._uploads)
            self._uploads.clear()
        logger.info("Cleared upload queue (removed %d items)", count)
        return count

    # === Processing ===

    def process_next_upload(self) -> UploadItem | None:
        """Upload the next ready item, unless an upload is in flight.

        Blocks until the handler returns.

        Returns:
            The processed item, or None if nothing was started.
        """
        with self._lock:
            if any(u.status == TransferStatus.UPLOADING for u in self._uploads.values()):
                return None
            now = self._clock()
            ready = [
                u for u in self._uploads.values()
                if u.status == TransferStatus.PENDING and u.next_attempt_at <= now
            ]
            if not ready:
                return None
            item = sort_uploads(ready)[0]
            item.status = TransferStatus.UPLOADING
            item.attempts += 1

        logger.debug(
            "Uploading %s (attempt %d, %d ready)",
            item.local_path, item.attempts, len(ready),
        )
        self._persist(item.id, status=TransferStatus.UPLOADING)
        self._notify(item)

        try:
            result = self._handler(item)
        except Exception as e:
            self._on_failure(item, e)
        else:
            self._on_success(item, result)
        return item

    def _on_success(self, item: UploadItem, result: RemoteUploadResult | None) -> None:
        with self._lock:
            item.status = TransferStatus.COMPLETED
            item.progress = 100.0
            item.error = None
            item.error_code = None
            item.completed_at = self._clock()
            if result is not None:
                item.file_id = result.file_id
                item.data_tx_id = result.data_tx_id
                item.metadata_tx_id = result.metadata_tx_id
                item.upload_method = result.upload_method
        self.retry_policy.reset_retry_delay(item.id)

        logger.info("Upload completed: %s", item.local_path)
        self._persist(
            item.id,
            status=TransferStatus.COMPLETED,
            progress=100.0,
            error=None,
            error_code=None,
            completed_at=item.completed_at,
            file_id=item.file_id,
            data_tx_id=item.data_tx_id,
            metadata_tx_id=item.metadata_tx_id,
            upload_method=item.upload_method,
        )
        self._notify(item)

    def _on_failure(self, item: UploadItem, exc: Exception) -> None:
        error = self.classifier.classify(exc)
        self.classifier.log_error(error, upload_id=item.id, path=item.local_path)

        if self.retry_policy.should_retry(error, item.attempts):
            delay = self.retry_policy.get_retry_delay(item.id, item.attempts)
            with self._lock:
                item.status = TransferStatus.PENDING
                item.error = error.user_message
                item.error_code = error.code.value
                item.next_attempt_at = self._clock() + delay
            logger.info(
                "Retrying upload of %s in %.1fs (attempt %d)",
                item.local_path, delay, item.attempts,
            )
            self._persist(item.id, status=TransferStatus.PENDING, error=item.error)
        else:
            with self._lock:
                item.status = TransferStatus.FAILED
                item.error = self.classifier.get_user_message(error)
                item.error_code = error.code.value
            logger.error(
                "Upload of %s failed after %d attempts: %s",
                item.local_path, item.attempts, error.code.value,
            )
            self._persist(
                item.id,
                status=TransferStatus.FAILED,
                error=item.error,
                error_code=item.error_code,
            )
        self._notify(item)

    def start_processing(self) -> None:
        """Start the background processing thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.debug("Upload queue processor already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="upload-queue"
        )
        self._thread.start()
        logger.info("Started upload queue processor")

    def stop_processing(self, timeout: float = 5.0) -> None:
        """Stop the processing thread, waiting for an in-flight upload."""
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.info("Upload queue processor stopped")

    @property
    def is_processing(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self.config.tick_interval):
            try:
                self.process_next_upload()
            except Exception:
                logger.exception("Upload queue tick failed")

    # === Mirroring ===

    def _persist(self, upload_id: str, **fields: object) -> None:
        if self._store is not None:
            self._mirror(self._store.update_upload, upload_id, **fields)

    @staticmethod
    def _mirror(write: Callable[..., None], *args: object, **kwargs: object) -> None:
        try:
            write(*args, **kwargs)
        except StateStoreError:
            logger.exception("Failed to record upload state")

    def _notify(self, item: UploadItem) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(item)
        except Exception:
            logger.exception("Upload listener failed")
