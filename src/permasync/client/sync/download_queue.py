"""Download queue ordered by priority and size.

This module provides:
- DownloadQueueManager: In-memory download queue processed one at a time
- calculate_download_priority: Default priority from the file size

Small files are downloaded first so that most of a drive becomes
available quickly. The metadata cache follows each file through
queued -> downloading -> synced (or error), and the downloads table keeps
the transfer history.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from permasync.client.records import DownloadRecord
from permasync.client.state import StateStoreError
from permasync.client.sync.retry import ErrorClassifier, RetryPolicy
from permasync.client.sync.types import DownloadItem
from permasync.core.config import QueueConfig
from permasync.core.types import SyncStatus, TransferStatus

if TYPE_CHECKING:
    from permasync.client.state import SyncStateStore

logger = logging.getLogger(__name__)

MB = 1024 * 1024

DownloadHandler = Callable[[DownloadItem], None]
DownloadListener = Callable[[DownloadItem], None]


def calculate_download_priority(size: int | None) -> int:
    """Priority of a download from its size: small files first."""
    size = size or 0
    if size < MB:
        return 100
    if size < 10 * MB:
        return 50
    return 10


def _order(item: DownloadItem) -> tuple[int, int]:
    return (-item.priority, item.file_size)


class DownloadQueueManager:
    """Single-flight download queue keyed by remote file id."""

    def __init__(
        self,
        handler: DownloadHandler,
        store: SyncStateStore | None = None,
        retry_policy: RetryPolicy | None = None,
        classifier: ErrorClassifier | None = None,
        config: QueueConfig | None = None,
        on_change: DownloadListener | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the queue.

        Args:
            handler: Downloads one file to ``item.local_path``; raises on failure.
            store: Optional state store for status mirroring.
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
        self._queue: dict[str, DownloadItem] = {}
        self._active: DownloadItem | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # === Queue contents ===

    def queue_download(self, item: DownloadItem) -> bool:
        """Queue a download.

        Returns:
            False if the file is already queued or downloading.
        """
        with self._lock:
            if item.file_id in self._queue or (
                self._active is not None and self._active.file_id == item.file_id
            ):
                logger.debug("File %s is already queued or downloading", item.file_name)
                return False
            item.status = TransferStatus.PENDING
            self._queue[item.file_id] = item

        logger.info("Queued download: %s (priority: %d)", item.file_name, item.priority)
        self._mirror("add_download", DownloadRecord(
            id=item.id,
            mapping_id=item.mapping_id,
            file_id=item.file_id,
            file_name=item.file_name,
            local_path=item.local_path,
            file_size=item.file_size,
            data_tx_id=item.data_tx_id,
            metadata_tx_id=item.metadata_tx_id,
            priority=item.priority,
            created_at=item.created_at,
        ))
        self._mirror("update_file_status", item.file_id, SyncStatus.QUEUED)
        self._notify(item)
        return True

    def cancel_download(self, file_id: str) -> bool:
        """Cancel a queued or running download and mark the file cloud_only.

        A running download is flagged cancelled; the handler sees the flag
        through the item status and its result is discarded.
        """
        with self._lock:
            item = self._queue.pop(file_id, None)
            if item is None and self._active is not None and self._active.file_id == file_id:
                item = self._active
            if item is not None:
                item.status = TransferStatus.CANCELLED

        logger.info("Cancelling download for file %s", file_id)
        self._mirror("update_file_status", file_id, SyncStatus.CLOUD_ONLY)
        if item is not None:
            self._mirror("cancel_download", item.id)
            self._notify(item)
        return item is not None

    def prioritize_download(self, file_id: str, priority: int) -> bool:
        with self._lock:
            item = self._queue.get(file_id)
            if item is None:
                return False
            item.priority = priority
        logger.debug("Updated priority for %s to %d", item.file_name, priority)
        self._mirror("update_download", item.id, priority=priority)
        return True

    def update_progress(self, file_id: str, progress: float) -> None:
        with self._lock:
            item = self._active if self._active and self._active.file_id == file_id else None
            if item is None:
                return
            item.progress = max(0.0, min(100.0, progress))
        self._mirror("update_download", item.id, progress=item.progress)
        self._notify(item)

    def get_queue_status(self) -> dict[str, int]:
        with self._lock:
            queued = len(self._queue)
            active = 1 if self._active is not None else 0
        return {"queued": queued, "active": active, "total": queued + active}

    def get_queued_downloads(self, limit: int = 30) -> list[DownloadItem]:
        """Queued downloads in processing order."""
        with self._lock:
            items = sorted(self._queue.values(), key=_order)
        return items[:limit]

    def get_active_download(self) -> DownloadItem | None:
        with self._lock:
            return self._active

    # === Processing ===

    def process_next_download(self) -> DownloadItem | None:
        """Download the next ready file, unless a download is in flight.

        Returns:
            The processed item, or None if nothing was started.
        """
        with self._lock:
            if self._active is not None:
                return None
            now = self._clock()
            ready = [i for i in self._queue.values() if i.next_attempt_at <= now]
            if not ready:
                return None
            item = min(ready, key=_order)
            del self._queue[item.file_id]
            item.status = TransferStatus.DOWNLOADING
            item.attempts += 1
            self._active = item

        logger.debug("Downloading %s (attempt %d)", item.file_name, item.attempts)
        self._mirror("update_download", item.id, status=TransferStatus.DOWNLOADING)
        self._mirror("update_file_local_status", item.file_id, SyncStatus.DOWNLOADING, False)
        self._notify(item)

        try:
            self._handler(item)
        except Exception as e:
            self._on_failure(item, e)
        else:
            self._on_success(item)
        finally:
            with self._lock:
                self._active = None
        return item

    def _on_success(self, item: DownloadItem) -> None:
        if item.status == TransferStatus.CANCELLED:
            logger.info("Download of %s finished after cancellation", item.file_name)
            return
        item.status = TransferStatus.COMPLETED
        item.progress = 100.0
        self.retry_policy.reset_retry_delay(item.id)

        logger.info("Download completed: %s", item.local_path)
        self._mirror(
            "update_download", item.id,
            status=TransferStatus.COMPLETED, progress=100.0, completed_at=time.time(),
        )
        self._mirror(
            "update_file_local_status", item.file_id, SyncStatus.SYNCED, True, item.local_path,
        )
        self._notify(item)

    def _on_failure(self, item: DownloadItem, exc: Exception) -> None:
        if item.status == TransferStatus.CANCELLED:
            logger.info("Download of %s cancelled", item.file_name)
            return
        error = self.classifier.classify(exc)
        self.classifier.log_error(error, file_id=item.file_id, path=item.local_path)

        if self.retry_policy.should_retry(error, item.attempts):
            delay = self.retry_policy.get_retry_delay(item.id, item.attempts)
            with self._lock:
                item.status = TransferStatus.PENDING
                item.error = error.user_message
                item.next_attempt_at = self._clock() + delay
                self._queue[item.file_id] = item
            logger.info(
                "Re-queueing %s for retry %d in %.1fs",
                item.file_name, item.attempts, delay,
            )
            self._mirror("update_download", item.id, status=TransferStatus.PENDING, error=item.error)
            self._mirror("update_file_status", item.file_id, SyncStatus.QUEUED)
        else:
            item.status = TransferStatus.FAILED
            item.error = self.classifier.get_user_message(error)
            self._mirror("update_download", item.id, status=TransferStatus.FAILED, error=item.error)
            self._mirror("update_file_status", item.file_id, SyncStatus.ERROR, item.error)
        self._notify(item)

    def start_processing(self) -> None:
        """Start the background processing thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="download-queue"
        )
        self._thread.start()
        logger.info("Started download queue processor")

    def stop_processing(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def stop_all(self) -> None:
        """Cancel the running download, clear the queue and stop processing."""
        with self._lock:
            if self._active is not None:
                self._active.status = TransferStatus.CANCELLED
            count = len(self._queue)
            self._queue.clear()
        self.stop_processing()
        logger.info("All downloads stopped (%d queued dropped)", count)

    def _run(self) -> None:
        while not self._stop_event.wait(self.config.tick_interval):
            try:
                self.process_next_download()
            except Exception:
                logger.exception("Download queue tick failed")

    # === Mirroring ===

    def _mirror(self, method: str, *args: Any, **kwargs: Any) -> None:
        if self._store is None:
            return
        try:
            getattr(self._store, method)(*args, **kwargs)
        except StateStoreError:
            logger.exception("Failed to record download state (%s)", method)

    def _notify(self, item: DownloadItem) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(item)
        except Exception:
            logger.exception("Download listener failed")
