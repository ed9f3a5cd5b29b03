"""Tests for the upload queue."""

from __future__ import annotations

import errno
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from permasync.client.records import DriveMapping
from permasync.client.state import SyncStateStore
from permasync.client.sync.queue import CANCELLED_MESSAGE, UploadQueueManager, sort_uploads
from permasync.client.sync.types import RemoteUploadResult, UploadItem
from permasync.core.types import DrivePrivacy, TransferStatus


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _file(path: str, size: int = 10) -> UploadItem:
    return UploadItem(local_path=path, file_name=path.rsplit("/", 1)[-1], file_size=size)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def handler() -> MagicMock:
    return MagicMock(return_value=RemoteUploadResult(
        file_id="file-1", data_tx_id="data-tx", metadata_tx_id="meta-tx", upload_method="direct",
    ))


@pytest.fixture
def queue(handler: MagicMock, clock: FakeClock) -> UploadQueueManager:
    return UploadQueueManager(handler, clock=clock)


class TestSortUploads:
    """Tests for sort_uploads()."""

    def test_folders_first_by_depth(self) -> None:
        """Folders should come first, shallowest first."""
        items = [
            _file("/sync/docs/readme.txt"),
            UploadItem.for_folder("/sync/docs/deep"),
            _file("/sync/a.txt"),
            UploadItem.for_folder("/sync/docs"),
        ]
        ordered = [u.local_path for u in sort_uploads(items)]
        assert ordered == [
            "/sync/docs",
            "/sync/docs/deep",
            "/sync/a.txt",
            "/sync/docs/readme.txt",
        ]

    def test_files_grouped_by_directory(self) -> None:
        """Files should be grouped by parent directory, then by name."""
        items = [_file("/sync/b/z.txt"), _file("/sync/a/y.txt"), _file("/sync/b/a.txt")]
        ordered = [u.local_path for u in sort_uploads(items)]
        assert ordered == ["/sync/a/y.txt", "/sync/b/a.txt", "/sync/b/z.txt"]

    def test_no_file_before_ancestor_folder(self) -> None:
        """No file should precede a folder that contains it."""
        items = [
            _file("/sync/x/y/file.txt"),
            UploadItem.for_folder("/sync/x/y"),
            _file("/sync/x/top.txt"),
            UploadItem.for_folder("/sync/x"),
        ]
        ordered = sort_uploads(items)
        for i, item in enumerate(ordered):
            for later in ordered[i + 1:]:
                if later.is_folder:
                    assert not item.local_path.startswith(later.local_path + "/")

    def test_empty_file_with_matching_name_sorts_as_folder(self) -> None:
        """An empty item named after its path basename sorts with the folders."""
        empty = UploadItem(local_path="/sync/empty", file_name="empty", file_size=0)
        assert sort_uploads([_file("/sync/a.txt"), empty])[0] is empty


class TestQueueContents:
    """Tests for adding, removing and cancelling uploads."""

    def test_add_and_get(self, queue: UploadQueueManager) -> None:
        """Added items should be retrievable by id."""
        item = queue.add_to_queue(_file("/sync/a.txt"))
        assert queue.get_queue_size() == 1
        assert queue.get_upload_by_id(item.id) is item

    def test_pending_duplicate_reused(self, queue: UploadQueueManager) -> None:
        """A second add of a pending path should reuse the queued item."""
        first = queue.add_to_queue(_file("/sync/a.txt", size=10))
        second = queue.add_to_queue(_file("/sync/a.txt", size=20))
        assert second is first
        assert first.file_size == 20
        assert queue.get_queue_size() == 1

    def test_remove_for_path(self, queue: UploadQueueManager) -> None:
        """Should drop pending items at or below a path."""
        queue.add_to_queue(_file("/sync/docs/a.txt"))
        queue.add_to_queue(_file("/sync/docs/sub/b.txt"))
        queue.add_to_queue(_file("/sync/docs2/c.txt"))

        assert queue.remove_for_path("/sync/docs") == 2
        assert [u.local_path for u in queue.get_all_uploads()] == ["/sync/docs2/c.txt"]

    def test_cancel_pending(self, handler: MagicMock) -> None:
        """Cancelling a pending item should fail it and remove it."""
        changes: list[tuple[TransferStatus, str | None]] = []
        queue = UploadQueueManager(
            handler, on_change=lambda item: changes.append((item.status, item.error))
        )
        item = queue.add_to_queue(_file("/sync/a.txt"))

        assert queue.cancel_upload(item.id) is True
        assert queue.get_upload_by_id(item.id) is None
        assert changes[-1] == (TransferStatus.FAILED, CANCELLED_MESSAGE)

    def test_cancel_unknown(self, queue: UploadQueueManager) -> None:
        """Cancelling an unknown id should return False."""
        assert queue.cancel_upload("missing") is False

    def test_clear_completed(self, queue: UploadQueueManager) -> None:
        """Completed items should be purged, others kept."""
        queue.add_to_queue(_file("/sync/a.txt"))
        queue.process_next_upload()
        queue.add_to_queue(_file("/sync/b.txt"))

        assert queue.clear_completed() == 1
        assert [u.local_path for u in queue.get_all_uploads()] == ["/sync/b.txt"]


class TestProcessing:
    """Tests for process_next_upload()."""

    def test_success(self, queue: UploadQueueManager, handler: MagicMock) -> None:
        """A successful upload should be completed with its remote ids."""
        item = queue.add_to_queue(_file("/sync/a.txt"))
        assert queue.process_next_upload() is item

        handler.assert_called_once_with(item)
        assert item.status is TransferStatus.COMPLETED
        assert item.progress == 100.0
        assert item.attempts == 1
        assert item.file_id == "file-1"
        assert item.data_tx_id == "data-tx"

    def test_empty_queue(self, queue: UploadQueueManager, handler: MagicMock) -> None:
        """Nothing should happen without pending items."""
        assert queue.process_next_upload() is None
        handler.assert_not_called()

    def test_folder_processed_before_file(
        self, queue: UploadQueueManager, handler: MagicMock
    ) -> None:
        """The folder should be handed to the handler before its file."""
        queue.add_to_queue(_file("/sync/docs/a.txt"))
        queue.add_to_queue(UploadItem.for_folder("/sync/docs"))

        queue.process_next_upload()
        queue.process_next_upload()

        paths = [c.args[0].local_path for c in handler.call_args_list]
        assert paths == ["/sync/docs", "/sync/docs/a.txt"]

    def test_single_flight(self, clock: FakeClock) -> None:
        """No second upload should start while one is in flight."""
        started = threading.Event()
        release = threading.Event()

        def slow_handler(item: UploadItem) -> None:
            started.set()
            release.wait(timeout=5)

        queue = UploadQueueManager(slow_handler, clock=clock)
        queue.add_to_queue(_file("/sync/a.txt"))
        queue.add_to_queue(_file("/sync/b.txt"))

        worker = threading.Thread(target=queue.process_next_upload)
        worker.start()
        try:
            assert started.wait(timeout=5)
            assert queue.process_next_upload() is None
            uploading = [
                u for u in queue.get_all_uploads() if u.status is TransferStatus.UPLOADING
            ]
            assert len(uploading) == 1
            assert queue.get_current_upload() is uploading[0]
        finally:
            release.set()
            worker.join(timeout=5)

        assert queue.get_current_upload() is None

    def test_retry_waits_for_backoff(
        self, queue: UploadQueueManager, handler: MagicMock, clock: FakeClock
    ) -> None:
        """A retryable failure should reschedule the item after the backoff."""
        handler.side_effect = [OSError(errno.ETIMEDOUT, "timed out"), None]
        item = queue.add_to_queue(_file("/sync/a.txt"))

        queue.process_next_upload()
        assert item.status is TransferStatus.PENDING
        assert item.next_attempt_at > clock.now
        assert item.error is not None
        assert queue.process_next_upload() is None

        clock.now = item.next_attempt_at
        queue.process_next_upload()
        assert item.status is TransferStatus.COMPLETED
        assert item.error is None

    def test_exhausted_retries_fail(
        self, queue: UploadQueueManager, handler: MagicMock, clock: FakeClock
    ) -> None:
        """Three timeouts in a row should fail the item with NETWORK_TIMEOUT."""
        handler.side_effect = OSError(errno.ETIMEDOUT, "timed out")
        item = queue.add_to_queue(_file("/sync/a.txt"))

        for _ in range(5):
            queue.process_next_upload()
            clock.now += 100.0

        assert handler.call_count == 3
        assert item.status is TransferStatus.FAILED
        assert item.error_code == "NETWORK_TIMEOUT"
        assert item.attempts == 3

    def test_fatal_error_fails_immediately(
        self, queue: UploadQueueManager, handler: MagicMock
    ) -> None:
        """A non-retryable failure should not be retried."""
        handler.side_effect = PermissionError(errno.EACCES, "denied")
        item = queue.add_to_queue(_file("/sync/a.txt"))

        queue.process_next_upload()

        assert handler.call_count == 1
        assert item.status is TransferStatus.FAILED
        assert item.error_code == "PERMISSION_DENIED"

    def test_retry_upload_resets_failed(
        self, queue: UploadQueueManager, handler: MagicMock
    ) -> None:
        """retry_upload should put a failed item back to pending."""
        handler.side_effect = [PermissionError(errno.EACCES, "denied"), None]
        item = queue.add_to_queue(_file("/sync/a.txt"))
        queue.process_next_upload()

        assert queue.retry_upload(item.id) is True
        assert item.status is TransferStatus.PENDING
        assert item.error is None
        assert item.attempts == 0

        queue.process_next_upload()
        assert item.status is TransferStatus.COMPLETED

    def test_retry_upload_only_failed(self, queue: UploadQueueManager) -> None:
        """retry_upload should ignore items that did not fail."""
        item = queue.add_to_queue(_file("/sync/a.txt"))
        assert queue.retry_upload(item.id) is False


class TestBackgroundProcessing:
    """Tests for the processing thread."""

    def test_processes_queue(self) -> None:
        """The thread should upload queued items."""
        done = threading.Event()
        queue = UploadQueueManager(lambda item: done.set())
        queue.config.tick_interval = 0.01
        queue.add_to_queue(_file("/sync/a.txt"))

        queue.start_processing()
        try:
            assert queue.is_processing
            assert done.wait(timeout=5)
        finally:
            queue.stop_processing()
        assert not queue.is_processing


class TestStoreMirroring:
    """Tests for write-behind mirroring to the state store."""

    @pytest.fixture
    def store(self, tmp_path: Path) -> SyncStateStore:
        s = SyncStateStore(tmp_path / "state.db")
        s.add_drive_mapping(DriveMapping(
            id="m1", remote_drive_id="drive-1", drive_name="Drive",
            privacy=DrivePrivacy.PRIVATE, local_folder_path=str(tmp_path / "sync"),
        ))
        yield s
        s.close()

    def test_failure_recorded(
        self, store: SyncStateStore, handler: MagicMock, clock: FakeClock
    ) -> None:
        """The terminal failure should be persisted with its code."""
        handler.side_effect = PermissionError(errno.EACCES, "denied")
        queue = UploadQueueManager(handler, store=store, clock=clock)
        item = queue.add_to_queue(UploadItem(
            local_path="/sync/a.txt", file_name="a.txt", file_size=1, mapping_id="m1",
        ))

        queue.process_next_upload()

        record = store.get_upload(item.id)
        assert record is not None
        assert record.status is TransferStatus.FAILED
        assert record.error_code == "PERMISSION_DENIED"

    def test_cancel_recorded(self, store: SyncStateStore, handler: MagicMock) -> None:
        """A cancelled upload should be stored as cancelled."""
        queue = UploadQueueManager(handler, store=store)
        item = queue.add_to_queue(UploadItem(
            local_path="/sync/a.txt", file_name="a.txt", file_size=1, mapping_id="m1",
        ))

        queue.cancel_upload(item.id)

        record = store.get_upload(item.id)
        assert record is not None
        assert record.status is TransferStatus.CANCELLED
        assert record.error == CANCELLED_MESSAGE

    def test_success_recorded(self, store: SyncStateStore, handler: MagicMock) -> None:
        """The remote ids of a completed upload should be stored."""
        queue = UploadQueueManager(handler, store=store)
        item = queue.add_to_queue(UploadItem(
            local_path="/sync/a.txt", file_name="a.txt", file_size=1, mapping_id="m1",
        ))

        queue.process_next_upload()

        record = store.get_upload(item.id)
        assert record is not None
        assert record.status is TransferStatus.COMPLETED
        assert record.file_id == "file-1"
        assert record.metadata_tx_id == "meta-tx"
        assert record.completed_at is not None
