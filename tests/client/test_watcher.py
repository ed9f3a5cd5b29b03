"""Tests for the file system watcher and event translation."""

import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from permasync.client.sync.ignore import IgnorePatterns
from permasync.client.sync.watcher import DebouncedEventHandler, FileWatcher


@pytest.fixture
def base(tmp_path: Path) -> Path:
    return tmp_path.resolve()


@pytest.fixture
def sync_handler() -> MagicMock:
    return MagicMock()


@pytest.fixture
def events(base: Path, sync_handler: MagicMock) -> DebouncedEventHandler:
    # Long debounce: tests flush explicitly
    handler = DebouncedEventHandler(base, sync_handler, debounce_s=60.0)
    yield handler
    handler.stop()


class TestFileEvents:
    """Tests for file event translation."""

    def test_create_is_debounced(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """A created file should be reported once, on flush."""
        path = base / "a.txt"
        path.write_text("a")

        events.on_created(FileCreatedEvent(str(path)))
        events.on_modified(FileModifiedEvent(str(path)))
        events.on_modified(FileModifiedEvent(str(path)))
        sync_handler.on_file_added.assert_not_called()

        events.flush()

        sync_handler.on_file_added.assert_called_once_with(str(path))
        sync_handler.on_file_changed.assert_not_called()

    def test_modify_reports_change(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """A modified existing file should be reported as changed."""
        path = base / "a.txt"
        path.write_text("a")

        events.on_modified(FileModifiedEvent(str(path)))
        events.flush()

        sync_handler.on_file_changed.assert_called_once_with(str(path))

    def test_delete_drops_pending_change(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """A file deleted before the flush should only be reported removed."""
        path = base / "a.txt"
        events.on_created(FileCreatedEvent(str(path)))
        events.on_deleted(FileDeletedEvent(str(path)))
        events.flush()

        sync_handler.on_file_removed.assert_called_once_with(str(path))
        sync_handler.on_file_added.assert_not_called()

    def test_vanished_file_not_reported(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """A pending path that is no longer a file should be skipped."""
        events.on_created(FileCreatedEvent(str(base / "gone.txt")))
        events.flush()
        sync_handler.on_file_added.assert_not_called()

    def test_ignored_paths(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """Temporary and hidden files should produce no calls."""
        tmp = base / "x.tmp"
        tmp.write_text("x")
        events.on_created(FileCreatedEvent(str(tmp)))
        events.on_deleted(FileDeletedEvent(str(base / ".hidden")))
        events.flush()

        assert sync_handler.method_calls == []

    def test_file_move(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """A file move should be removed(src) then added(dest)."""
        dest = base / "b.txt"
        dest.write_text("b")

        events.on_moved(FileMovedEvent(str(base / "a.txt"), str(dest)))
        events.flush()

        sync_handler.on_file_removed.assert_called_once_with(str(base / "a.txt"))
        sync_handler.on_file_added.assert_called_once_with(str(dest))

    def test_failing_handler_logged(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """A failing handler call should not stop event processing."""
        sync_handler.on_file_removed.side_effect = RuntimeError("boom")
        events.on_deleted(FileDeletedEvent(str(base / "a.txt")))
        events.on_deleted(FileDeletedEvent(str(base / "b.txt")))

        assert sync_handler.on_file_removed.call_count == 2


class TestFolderEvents:
    """Tests for folder event translation."""

    def test_folder_create_and_delete(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """Folder events should be forwarded immediately."""
        events.on_created(DirCreatedEvent(str(base / "docs")))
        events.on_deleted(DirDeletedEvent(str(base / "old")))

        sync_handler.on_folder_added.assert_called_once_with(str(base / "docs"))
        sync_handler.on_folder_removed.assert_called_once_with(str(base / "old"))

    def test_folder_modified_ignored(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """Folder mtime changes carry no content change."""
        events.on_modified(DirModifiedEvent(str(base / "docs")))
        events.flush()
        assert sync_handler.method_calls == []

    def test_folder_move(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """A folder rename should be removed(src) then added(dest)."""
        events.on_moved(DirMovedEvent(str(base / "Docs"), str(base / "Documents")))

        assert [c[0] for c in sync_handler.method_calls] == [
            "on_folder_removed", "on_folder_added",
        ]

    def test_folder_delete_drops_pending_children(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """Pending changes below a removed folder should be dropped."""
        folder = base / "docs"
        folder.mkdir()
        child = folder / "a.txt"
        child.write_text("a")

        events.on_created(FileCreatedEvent(str(child)))
        events.on_deleted(DirDeletedEvent(str(folder)))
        events.flush()

        sync_handler.on_file_added.assert_not_called()

    def test_synthetic_move_dropped(
        self, base: Path, events: DebouncedEventHandler, sync_handler: MagicMock
    ) -> None:
        """Synthetic moves for the content of a moved folder should be dropped."""
        event = FileMovedEvent(str(base / "Docs" / "a.txt"), str(base / "Documents" / "a.txt"))
        event.is_synthetic = True

        events.on_moved(event)

        assert sync_handler.method_calls == []

    def test_custom_ignore(self, base: Path, sync_handler: MagicMock) -> None:
        """Custom ignore patterns should apply to folders."""
        handler = DebouncedEventHandler(
            base, sync_handler, ignore_patterns=IgnorePatterns(["build"])
        )
        handler.on_created(DirCreatedEvent(str(base / "build")))
        sync_handler.on_folder_added.assert_not_called()


class TestFileWatcher:
    """Tests for FileWatcher with a real observer."""

    def test_rejects_file_path(self, tmp_path: Path) -> None:
        """Should require a directory."""
        path = tmp_path / "file.txt"
        path.write_text("x")
        with pytest.raises(ValueError):
            FileWatcher(path, MagicMock())

    def test_start_stop(self, tmp_path: Path) -> None:
        """Should track its running state."""
        watcher = FileWatcher(tmp_path, MagicMock())
        assert watcher.watch_path == tmp_path.resolve()
        assert not watcher.is_running
        watcher.start()
        assert watcher.is_running
        watcher.stop()
        assert not watcher.is_running

    def test_reports_new_file(self, tmp_path: Path) -> None:
        """A file written in the folder should reach the handler."""
        added = threading.Event()
        handler = MagicMock()
        handler.on_file_added.side_effect = lambda path: added.set()

        with FileWatcher(tmp_path, handler, debounce_s=0.05):
            time.sleep(0.1)
            (tmp_path / "new.txt").write_text("hello")
            assert added.wait(timeout=5)

        handler.on_file_added.assert_called_with(str(tmp_path.resolve() / "new.txt"))
