"""File system watcher feeding the sync engine.

This module provides:
- FileWatcher: Watches a sync folder using watchdog
- DebouncedEventHandler: Translates watchdog events to SyncEventHandler calls

Translation:
    - created / modified file -> on_file_added / on_file_changed (debounced)
    - deleted file -> on_file_removed
    - created / deleted folder -> on_folder_added / on_folder_removed
    - moved file or folder -> removed(src) followed by added(dest), so that
      folder renames go through the folder operation detector

Synthetic events generated by watchdog for the content of a moved folder
are dropped; the folder move itself carries the change.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from permasync.client.sync.ignore import IgnorePatterns

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from permasync.client.sync.types import SyncEventHandler

logger = logging.getLogger(__name__)


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


class DebouncedEventHandler(FileSystemEventHandler):
    """Forwards watchdog events to a SyncEventHandler.

    File adds and changes are coalesced per path for ``debounce_s``
    seconds; a later delete of the path drops the pending change.
    """

    def __init__(
        self,
        base_path: Path,
        handler: SyncEventHandler,
        debounce_s: float = 0.25,
        ignore_patterns: IgnorePatterns | None = None,
    ) -> None:
        super().__init__()
        self._base_path = base_path
        self._handler = handler
        self._debounce_s = debounce_s
        self._ignore = ignore_patterns or IgnorePatterns()

        # path -> True if the file was created (False: modified)
        self._pending: dict[str, bool] = {}
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    # === Debouncing ===

    def _queue_file(self, path: str, created: bool) -> None:
        with self._lock:
            self._pending[path] = self._pending.get(path, False) or created
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce_s, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def _drop_pending(self, path: str) -> None:
        prefix = path.rstrip(os.sep) + os.sep
        with self._lock:
            for key in [k for k in self._pending if k == path or k.startswith(prefix)]:
                del self._pending[key]

    def flush(self) -> None:
        """Forward pending file adds and changes."""
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
            self._timer = None

        for path, created in pending:
            if not os.path.isfile(path):
                continue
            self._dispatch(
                self._handler.on_file_added if created else self._handler.on_file_changed,
                path,
            )

    def stop(self) -> None:
        """Cancel the pending flush."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()

    # === Translation ===

    def _ignored(self, path: str) -> bool:
        return self._ignore.should_ignore(Path(path), self._base_path)

    def _dispatch(self, callback, path: str) -> None:  # type: ignore[no-untyped-def]
        try:
            callback(path)
        except Exception:
            logger.exception("Sync handler failed for %s", path)

    def _removed(self, path: str, is_directory: bool) -> None:
        self._drop_pending(path)
        if self._ignored(path):
            return
        if is_directory:
            self._dispatch(self._handler.on_folder_removed, path)
        else:
            self._dispatch(self._handler.on_file_removed, path)

    def _added(self, path: str, is_directory: bool) -> None:
        if self._ignored(path):
            return
        if is_directory:
            self._dispatch(self._handler.on_folder_added, path)
        else:
            self._queue_file(path, created=True)

    def on_created(self, event: FileSystemEvent) -> None:
        if isinstance(event, (FileCreatedEvent, DirCreatedEvent)):
            self._added(_decode(event.src_path), event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        # Folder mtime changes carry no content change
        if isinstance(event, FileModifiedEvent):
            path = _decode(event.src_path)
            if not self._ignored(path):
                self._queue_file(path, created=False)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if isinstance(event, (FileDeletedEvent, DirDeletedEvent)):
            self._removed(_decode(event.src_path), event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        if getattr(event, "is_synthetic", False):
            return
        if isinstance(event, (FileMovedEvent, DirMovedEvent)):
            src = _decode(event.src_path)
            dest = _decode(event.dest_path)
            logger.debug("Move %s -> %s", src, dest)
            self._removed(src, event.is_directory)
            self._added(dest, event.is_directory)


class FileWatcher:
    """Watches a sync folder and forwards changes to a SyncEventHandler."""

    def __init__(
        self,
        watch_path: str | Path,
        handler: SyncEventHandler,
        ignore_patterns: IgnorePatterns | None = None,
        debounce_s: float = 0.25,
    ) -> None:
        """Initialize the file watcher.

        Args:
            watch_path: Directory to watch.
            handler: Receiver of the translated events.
            ignore_patterns: Exclusions (defaults only if omitted).
            debounce_s: Coalescing window for file adds and changes.

        Raises:
            ValueError: If watch_path is not a directory.
        """
        self._watch_path = Path(watch_path).resolve()
        if not self._watch_path.is_dir():
            raise ValueError(f"Watch path must be a directory: {watch_path}")

        self._event_handler = DebouncedEventHandler(
            base_path=self._watch_path,
            handler=handler,
            debounce_s=debounce_s,
            ignore_patterns=ignore_patterns,
        )
        self._observer: BaseObserver = Observer()
        self._running = False

    @property
    def watch_path(self) -> Path:
        return self._watch_path

    @property
    def event_handler(self) -> DebouncedEventHandler:
        return self._event_handler

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start watching for changes."""
        if self._running:
            return
        self._observer.schedule(self._event_handler, str(self._watch_path), recursive=True)
        self._observer.start()
        self._running = True
        logger.info("Watching %s", self._watch_path)

    def stop(self) -> None:
        """Stop watching for changes."""
        if not self._running:
            return
        self._event_handler.stop()
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False

    def __enter__(self) -> FileWatcher:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
