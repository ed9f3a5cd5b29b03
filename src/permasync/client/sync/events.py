"""Sync event stream.

This module provides:
- UploadProgressEvent, DownloadProgressEvent: Transfer progress
- FolderOperationEvent: Classified folder rename / move / delete / new
- FileStatusEvent: Sync status change of a remote file
- EventEmitter: Thread-safe publish/subscribe of these events

Listeners are called synchronously on the thread that emits the event.
A failing listener is logged and does not affect the others.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Union

from permasync.core.types import FolderOperationType, SyncStatus, TransferStatus

logger = logging.getLogger(__name__)


@dataclass
class UploadProgressEvent:
    upload_id: str
    mapping_id: str | None
    local_path: str
    file_name: str
    status: TransferStatus
    progress: float
    error: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class DownloadProgressEvent:
    download_id: str
    mapping_id: str | None
    file_id: str
    file_name: str
    status: TransferStatus
    progress: float
    error: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class FolderOperationEvent:
    mapping_id: str | None
    operation: FolderOperationType
    old_path: str | None
    new_path: str | None
    reason: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass
class FileStatusEvent:
    mapping_id: str | None
    file_id: str | None
    local_path: str | None
    status: SyncStatus
    timestamp: float = field(default_factory=time.time)


SyncEvent = Union[
    UploadProgressEvent, DownloadProgressEvent, FolderOperationEvent, FileStatusEvent
]
Listener = Callable[[SyncEvent], None]


class EventEmitter:
    """Publish/subscribe hub for sync events.

    Example:
        >>> emitter = EventEmitter()
        >>> unsubscribe = emitter.subscribe(print, UploadProgressEvent)
        >>> emitter.emit(event)
        >>> unsubscribe()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[tuple[Listener, tuple[type, ...]]] = []

    def subscribe(self, listener: Listener, *event_types: type) -> Callable[[], None]:
        """Register a listener.

        Args:
            listener: Called with each matching event.
            event_types: Event classes to receive (all if omitted).

        Returns:
            Function removing the listener.
        """
        entry = (listener, event_types)
        with self._lock:
            self._listeners.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return unsubscribe

    def emit(self, event: SyncEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener, event_types in listeners:
            if event_types and not isinstance(event, event_types):
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", type(event).__name__)

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()
