"""Folder rename / move / delete detection.

This module provides:
- FolderOperationDetector: Pairs folder delete and add events
- children_similarity: Overlap score of two child name lists

Watchers report a folder rename or move as a delete followed by an add.
A delete is therefore held for a short detection window; an add arriving
within the window is compared with every pending delete and, when it looks
like the same folder, the pair is classified as rename, move or
rename_and_move instead of delete + new.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from permasync.client.sync.types import FolderSnapshot, OperationDetection
from permasync.core.config import DetectorConfig
from permasync.core.types import FolderOperationType

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[], None]
OperationCallback = Callable[[OperationDetection], None]


@dataclass
class _PendingDelete:
    snapshot: FolderSnapshot
    timer: threading.Timer
    on_confirm: ConfirmCallback | None


def children_similarity(old: tuple[str, ...] | list[str], new: tuple[str, ...] | list[str]) -> int:
    """Dice coefficient of two child name lists, as a rounded percentage.

    Two empty lists are identical (100); one empty list matches nothing (0).
    """
    if not old and not new:
        return 100
    if not old or not new:
        return 0
    old_set, new_set = set(old), set(new)
    score = 2 * len(old_set & new_set) / (len(old_set) + len(new_set)) * 100
    return math.floor(score + 0.5)


class FolderOperationDetector:
    """Classifies folder add/delete events.

    Example:
        >>> detector = FolderOperationDetector()
        >>> detector.start()
        >>> detector.on_folder_delete("/sync/Docs", on_confirm=remove_docs)
        >>> detector.on_folder_add("/sync/Documents").type
        <FolderOperationType.RENAME: 'rename'>
        >>> detector.close()
    """

    def __init__(
        self,
        config: DetectorConfig | None = None,
        on_operation: OperationCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the detector.

        Args:
            config: Detection window, cache TTL and sweep settings.
            on_operation: Called with every classification.
            clock: Time source for snapshots and the operation cache.
        """
        self.config = config or DetectorConfig()
        self._on_operation = on_operation
        self._clock = clock
        self._lock = threading.Lock()
        self.pending_deletes: dict[str, _PendingDelete] = {}
        self.recent_operations: dict[str, tuple[OperationDetection, float]] = {}
        self._stop_event = threading.Event()
        self._sweep_thread: threading.Thread | None = None

    # === Lifecycle ===

    def start(self) -> None:
        """Start the periodic stale pending-delete sweep."""
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            return
        self._stop_event.clear()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop, daemon=True, name="folder-detector-sweep"
        )
        self._sweep_thread.start()

    def close(self) -> None:
        """Cancel all timers and stop the sweep thread."""
        self._stop_event.set()
        self.clear()
        if self._sweep_thread is not None:
            self._sweep_thread.join(timeout=5.0)
            self._sweep_thread = None

    def clear(self) -> None:
        """Drop pending deletes (without confirming them) and cached results."""
        with self._lock:
            for pending in self.pending_deletes.values():
                pending.timer.cancel()
            self.pending_deletes.clear()
            self.recent_operations.clear()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.config.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Folder detector sweep failed")

    def sweep(self) -> None:
        """Force-confirm pending deletes older than twice the detection window."""
        now = self._clock()
        max_age = self.config.detection_window * 2
        with self._lock:
            stale = [
                (path, pending)
                for path, pending in self.pending_deletes.items()
                if now - pending.snapshot.timestamp > max_age
            ]
        for path, pending in stale:
            logger.warning("Confirming stale pending delete for %s", path)
            self._confirm_delete(path, pending)

    # === Snapshots ===

    def create_snapshot(
        self, folder_path: str, remote_folder_id: str | None = None
    ) -> FolderSnapshot:
        """Summarize the immediate, non-hidden content of a folder.

        Raises:
            NotADirectoryError: If the path is not a directory.
            OSError: If the folder cannot be listed.
        """
        if not os.path.isdir(folder_path):
            raise NotADirectoryError(f"Path is not a directory: {folder_path}")

        children: list[str] = []
        parts: list[str] = []
        total_size = 0
        file_count = 0
        with os.scandir(folder_path) as entries:
            for entry in entries:
                if entry.name.startswith("."):
                    continue
                children.append(entry.name)
                if entry.is_file():
                    size = entry.stat().st_size
                    file_count += 1
                    total_size += size
                    parts.append(f"{entry.name}:{size}")
                elif entry.is_dir():
                    parts.append(f"dir:{entry.name}")

        content_hash = hashlib.sha256("|".join(sorted(parts)).encode("utf-8")).hexdigest()
        return FolderSnapshot(
            path=folder_path,
            name=os.path.basename(folder_path),
            parent_path=os.path.dirname(folder_path),
            timestamp=self._clock(),
            file_count=file_count,
            immediate_children=tuple(sorted(children)),
            total_size=total_size,
            content_hash=content_hash,
            remote_folder_id=remote_folder_id,
        )

    # === Events ===

    def on_folder_delete(
        self,
        folder_path: str,
        remote_folder_id: str | None = None,
        on_confirm: ConfirmCallback | None = None,
        snapshot: FolderSnapshot | None = None,
    ) -> None:
        """Hold a folder delete for the detection window.

        Args:
            folder_path: Path of the deleted folder.
            remote_folder_id: Remote id of the folder, if known.
            on_confirm: Called once if the delete is confirmed.
            snapshot: Last known snapshot of the folder. The folder can no
                longer be read, so without it only its identity is known.
        """
        logger.debug("Folder delete detected: %s", folder_path)
        now = self._clock()
        if snapshot is None:
            snapshot = FolderSnapshot(
                path=folder_path,
                name=os.path.basename(folder_path),
                parent_path=os.path.dirname(folder_path),
                timestamp=now,
                remote_folder_id=remote_folder_id,
            )
        else:
            snapshot = replace(
                snapshot,
                timestamp=now,
                remote_folder_id=remote_folder_id or snapshot.remote_folder_id,
            )

        timer = threading.Timer(self.config.detection_window, self._on_timer, args=(folder_path,))
        timer.daemon = True
        pending = _PendingDelete(snapshot=snapshot, timer=timer, on_confirm=on_confirm)

        with self._lock:
            existing = self.pending_deletes.pop(folder_path, None)
            if existing is not None:
                existing.timer.cancel()
            self.pending_deletes[folder_path] = pending
            timer.start()

    def on_folder_add(self, folder_path: str) -> OperationDetection:
        """Classify a folder add against the pending deletes.

        The first pending delete (in the order they were reported) that
        matches wins; its confirmation is cancelled.

        Raises:
            OSError: If the new folder cannot be read.
        """
        logger.debug("Folder add detected: %s", folder_path)
        new_snapshot = self.create_snapshot(folder_path)

        detection: OperationDetection | None = None
        with self._lock:
            for deleted_path, pending in list(self.pending_deletes.items()):
                candidate = self.detect_operation(pending.snapshot, new_snapshot)
                if candidate.type is not FolderOperationType.NEW:
                    pending.timer.cancel()
                    del self.pending_deletes[deleted_path]
                    detection = candidate
                    break
            if detection is None:
                detection = OperationDetection(
                    type=FolderOperationType.NEW,
                    new_path=folder_path,
                    reason="No matching deleted folder found within detection window",
                )
            self._cache(folder_path, detection)

        logger.info("Classified folder add %s as %s", folder_path, detection.type.value)
        self._notify(detection)
        return detection

    def detect_operation(
        self, old: FolderSnapshot, new: FolderSnapshot
    ) -> OperationDetection:
        """Compare a deleted folder's snapshot with an added folder's."""
        same_parent = old.parent_path == new.parent_path
        same_name = old.name == new.name

        if same_parent and not same_name:
            return OperationDetection(
                type=FolderOperationType.RENAME,
                old_path=old.path,
                new_path=new.path,
                remote_folder_id=old.remote_folder_id,
                reason=f"Folder renamed from '{old.name}' to '{new.name}' "
                       "in same parent directory",
            )
        if not same_parent and same_name:
            return OperationDetection(
                type=FolderOperationType.MOVE,
                old_path=old.path,
                new_path=new.path,
                remote_folder_id=old.remote_folder_id,
                reason=f"Folder '{old.name}' moved from '{old.parent_path}' "
                       f"to '{new.parent_path}'",
            )
        if not same_parent and not same_name:
            similarity = children_similarity(old.immediate_children, new.immediate_children)
            if (
                old.content_hash == new.content_hash
                or similarity > self.config.similarity_threshold
            ):
                return OperationDetection(
                    type=FolderOperationType.RENAME_AND_MOVE,
                    old_path=old.path,
                    new_path=new.path,
                    remote_folder_id=old.remote_folder_id,
                    reason=f"Folder renamed from '{old.name}' to '{new.name}' "
                           f"and moved to '{new.parent_path}'",
                    similarity=similarity,
                )

        return OperationDetection(
            type=FolderOperationType.NEW,
            new_path=new.path,
            reason="No significant similarity found with deleted folder",
        )

    def get_recent_operation(self, path: str) -> OperationDetection | None:
        """Get the classification made for a path within the cache TTL."""
        with self._lock:
            entry = self.recent_operations.get(path)
            if entry is None:
                return None
            detection, expires_at = entry
            if self._clock() >= expires_at:
                del self.recent_operations[path]
                return None
            return detection

    # === Internals ===

    def _on_timer(self, folder_path: str) -> None:
        with self._lock:
            pending = self.pending_deletes.get(folder_path)
        if pending is not None:
            self._confirm_delete(folder_path, pending)

    def _confirm_delete(self, folder_path: str, pending: _PendingDelete) -> None:
        """Confirm a pending delete; a no-op if it was already resolved."""
        with self._lock:
            if self.pending_deletes.get(folder_path) is not pending:
                return
            del self.pending_deletes[folder_path]
            pending.timer.cancel()
            detection = OperationDetection(
                type=FolderOperationType.DELETE,
                old_path=folder_path,
                remote_folder_id=pending.snapshot.remote_folder_id,
                reason="Folder deleted and not recreated within "
                       f"{self.config.detection_window}s window",
            )
            self._cache(folder_path, detection)

        logger.info("Confirmed folder delete: %s", folder_path)
        self._notify(detection)
        if pending.on_confirm is not None:
            try:
                pending.on_confirm()
            except Exception:
                logger.exception("Delete confirmation failed for %s", folder_path)

    def _cache(self, path: str, detection: OperationDetection) -> None:
        # Caller holds the lock
        now = self._clock()
        expired = [p for p, (_, exp) in self.recent_operations.items() if now >= exp]
        for p in expired:
            del self.recent_operations[p]
        self.recent_operations[path] = (detection, now + self.config.operation_cache_ttl)

    def _notify(self, detection: OperationDetection) -> None:
        if self._on_operation is None:
            return
        try:
            self._on_operation(detection)
        except Exception:
            logger.exception("Folder operation listener failed")
