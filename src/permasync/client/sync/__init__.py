"""Drive synchronization.

Architecture:
    FileWatcher → DriveSync → UploadQueueManager / DownloadQueueManager → RemoteStorage

Components:
- **FileWatcher**: Translates watchdog events into SyncEventHandler calls
- **DriveSync**: Handles the local events of one drive mapping
- **FolderOperationDetector**: Tells folder renames and moves from delete + add
- **UploadQueueManager**: Folder-first, single-flight upload queue with retries
- **DownloadQueueManager**: Priority-ordered, single-flight download queue
- **FileStabilityVerifier**: Waits for files still being written
- **VersionManager**: Version lineage of uploaded files
- **SyncEngine**: One DriveSync per active mapping

All public symbols are re-exported here.
"""

from permasync.client.sync.download_queue import (
    DownloadQueueManager,
    calculate_download_priority,
)
from permasync.client.sync.engine import DriveSync, RecentlyDownloaded, SyncEngine
from permasync.client.sync.events import (
    DownloadProgressEvent,
    EventEmitter,
    FileStatusEvent,
    FolderOperationEvent,
    SyncEvent,
    UploadProgressEvent,
)
from permasync.client.sync.folder_detector import (
    FolderOperationDetector,
    children_similarity,
)
from permasync.client.sync.ignore import IgnorePatterns, SyncFilter
from permasync.client.sync.queue import UploadQueueManager, sort_uploads
from permasync.client.sync.retry import ErrorClassifier, RetryPolicy
from permasync.client.sync.stability import FileStabilityVerifier, calculate_hash
from permasync.client.sync.types import (
    DownloadItem,
    FolderSnapshot,
    OperationDetection,
    ProgressCallback,
    RemoteStorage,
    RemoteUploadResult,
    SyncCancelledError,
    SyncError,
    SyncErrorCode,
    SyncEventHandler,
    UploadItem,
)
from permasync.client.sync.versions import VersionManager
from permasync.client.sync.watcher import FileWatcher

__all__ = [
    # Engine
    "DriveSync",
    "RecentlyDownloaded",
    "SyncEngine",
    # Queues
    "DownloadQueueManager",
    "UploadQueueManager",
    "calculate_download_priority",
    "sort_uploads",
    # Detection and verification
    "FileStabilityVerifier",
    "FolderOperationDetector",
    "VersionManager",
    "calculate_hash",
    "children_similarity",
    # Errors and retries
    "ErrorClassifier",
    "RetryPolicy",
    "SyncCancelledError",
    "SyncError",
    "SyncErrorCode",
    # Events
    "DownloadProgressEvent",
    "EventEmitter",
    "FileStatusEvent",
    "FolderOperationEvent",
    "SyncEvent",
    "UploadProgressEvent",
    # Watching
    "FileWatcher",
    "IgnorePatterns",
    "SyncFilter",
    # Types
    "DownloadItem",
    "FolderSnapshot",
    "OperationDetection",
    "ProgressCallback",
    "RemoteStorage",
    "RemoteUploadResult",
    "SyncEventHandler",
    "UploadItem",
]
