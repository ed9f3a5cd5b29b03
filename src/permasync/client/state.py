"""Persistent sync state for permasync.

This module provides:
- SyncStateStore: SQLite-backed store for drive mappings, the remote
  metadata cache, transfer history, folder topology and version lineage
- StateStoreError: raised when a statement fails

Architecture:
    One database file per profile, one connection per store. Every
    statement runs under the store's lock so the engine threads, the
    queues and the query surface can share a single instance.

    The schema is versioned. Opening a database creates missing tables
    in their latest layout, then applies the column migrations above the
    installed version and only then creates indexes, so that indexes on
    migrated columns never reference a column that does not exist yet.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any

from permasync.client.records import (
    DownloadRecord,
    DriveMapping,
    FileMetadataRecord,
    FileOperation,
    FileVersion,
    FolderOperationRecord,
    FolderStructureEntry,
    ProcessedFile,
    UploadRecord,
)
from permasync.core.types import SyncStatus, SyncPreference, TransferStatus

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3

# Column migrations per schema version, applied in order
MIGRATIONS: dict[int, list[str]] = {
    2: [
        "ALTER TABLE uploads ADD COLUMN mapping_id TEXT "
        "REFERENCES drive_mappings(id) ON DELETE CASCADE",
        "ALTER TABLE downloads ADD COLUMN mapping_id TEXT "
        "REFERENCES drive_mappings(id) ON DELETE CASCADE",
        "ALTER TABLE file_versions ADD COLUMN mapping_id TEXT "
        "REFERENCES drive_mappings(id) ON DELETE CASCADE",
        "ALTER TABLE file_operations ADD COLUMN mapping_id TEXT "
        "REFERENCES drive_mappings(id) ON DELETE CASCADE",
    ],
    3: [
        "ALTER TABLE drive_metadata_cache ADD COLUMN sync_preference TEXT DEFAULT 'auto'",
        "ALTER TABLE drive_metadata_cache ADD COLUMN download_priority INTEGER DEFAULT 0",
        "ALTER TABLE drive_metadata_cache ADD COLUMN last_error TEXT",
        "ALTER TABLE drive_mappings ADD COLUMN root_folder_id TEXT",
        "ALTER TABLE drive_mappings ADD COLUMN last_metadata_sync_at REAL",
        "ALTER TABLE downloads ADD COLUMN priority INTEGER DEFAULT 0",
        "ALTER TABLE downloads ADD COLUMN is_cancelled INTEGER DEFAULT 0",
        "ALTER TABLE uploads ADD COLUMN error_code TEXT",
    ],
}

_TABLES = (
    "drive_mappings",
    "drive_metadata_cache",
    "uploads",
    "downloads",
    "processed_files",
    "folder_structure",
    "folder_operations",
    "file_versions",
    "file_operations",
)

_MAPPING_FIELDS = {
    "drive_name",
    "local_folder_path",
    "root_folder_id",
    "is_active",
    "last_sync_time",
    "last_metadata_sync_at",
    "sync_settings",
}
_UPLOAD_FIELDS = {
    "status",
    "progress",
    "upload_method",
    "data_tx_id",
    "metadata_tx_id",
    "file_id",
    "error",
    "error_code",
    "completed_at",
}
_DOWNLOAD_FIELDS = {
    "status",
    "progress",
    "priority",
    "is_cancelled",
    "error",
    "completed_at",
    "local_path",
}

_ACTIVE_DOWNLOAD_STATUSES = (
    TransferStatus.PENDING.value,
    TransferStatus.DOWNLOADING.value,
)


class StateStoreError(Exception):
    """A statement against the state database failed."""


def _db_value(value: Any) -> Any:
    """Convert a Python value to its column representation."""
    if isinstance(value, bool):
        return int(value)
    return getattr(value, "value", value)


def _under(path: str, root: str) -> bool:
    """Check if path equals root or lies below it."""
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


class SyncStateStore:
    """SQLite-backed persistent state shared by all sync components."""

    def __init__(self, db_path: Path | str) -> None:
        """Open (and create or migrate) the state database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._db_path = Path(db_path)
        self._open()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _open(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot open {self._db_path}: {e}") from e

        with self._lock:
            self._conn = conn
            legacy = self._table_exists("uploads")
            self._create_tables()
            self._migrate(legacy)
            self._create_indexes()
        logger.debug("Opened state database %s", self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def switch_database(self, db_path: Path | str) -> None:
        """Close the current database and open another one.

        Used when the active profile changes.
        """
        with self._lock:
            self.close()
            self._db_path = Path(db_path)
            self._open()
        logger.info("Switched state database to %s", self._db_path)

    # === Schema ===

    def _table_exists(self, name: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        ).fetchone()
        return row is not None

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS drive_mappings (
                id TEXT PRIMARY KEY,
                remote_drive_id TEXT NOT NULL,
                drive_name TEXT NOT NULL,
                privacy TEXT NOT NULL DEFAULT 'private',
                local_folder_path TEXT NOT NULL,
                root_folder_id TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                last_sync_time REAL,
                last_metadata_sync_at REAL,
                exclude_patterns TEXT,
                max_file_size INTEGER,
                sync_direction TEXT DEFAULT 'bidirectional',
                upload_priority INTEGER DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                UNIQUE (remote_drive_id, local_folder_path)
            );

            CREATE TABLE IF NOT EXISTS drive_metadata_cache (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_id TEXT NOT NULL UNIQUE,
                mapping_id TEXT NOT NULL
                    REFERENCES drive_mappings(id) ON DELETE CASCADE,
                parent_folder_id TEXT,
                name TEXT NOT NULL,
                path TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'file',
                size INTEGER,
                last_modified_date REAL,
                data_tx_id TEXT,
                metadata_tx_id TEXT,
                content_type TEXT,
                file_hash TEXT,
                local_path TEXT,
                local_file_exists INTEGER NOT NULL DEFAULT 0,
                sync_status TEXT NOT NULL DEFAULT 'pending',
                sync_preference TEXT DEFAULT 'auto',
                download_priority INTEGER DEFAULT 0,
                last_error TEXT,
                last_synced_at REAL,
                updated_at REAL
            );

            CREATE TABLE IF NOT EXISTS uploads (
                id TEXT PRIMARY KEY,
                mapping_id TEXT REFERENCES drive_mappings(id) ON DELETE CASCADE,
                local_path TEXT NOT NULL,
                file_name TEXT NOT NULL,
                file_size INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                progress REAL DEFAULT 0,
                upload_method TEXT,
                data_tx_id TEXT,
                metadata_tx_id TEXT,
                file_id TEXT,
                error TEXT,
                error_code TEXT,
                created_at REAL NOT NULL,
                completed_at REAL
            );

            CREATE TABLE IF NOT EXISTS downloads (
                id TEXT PRIMARY KEY,
                mapping_id TEXT REFERENCES drive_mappings(id) ON DELETE CASCADE,
                file_id TEXT NOT NULL,
                file_name TEXT NOT NULL,
                local_path TEXT NOT NULL,
                file_size INTEGER NOT NULL DEFAULT 0,
                data_tx_id TEXT,
                metadata_tx_id TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                progress REAL DEFAULT 0,
                priority INTEGER DEFAULT 0,
                is_cancelled INTEGER DEFAULT 0,
                error TEXT,
                created_at REAL NOT NULL,
                completed_at REAL
            );

            CREATE TABLE IF NOT EXISTS processed_files (
                file_hash TEXT NOT NULL,
                mapping_id TEXT NOT NULL
                    REFERENCES drive_mappings(id) ON DELETE CASCADE,
                file_name TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                local_path TEXT NOT NULL,
                source TEXT NOT NULL,
                remote_id TEXT,
                processed_at REAL NOT NULL,
                PRIMARY KEY (file_hash, mapping_id)
            );

            CREATE TABLE IF NOT EXISTS folder_structure (
                id TEXT PRIMARY KEY,
                mapping_id TEXT NOT NULL
                    REFERENCES drive_mappings(id) ON DELETE CASCADE,
                folder_path TEXT NOT NULL,
                relative_path TEXT NOT NULL,
                parent_path TEXT,
                remote_folder_id TEXT,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                UNIQUE (folder_path, mapping_id)
            );

            CREATE TABLE IF NOT EXISTS folder_operations (
                id TEXT PRIMARY KEY,
                mapping_id TEXT NOT NULL
                    REFERENCES drive_mappings(id) ON DELETE CASCADE,
                operation_type TEXT NOT NULL,
                old_path TEXT,
                new_path TEXT,
                remote_folder_id TEXT,
                reason TEXT,
                detected_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS file_versions (
                id TEXT PRIMARY KEY,
                mapping_id TEXT REFERENCES drive_mappings(id) ON DELETE CASCADE,
                file_hash TEXT NOT NULL,
                file_name TEXT NOT NULL,
                file_path TEXT NOT NULL,
                relative_path TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                data_tx_id TEXT,
                metadata_tx_id TEXT,
                version INTEGER NOT NULL,
                parent_version TEXT,
                change_type TEXT NOT NULL,
                upload_method TEXT,
                is_latest INTEGER NOT NULL DEFAULT 1,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS file_operations (
                id TEXT PRIMARY KEY,
                mapping_id TEXT REFERENCES drive_mappings(id) ON DELETE CASCADE,
                file_hash TEXT NOT NULL,
                operation TEXT NOT NULL,
                from_path TEXT,
                to_path TEXT,
                metadata TEXT,
                timestamp REAL NOT NULL
            );
        """)

    def _create_indexes(self) -> None:
        self._conn.executescript("""
            CREATE INDEX IF NOT EXISTS idx_metadata_mapping_status
                ON drive_metadata_cache(mapping_id, sync_status);
            CREATE INDEX IF NOT EXISTS idx_metadata_local_path
                ON drive_metadata_cache(local_path);
            CREATE INDEX IF NOT EXISTS idx_uploads_status ON uploads(status);
            CREATE INDEX IF NOT EXISTS idx_uploads_mapping ON uploads(mapping_id);
            CREATE INDEX IF NOT EXISTS idx_downloads_file ON downloads(file_id);
            CREATE INDEX IF NOT EXISTS idx_downloads_mapping ON downloads(mapping_id);
            CREATE INDEX IF NOT EXISTS idx_versions_path
                ON file_versions(file_path, is_latest);
            CREATE INDEX IF NOT EXISTS idx_versions_hash ON file_versions(file_hash);
            CREATE INDEX IF NOT EXISTS idx_operations_hash
                ON file_operations(file_hash);
            CREATE INDEX IF NOT EXISTS idx_folder_ops_mapping
                ON folder_operations(mapping_id);
        """)

    def _installed_version(self, legacy: bool) -> int:
        row = self._conn.execute("SELECT MAX(version) AS v FROM schema_version").fetchone()
        if row["v"] is not None:
            return row["v"]
        # Databases created before versioning have uploads but no version rows
        return 1 if legacy else 0

    def _migrate(self, legacy: bool) -> None:
        """Apply column migrations above the installed schema version."""
        installed = self._installed_version(legacy)
        now = time.time()
        if installed == 0:
            self._conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (SCHEMA_VERSION, now),
            )
            return

        if installed == 1:
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (1, ?)",
                (now,),
            )

        for version in sorted(MIGRATIONS):
            if version <= installed:
                continue
            for statement in MIGRATIONS[version]:
                try:
                    self._conn.execute(statement)
                except sqlite3.OperationalError as e:
                    if "duplicate column name" not in str(e):
                        raise StateStoreError(
                            f"Migration to version {version} failed: {e}"
                        ) from e
            self._conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, now),
            )
            logger.info("Migrated state database to schema version %d", version)

    def get_schema_version(self) -> int:
        """Get the installed schema version."""
        with self._lock:
            row = self._conn.execute(
                "SELECT MAX(version) AS v FROM schema_version"
            ).fetchone()
        return row["v"] or 0

    def get_database_info(self) -> dict[str, Any]:
        """Summarize the database: path, schema version and row counts."""
        with self._lock:
            counts = {
                table: self._conn.execute(
                    f"SELECT COUNT(*) AS n FROM {table}"
                ).fetchone()["n"]
                for table in _TABLES
            }
        return {
            "path": str(self._db_path),
            "schema_version": self.get_schema_version(),
            "tables": counts,
        }

    # === Statement helpers ===

    def _write(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Execute a write statement and return the affected row count."""
        with self._lock:
            try:
                return self._conn.execute(sql, tuple(params)).rowcount
            except sqlite3.Error as e:
                raise StateStoreError(str(e)) from e

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several statements atomically."""
        with self._lock:
            try:
                self._conn.execute("BEGIN")
                try:
                    yield self._conn
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise StateStoreError(str(e)) from e

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchone()

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def _update(
        self,
        table: str,
        key: str,
        key_value: Any,
        allowed: set[str],
        fields: dict[str, Any],
    ) -> int:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update {table} fields: {sorted(unknown)}")
        if not fields:
            return 0
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_db_value(v) for v in fields.values()]
        return self._write(
            f"UPDATE {table} SET {assignments} WHERE {key} = ?",
            [*values, key_value],
        )

    # === Drive mappings ===

    def add_drive_mapping(self, mapping: DriveMapping) -> DriveMapping:
        """Insert a drive mapping.

        Raises:
            StateStoreError: If the drive is already mapped to this folder.
        """
        settings = mapping.sync_settings
        self._write(
            """
            INSERT INTO drive_mappings (
                id, remote_drive_id, drive_name, privacy, local_folder_path,
                root_folder_id, is_active, last_sync_time, last_metadata_sync_at,
                exclude_patterns, max_file_size, sync_direction, upload_priority,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                mapping.id,
                mapping.remote_drive_id,
                mapping.drive_name,
                mapping.privacy.value,
                mapping.local_folder_path,
                mapping.root_folder_id,
                int(mapping.is_active),
                mapping.last_sync_time,
                mapping.last_metadata_sync_at,
                json.dumps(settings.exclude_patterns),
                settings.max_file_size,
                settings.sync_direction.value,
                settings.upload_priority,
                mapping.created_at,
                mapping.updated_at,
            ),
        )
        logger.info(
            "Added drive mapping %s: %s -> %s",
            mapping.id, mapping.drive_name, mapping.local_folder_path,
        )
        return mapping

    def get_drive_mapping(self, mapping_id: str) -> DriveMapping | None:
        row = self._fetchone("SELECT * FROM drive_mappings WHERE id = ?", (mapping_id,))
        return DriveMapping.from_row(row) if row else None

    def get_drive_mapping_by_drive_id(self, remote_drive_id: str) -> DriveMapping | None:
        row = self._fetchone(
            "SELECT * FROM drive_mappings WHERE remote_drive_id = ? "
            "ORDER BY created_at LIMIT 1",
            (remote_drive_id,),
        )
        return DriveMapping.from_row(row) if row else None

    def list_drive_mappings(self) -> list[DriveMapping]:
        rows = self._fetchall("SELECT * FROM drive_mappings ORDER BY created_at")
        return [DriveMapping.from_row(row) for row in rows]

    def list_active_drive_mappings(self) -> list[DriveMapping]:
        rows = self._fetchall(
            "SELECT * FROM drive_mappings WHERE is_active = 1 ORDER BY created_at"
        )
        return [DriveMapping.from_row(row) for row in rows]

    def update_drive_mapping(self, mapping_id: str, **fields: Any) -> None:
        """Update drive mapping fields.

        ``sync_settings`` is expanded into its columns.
        """
        settings = fields.pop("sync_settings", None)
        unknown = set(fields) - _MAPPING_FIELDS
        if unknown:
            raise ValueError(f"Cannot update drive_mappings fields: {sorted(unknown)}")
        if settings is not None:
            fields.update(
                exclude_patterns=json.dumps(settings.exclude_patterns),
                max_file_size=settings.max_file_size,
                sync_direction=settings.sync_direction,
                upload_priority=settings.upload_priority,
            )
        fields["updated_at"] = time.time()
        self._update(
            "drive_mappings", "id", mapping_id,
            _MAPPING_FIELDS | {"exclude_patterns", "max_file_size",
                               "sync_direction", "upload_priority", "updated_at"},
            fields,
        )

    def remove_drive_mapping(self, mapping_id: str) -> bool:
        """Remove a mapping and, by cascade, everything recorded for it."""
        removed = self._write("DELETE FROM drive_mappings WHERE id = ?", (mapping_id,))
        if removed:
            logger.info("Removed drive mapping %s", mapping_id)
        return removed > 0

    # === Drive metadata cache ===

    _UPSERT_METADATA = """
        INSERT INTO drive_metadata_cache (
            file_id, mapping_id, parent_folder_id, name, path, type, size,
            last_modified_date, data_tx_id, metadata_tx_id, content_type,
            file_hash, local_path, local_file_exists, sync_status,
            sync_preference, download_priority, last_error, last_synced_at,
            updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(file_id) DO UPDATE SET
            mapping_id = excluded.mapping_id,
            parent_folder_id = excluded.parent_folder_id,
            name = excluded.name,
            path = excluded.path,
            type = excluded.type,
            size = excluded.size,
            last_modified_date = excluded.last_modified_date,
            data_tx_id = excluded.data_tx_id,
            metadata_tx_id = excluded.metadata_tx_id,
            content_type = excluded.content_type,
            file_hash = COALESCE(excluded.file_hash, drive_metadata_cache.file_hash),
            local_path = COALESCE(excluded.local_path, drive_metadata_cache.local_path),
            local_file_exists = CASE WHEN excluded.local_path IS NULL
                THEN drive_metadata_cache.local_file_exists
                ELSE excluded.local_file_exists END,
            sync_status = CASE WHEN excluded.sync_status = 'pending'
                THEN drive_metadata_cache.sync_status
                ELSE excluded.sync_status END,
            sync_preference = CASE WHEN excluded.sync_preference = 'auto'
                THEN drive_metadata_cache.sync_preference
                ELSE excluded.sync_preference END,
            download_priority = CASE WHEN excluded.download_priority = 0
                THEN drive_metadata_cache.download_priority
                ELSE excluded.download_priority END,
            last_error = CASE WHEN excluded.sync_status = 'pending'
                THEN COALESCE(excluded.last_error, drive_metadata_cache.last_error)
                ELSE excluded.last_error END,
            last_synced_at = COALESCE(excluded.last_synced_at, drive_metadata_cache.last_synced_at),
            updated_at = excluded.updated_at
    """

    @staticmethod
    def _metadata_params(record: FileMetadataRecord) -> tuple[Any, ...]:
        return (
            record.file_id,
            record.mapping_id,
            record.parent_folder_id,
            record.name,
            record.path,
            record.type.value,
            record.size,
            record.last_modified_date,
            record.remote_data_tx_id,
            record.remote_metadata_tx_id,
            record.content_type,
            record.content_hash,
            record.local_path,
            int(record.local_file_exists),
            record.sync_status.value,
            record.sync_preference.value,
            record.download_priority,
            record.last_error,
            record.last_synced_at,
            time.time(),
        )

    def upsert_file_metadata(self, record: FileMetadataRecord) -> None:
        """Insert or update one metadata entry, keeping sticky fields.

        On conflict a stored sync_status survives an incoming ``pending``,
        a stored sync_preference survives ``auto`` and a stored
        download_priority survives ``0``.
        """
        self._write(self._UPSERT_METADATA, self._metadata_params(record))

    def store_drive_metadata(self, records: Iterable[FileMetadataRecord]) -> int:
        """Upsert a batch of metadata entries in one transaction."""
        count = 0
        with self._transaction() as conn:
            for record in records:
                conn.execute(self._UPSERT_METADATA, self._metadata_params(record))
                count += 1
        logger.debug("Stored %d metadata entries", count)
        return count

    def get_file_metadata(self, file_id: str) -> FileMetadataRecord | None:
        row = self._fetchone(
            "SELECT * FROM drive_metadata_cache WHERE file_id = ?", (file_id,)
        )
        return FileMetadataRecord.from_row(row) if row else None

    def get_file_metadata_by_path(self, local_path: str) -> FileMetadataRecord | None:
        """Get the metadata entry mapped to a local path."""
        row = self._fetchone(
            "SELECT * FROM drive_metadata_cache WHERE local_path = ? "
            "ORDER BY updated_at DESC LIMIT 1",
            (local_path,),
        )
        return FileMetadataRecord.from_row(row) if row else None

    def list_file_metadata(self, mapping_id: str) -> list[FileMetadataRecord]:
        rows = self._fetchall(
            "SELECT * FROM drive_metadata_cache WHERE mapping_id = ? ORDER BY path",
            (mapping_id,),
        )
        return [FileMetadataRecord.from_row(row) for row in rows]

    def list_files_by_status(
        self, mapping_id: str, status: SyncStatus
    ) -> list[FileMetadataRecord]:
        return list(self.iter_files_by_status(mapping_id, status))

    def iter_files_by_status(
        self,
        mapping_id: str,
        status: SyncStatus,
        batch_size: int = 500,
    ) -> Iterator[FileMetadataRecord]:
        """Stream metadata entries with a given status.

        Rows are read in batches of ``batch_size``; the lock is only held
        while a batch is fetched.
        """
        last_id = 0
        while True:
            rows = self._fetchall(
                """
                SELECT * FROM drive_metadata_cache
                WHERE mapping_id = ? AND sync_status = ? AND id > ?
                ORDER BY id LIMIT ?
                """,
                (mapping_id, _db_value(status), last_id, batch_size),
            )
            if not rows:
                return
            for row in rows:
                yield FileMetadataRecord.from_row(row)
            last_id = rows[-1]["id"]

    def update_file_status(
        self, file_id: str, status: SyncStatus, error: str | None = None
    ) -> None:
        synced_at = time.time() if status == SyncStatus.SYNCED else None
        self._write(
            """
            UPDATE drive_metadata_cache
            SET sync_status = ?, last_error = ?,
                last_synced_at = COALESCE(?, last_synced_at), updated_at = ?
            WHERE file_id = ?
            """,
            (_db_value(status), error, synced_at, time.time(), file_id),
        )

    def update_sync_preference(self, file_id: str, preference: SyncPreference) -> None:
        self._write(
            "UPDATE drive_metadata_cache SET sync_preference = ?, updated_at = ? "
            "WHERE file_id = ?",
            (_db_value(preference), time.time(), file_id),
        )

    def update_file_local_status(
        self,
        file_id: str,
        status: SyncStatus,
        local_file_exists: bool,
        local_path: str | None = None,
    ) -> None:
        """Update sync status together with the local presence flag."""
        synced_at = time.time() if status == SyncStatus.SYNCED else None
        self._write(
            """
            UPDATE drive_metadata_cache
            SET sync_status = ?, local_file_exists = ?,
                local_path = COALESCE(?, local_path),
                last_synced_at = COALESCE(?, last_synced_at), updated_at = ?
            WHERE file_id = ?
            """,
            (
                _db_value(status), int(local_file_exists), local_path,
                synced_at, time.time(), file_id,
            ),
        )

    def mark_local_missing(self, mapping_id: str, local_path: str) -> int:
        """Mark entries at or under a local path as cloud_only.

        Returns:
            Number of entries updated.
        """
        prefix = local_path.rstrip(os.sep) + os.sep
        return self._write(
            """
            UPDATE drive_metadata_cache
            SET sync_status = 'cloud_only', local_file_exists = 0, updated_at = ?
            WHERE mapping_id = ?
              AND (local_path = ? OR substr(local_path, 1, ?) = ?)
            """,
            (time.time(), mapping_id, local_path, len(prefix), prefix),
        )

    # === Uploads ===

    def add_upload(self, record: UploadRecord) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO uploads (
                id, mapping_id, local_path, file_name, file_size, status,
                progress, upload_method, data_tx_id, metadata_tx_id, file_id,
                error, error_code, created_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id, record.mapping_id, record.local_path, record.file_name,
                record.file_size, record.status.value, record.progress,
                record.upload_method, record.data_tx_id, record.metadata_tx_id,
                record.file_id, record.error, record.error_code,
                record.created_at, record.completed_at,
            ),
        )

    def update_upload(self, upload_id: str, **fields: Any) -> None:
        self._update("uploads", "id", upload_id, _UPLOAD_FIELDS, fields)

    def get_upload(self, upload_id: str) -> UploadRecord | None:
        row = self._fetchone("SELECT * FROM uploads WHERE id = ?", (upload_id,))
        return UploadRecord.from_row(row) if row else None

    def list_uploads(self, limit: int | None = None) -> list[UploadRecord]:
        rows = self._fetchall(
            "SELECT * FROM uploads ORDER BY created_at DESC LIMIT ?",
            (limit if limit is not None else -1,),
        )
        return [UploadRecord.from_row(row) for row in rows]

    def list_uploads_by_status(self, status: TransferStatus) -> list[UploadRecord]:
        rows = self._fetchall(
            "SELECT * FROM uploads WHERE status = ? ORDER BY created_at",
            (_db_value(status),),
        )
        return [UploadRecord.from_row(row) for row in rows]

    def list_uploads_for_mapping(self, mapping_id: str) -> list[UploadRecord]:
        rows = self._fetchall(
            "SELECT * FROM uploads WHERE mapping_id = ? ORDER BY created_at DESC",
            (mapping_id,),
        )
        return [UploadRecord.from_row(row) for row in rows]

    # === Downloads ===

    def add_download(self, record: DownloadRecord) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO downloads (
                id, mapping_id, file_id, file_name, local_path, file_size,
                data_tx_id, metadata_tx_id, status, progress, priority,
                is_cancelled, error, created_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id, record.mapping_id, record.file_id, record.file_name,
                record.local_path, record.file_size, record.data_tx_id,
                record.metadata_tx_id, record.status.value, record.progress,
                record.priority, int(record.is_cancelled), record.error,
                record.created_at, record.completed_at,
            ),
        )

    def update_download(self, download_id: str, **fields: Any) -> None:
        self._update("downloads", "id", download_id, _DOWNLOAD_FIELDS, fields)

    def get_download(self, download_id: str) -> DownloadRecord | None:
        row = self._fetchone("SELECT * FROM downloads WHERE id = ?", (download_id,))
        return DownloadRecord.from_row(row) if row else None

    def list_downloads(self, limit: int | None = None) -> list[DownloadRecord]:
        rows = self._fetchall(
            "SELECT * FROM downloads ORDER BY created_at DESC LIMIT ?",
            (limit if limit is not None else -1,),
        )
        return [DownloadRecord.from_row(row) for row in rows]

    def list_active_downloads(self) -> list[DownloadRecord]:
        rows = self._fetchall(
            """
            SELECT * FROM downloads
            WHERE status IN (?, ?) AND is_cancelled = 0
            ORDER BY priority DESC, file_size ASC
            """,
            _ACTIVE_DOWNLOAD_STATUSES,
        )
        return [DownloadRecord.from_row(row) for row in rows]

    def get_download_by_file_id(self, file_id: str) -> DownloadRecord | None:
        """Get the most recent download of a remote file."""
        row = self._fetchone(
            "SELECT * FROM downloads WHERE file_id = ? ORDER BY created_at DESC LIMIT 1",
            (file_id,),
        )
        return DownloadRecord.from_row(row) if row else None

    def get_download_by_path(self, local_path: str) -> DownloadRecord | None:
        row = self._fetchone(
            "SELECT * FROM downloads WHERE local_path = ? ORDER BY created_at DESC LIMIT 1",
            (local_path,),
        )
        return DownloadRecord.from_row(row) if row else None

    def cancel_download(self, download_id: str) -> None:
        self._write(
            "UPDATE downloads SET is_cancelled = 1, status = ? WHERE id = ?",
            (TransferStatus.CANCELLED.value, download_id),
        )

    # === Processed files ===

    def add_processed_file(self, processed: ProcessedFile) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO processed_files (
                file_hash, mapping_id, file_name, file_size, local_path,
                source, remote_id, processed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                processed.file_hash, processed.mapping_id, processed.file_name,
                processed.file_size, processed.local_path, processed.source,
                processed.remote_id, processed.processed_at,
            ),
        )

    def is_file_processed(self, mapping_id: str, file_hash: str) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM processed_files WHERE file_hash = ? AND mapping_id = ?",
            (file_hash, mapping_id),
        )
        return row is not None

    def get_processed_file(self, mapping_id: str, file_hash: str) -> ProcessedFile | None:
        row = self._fetchone(
            "SELECT * FROM processed_files WHERE file_hash = ? AND mapping_id = ?",
            (file_hash, mapping_id),
        )
        return ProcessedFile.from_row(row) if row else None

    def list_processed_files(self, mapping_id: str) -> list[ProcessedFile]:
        rows = self._fetchall(
            "SELECT * FROM processed_files WHERE mapping_id = ? ORDER BY processed_at",
            (mapping_id,),
        )
        return [ProcessedFile.from_row(row) for row in rows]

    def remove_processed_file(self, mapping_id: str, file_hash: str) -> None:
        self._write(
            "DELETE FROM processed_files WHERE file_hash = ? AND mapping_id = ?",
            (file_hash, mapping_id),
        )

    # === File versions ===

    def add_file_version(self, version: FileVersion) -> FileVersion:
        """Insert a version and make it the only latest one for its path."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE file_versions SET is_latest = 0 "
                "WHERE file_path = ? AND mapping_id IS ?",
                (version.file_path, version.mapping_id),
            )
            conn.execute(
                """
                INSERT INTO file_versions (
                    id, mapping_id, file_hash, file_name, file_path,
                    relative_path, file_size, data_tx_id, metadata_tx_id,
                    version, parent_version, change_type, upload_method,
                    is_latest, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    version.id, version.mapping_id, version.file_hash,
                    version.file_name, version.file_path, version.relative_path,
                    version.file_size, version.data_tx_id, version.metadata_tx_id,
                    version.version, version.parent_version,
                    version.change_type.value, version.upload_method,
                    version.created_at,
                ),
            )
        version.is_latest = True
        return version

    def list_file_versions(
        self, file_path: str, mapping_id: str | None = None
    ) -> list[FileVersion]:
        """List versions of a file, newest first."""
        rows = self._fetchall(
            "SELECT * FROM file_versions WHERE file_path = ? AND mapping_id IS ? "
            "ORDER BY version DESC",
            (file_path, mapping_id),
        )
        return [FileVersion.from_row(row) for row in rows]

    def get_latest_version(
        self, file_path: str, mapping_id: str | None = None
    ) -> FileVersion | None:
        row = self._fetchone(
            "SELECT * FROM file_versions "
            "WHERE file_path = ? AND mapping_id IS ? AND is_latest = 1",
            (file_path, mapping_id),
        )
        return FileVersion.from_row(row) if row else None

    def find_latest_versions_by_hash(
        self, file_hash: str, mapping_id: str | None = None
    ) -> list[FileVersion]:
        """Find latest versions whose content has the given hash."""
        rows = self._fetchall(
            "SELECT * FROM file_versions "
            "WHERE file_hash = ? AND mapping_id IS ? AND is_latest = 1 "
            "ORDER BY created_at DESC",
            (file_hash, mapping_id),
        )
        return [FileVersion.from_row(row) for row in rows]

    # === File operations ===

    def add_file_operation(self, operation: FileOperation) -> None:
        self._write(
            """
            INSERT INTO file_operations (
                id, mapping_id, file_hash, operation, from_path, to_path,
                metadata, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                operation.id, operation.mapping_id, operation.file_hash,
                operation.operation.value, operation.from_path, operation.to_path,
                json.dumps(operation.metadata) if operation.metadata else None,
                operation.timestamp,
            ),
        )

    def list_file_operations(self, file_hash: str) -> list[FileOperation]:
        rows = self._fetchall(
            "SELECT * FROM file_operations WHERE file_hash = ? ORDER BY timestamp",
            (file_hash,),
        )
        return [FileOperation.from_row(row) for row in rows]

    # === Folder structure ===

    def add_folder(self, entry: FolderStructureEntry) -> None:
        """Record a folder, reviving it if it was soft-deleted."""
        self._write(
            """
            INSERT INTO folder_structure (
                id, mapping_id, folder_path, relative_path, parent_path,
                remote_folder_id, is_deleted, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, 0, ?)
            ON CONFLICT(folder_path, mapping_id) DO UPDATE SET
                relative_path = excluded.relative_path,
                parent_path = excluded.parent_path,
                remote_folder_id = COALESCE(
                    excluded.remote_folder_id, folder_structure.remote_folder_id),
                is_deleted = 0
            """,
            (
                entry.id, entry.mapping_id, entry.folder_path, entry.relative_path,
                entry.parent_path, entry.remote_folder_id, entry.created_at,
            ),
        )

    def get_folder_by_path(
        self, mapping_id: str, folder_path: str
    ) -> FolderStructureEntry | None:
        row = self._fetchone(
            "SELECT * FROM folder_structure WHERE mapping_id = ? AND folder_path = ?",
            (mapping_id, folder_path),
        )
        return FolderStructureEntry.from_row(row) if row else None

    def list_folders(
        self, mapping_id: str, include_deleted: bool = False
    ) -> list[FolderStructureEntry]:
        sql = "SELECT * FROM folder_structure WHERE mapping_id = ?"
        if not include_deleted:
            sql += " AND is_deleted = 0"
        rows = self._fetchall(sql + " ORDER BY folder_path", (mapping_id,))
        return [FolderStructureEntry.from_row(row) for row in rows]

    def update_folder_remote_id(
        self, mapping_id: str, folder_path: str, remote_folder_id: str
    ) -> None:
        self._write(
            "UPDATE folder_structure SET remote_folder_id = ? "
            "WHERE mapping_id = ? AND folder_path = ?",
            (remote_folder_id, mapping_id, folder_path),
        )

    def mark_folder_deleted(self, mapping_id: str, folder_path: str) -> int:
        """Soft-delete a folder and all folders below it."""
        prefix = folder_path.rstrip(os.sep) + os.sep
        return self._write(
            """
            UPDATE folder_structure SET is_deleted = 1
            WHERE mapping_id = ?
              AND (folder_path = ? OR substr(folder_path, 1, ?) = ?)
            """,
            (mapping_id, folder_path, len(prefix), prefix),
        )

    def move_folder(self, mapping_id: str, old_path: str, new_path: str) -> int:
        """Re-root a folder subtree at a new local path.

        Remote folder ids are kept. Local paths of cached file metadata
        below the folder are rewritten too.
        Soft-deleted rows already at the destination are dropped first, so
        their paths can be taken over.

        Returns:
            Number of folders moved.
        """
        mapping = self.get_drive_mapping(mapping_id)
        if mapping is None:
            raise StateStoreError(f"Unknown drive mapping {mapping_id}")
        root = mapping.local_folder_path

        def rebase(path: str) -> str:
            return new_path + path[len(old_path):]

        moved = 0
        with self._transaction() as conn:
            stale = conn.execute(
                "SELECT id, folder_path FROM folder_structure "
                "WHERE mapping_id = ? AND is_deleted = 1",
                (mapping_id,),
            ).fetchall()
            for row in stale:
                if _under(row["folder_path"], new_path) and not _under(
                    row["folder_path"], old_path
                ):
                    conn.execute("DELETE FROM folder_structure WHERE id = ?", (row["id"],))

            rows = conn.execute(
                "SELECT id, folder_path FROM folder_structure WHERE mapping_id = ?",
                (mapping_id,),
            ).fetchall()
            for row in rows:
                if not _under(row["folder_path"], old_path):
                    continue
                folder_path = rebase(row["folder_path"])
                conn.execute(
                    """
                    UPDATE folder_structure
                    SET folder_path = ?, relative_path = ?, parent_path = ?,
                        is_deleted = 0
                    WHERE id = ?
                    """,
                    (
                        folder_path,
                        os.path.relpath(folder_path, root),
                        os.path.dirname(folder_path),
                        row["id"],
                    ),
                )
                moved += 1

            files = conn.execute(
                "SELECT file_id, local_path FROM drive_metadata_cache "
                "WHERE mapping_id = ? AND local_path IS NOT NULL",
                (mapping_id,),
            ).fetchall()
            for row in files:
                if _under(row["local_path"], old_path):
                    conn.execute(
                        "UPDATE drive_metadata_cache SET local_path = ? WHERE file_id = ?",
                        (rebase(row["local_path"]), row["file_id"]),
                    )
        logger.debug("Moved %d folders from %s to %s", moved, old_path, new_path)
        return moved

    # === Folder operations ===

    def record_folder_operation(self, record: FolderOperationRecord) -> None:
        self._write(
            """
            INSERT INTO folder_operations (
                id, mapping_id, operation_type, old_path, new_path,
                remote_folder_id, reason, detected_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id, record.mapping_id, record.operation_type.value,
                record.old_path, record.new_path, record.remote_folder_id,
                record.reason, record.detected_at,
            ),
        )

    def list_folder_operations(
        self, mapping_id: str, limit: int | None = None
    ) -> list[FolderOperationRecord]:
        rows = self._fetchall(
            "SELECT * FROM folder_operations WHERE mapping_id = ? "
            "ORDER BY detected_at DESC LIMIT ?",
            (mapping_id, limit if limit is not None else -1),
        )
        return [FolderOperationRecord.from_row(row) for row in rows]

    def export_mapping(self, mapping_id: str) -> dict[str, Any] | None:
        """Dump a mapping as a JSON-compatible dictionary."""
        mapping = self.get_drive_mapping(mapping_id)
        if mapping is None:
            return None
        data = asdict(mapping)
        data["privacy"] = mapping.privacy.value
        data["sync_settings"]["sync_direction"] = mapping.sync_settings.sync_direction.value
        return data
