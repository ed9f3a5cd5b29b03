"""Exclusion rules for synchronized paths.

This module provides:
- IgnorePatterns: fnmatch-style exclusion of paths below a sync folder
- SyncFilter: IgnorePatterns plus the per-drive size and direction limits
- DEFAULT_IGNORE_PATTERNS: Temporary and system files never synchronized
"""

from __future__ import annotations

import fnmatch
import os
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from permasync.client.records import SyncSettings

# Suffix of files being written by a download
DOWNLOAD_SUFFIX = ".downloading"

DEFAULT_IGNORE_PATTERNS = [
    f"*{DOWNLOAD_SUFFIX}",
    "Thumbs.db",
    "desktop.ini",
    "*.tmp",
    "*.temp",
    "~*",
    "*.swp",
    "*.swo",
]


class IgnorePatterns:
    """Matches paths against exclusion patterns.

    Hidden entries (any path component starting with a dot) are always
    ignored.
    """

    def __init__(self, patterns: list[str] | None = None) -> None:
        """Initialize with patterns.

        Args:
            patterns: Extra fnmatch patterns, matched against the relative
                path and against the file name.
        """
        self._patterns = list(DEFAULT_IGNORE_PATTERNS)
        if patterns:
            self._patterns.extend(patterns)

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        self._patterns.append(pattern)

    def should_ignore(self, path: str | Path, base_path: str | Path) -> bool:
        """Check if a path should be ignored.

        Args:
            path: Absolute path to check.
            base_path: Root of the synchronized folder.

        Returns:
            True if the path should be ignored. Paths outside base_path
            are never ignored here.
        """
        path = Path(path)
        if path.is_symlink():
            return True

        try:
            rel_path = path.relative_to(base_path)
        except ValueError:
            return False

        parts = rel_path.parts
        if any(part.startswith(".") for part in parts):
            return True

        rel_str = "/".join(parts)
        for pattern in self._patterns:
            if pattern.endswith("/"):
                # Directory pattern: matches the folder and everything below it
                prefix = pattern.rstrip("/")
                if any(fnmatch.fnmatch(part, prefix) for part in parts[:-1]):
                    return True
                if path.is_dir() and fnmatch.fnmatch(path.name, prefix):
                    return True
            elif fnmatch.fnmatch(rel_str, pattern) or fnmatch.fnmatch(path.name, pattern):
                return True
        return False


class SyncFilter:
    """Decides which local changes of a drive mapping are synchronized."""

    def __init__(self, base_path: str | Path, settings: SyncSettings) -> None:
        self.base_path = Path(base_path)
        self.settings = settings
        self.ignore = IgnorePatterns(settings.exclude_patterns)

    def should_ignore(self, path: str | Path) -> bool:
        return self.ignore.should_ignore(path, self.base_path)

    def should_upload(self, path: str | Path) -> bool:
        """Check direction, exclusions and the size limit for a local file."""
        if not self.settings.sync_direction.uploads:
            return False
        if self.should_ignore(path):
            return False
        limit = self.settings.max_file_size
        if limit is not None and os.path.isfile(path) and os.path.getsize(path) > limit:
            return False
        return True

    def should_download(self, relative_path: str, size: int | None = None) -> bool:
        """Check direction, exclusions and the size limit for a remote file."""
        if not self.settings.sync_direction.downloads:
            return False
        if self.should_ignore(self.base_path / relative_path):
            return False
        limit = self.settings.max_file_size
        return limit is None or (size or 0) <= limit
