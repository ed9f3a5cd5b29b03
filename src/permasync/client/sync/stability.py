"""File content stability verification.

A file reported by the watcher may still be written to. Before uploading,
its content hash is re-read until it stops changing.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path

from permasync.core.config import StabilityConfig

logger = logging.getLogger(__name__)

BLOCK_SIZE = 8192


def calculate_hash(path: str | Path) -> str:
    """Compute the SHA-256 hex digest of a file, streamed in blocks."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(BLOCK_SIZE), b""):
            sha256.update(block)
    return sha256.hexdigest()


class FileStabilityVerifier:
    """Waits for a file's content hash to stop changing."""

    def __init__(
        self,
        config: StabilityConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 2,
    ) -> None:
        """Initialize the verifier.

        Args:
            config: Attempt bounds and delay (defaults to StabilityConfig()).
            sleep: Sleep function used between reads.
            max_workers: Size of the pool used by submit().
        """
        self.config = config or StabilityConfig()
        self._sleep = sleep
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None

    calculate_hash = staticmethod(calculate_hash)

    def wait_for_stable_hash(self, path: str | Path) -> str:
        """Return the file hash once it is stable.

        The hash is stable when it matched the previous read
        ``required_stable_checks`` times in a row. If that never happens
        within ``max_attempts`` reads the last hash is returned.

        Raises:
            OSError: If the file cannot be read.
        """
        attempts = self.config.max_attempts
        previous: str | None = None
        stable_count = 0

        for attempt in range(attempts):
            current = calculate_hash(path)
            if current == previous:
                stable_count += 1
                if stable_count >= self.config.required_stable_checks:
                    logger.debug(
                        "Hash of %s stable after %d reads: %s",
                        path, attempt + 1, current[:16],
                    )
                    return current
            else:
                if previous is not None:
                    logger.debug(
                        "Hash of %s changed on read %d: %s -> %s",
                        path, attempt + 1, previous[:16], current[:16],
                    )
                stable_count = 0
            previous = current

            if attempt < attempts - 1:
                self._sleep(self.config.delay)

        logger.warning(
            "Hash of %s did not stabilize after %d reads, using last hash",
            path, attempts,
        )
        return previous  # type: ignore[return-value]

    def submit(self, path: str | Path) -> Future[str]:
        """Run wait_for_stable_hash on the verifier's thread pool."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="stability",
            )
        return self._executor.submit(self.wait_for_stable_hash, path)

    def close(self) -> None:
        """Shut the thread pool down."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
