"""Error classification and retry backoff.

This module provides:
- ErrorClassifier: Maps exceptions to SyncError with a code and user message
- RetryPolicy: Decides whether to retry and computes backoff delays
"""

from __future__ import annotations

import errno
import logging
import os
import random
import shutil
import socket
import threading
from typing import Any

import httpx

from permasync.client.sync.types import SyncCancelledError, SyncError, SyncErrorCode
from permasync.core.config import RetryConfig

logger = logging.getLogger(__name__)

# Fraction of the delay added at most as random jitter
JITTER_RATIO = 0.3

RETRY_NOTICE = " The operation will be retried automatically."

_TIMEOUT_ERRNOS = {errno.ETIMEDOUT}
_OFFLINE_ERRNOS = {errno.ECONNREFUSED, errno.ENETUNREACH, errno.EHOSTUNREACH}

# code -> (message, retryable, user message)
_CLASSIFICATIONS: dict[SyncErrorCode, tuple[str, bool, str]] = {
    SyncErrorCode.NETWORK_TIMEOUT: (
        "Network timeout",
        True,
        "Connection timed out. Will retry automatically.",
    ),
    SyncErrorCode.NETWORK_OFFLINE: (
        "Network offline",
        True,
        "Unable to connect to the network. Please check your connection.",
    ),
    SyncErrorCode.GATEWAY_ERROR: (
        "Gateway error",
        True,
        "The storage gateway is temporarily unavailable. Will retry.",
    ),
    SyncErrorCode.INSUFFICIENT_SPACE: (
        "Insufficient disk space",
        False,
        "Not enough disk space to download this file.",
    ),
    SyncErrorCode.PERMISSION_DENIED: (
        "Permission denied",
        False,
        "Permission denied. Please check folder permissions.",
    ),
    SyncErrorCode.FILE_NOT_FOUND: (
        "File not found",
        False,
        "The requested file was not found.",
    ),
    SyncErrorCode.CHECKSUM_MISMATCH: (
        "Checksum mismatch",
        True,
        "File integrity check failed. Will retry download.",
    ),
    SyncErrorCode.SIZE_MISMATCH: (
        "File size mismatch",
        True,
        "Downloaded file size does not match expected size.",
    ),
    SyncErrorCode.SYNC_CANCELLED: (
        "Sync cancelled",
        False,
        "The operation was cancelled.",
    ),
}


def _make_error(
    code: SyncErrorCode,
    message: str | None = None,
    details: dict[str, Any] | None = None,
) -> SyncError:
    default_message, retryable, user_message = _CLASSIFICATIONS[code]
    return SyncError(message or default_message, code, retryable, user_message, details)


class ErrorClassifier:
    """Turns arbitrary exceptions into classified SyncErrors."""

    def classify(self, error: BaseException) -> SyncError:
        """Classify an exception.

        Args:
            error: Exception raised by a storage, network or filesystem call.

        Returns:
            SyncError with code, retryability and user message. An
            existing SyncError is returned unchanged.
        """
        if isinstance(error, SyncError):
            return error
        if isinstance(error, SyncCancelledError):
            return _make_error(SyncErrorCode.SYNC_CANCELLED, str(error) or None)

        code = self._code_for(error)
        if code is SyncErrorCode.GATEWAY_ERROR:
            status = error.response.status_code  # type: ignore[attr-defined]
            return _make_error(code, f"Gateway error: {status}")
        if code is not None:
            return _make_error(code)

        return SyncError(
            str(error) or "Unknown error",
            SyncErrorCode.UNKNOWN_ERROR,
            False,
            "An unexpected error occurred.",
            {"original_error": error},
        )

    @staticmethod
    def _code_for(error: BaseException) -> SyncErrorCode | None:
        err_no = getattr(error, "errno", None)

        # Timeouts first: TimeoutError and httpx timeouts are also
        # OSError / transport errors
        if isinstance(error, (TimeoutError, httpx.TimeoutException)):
            return SyncErrorCode.NETWORK_TIMEOUT
        if isinstance(error, OSError) and err_no in _TIMEOUT_ERRNOS:
            return SyncErrorCode.NETWORK_TIMEOUT

        if isinstance(error, httpx.HTTPStatusError):
            if error.response.status_code >= 500:
                return SyncErrorCode.GATEWAY_ERROR
            return None
        if isinstance(error, (httpx.NetworkError, socket.gaierror, ConnectionError)):
            return SyncErrorCode.NETWORK_OFFLINE

        if isinstance(error, OSError):
            if err_no in _OFFLINE_ERRNOS:
                return SyncErrorCode.NETWORK_OFFLINE
            if err_no == errno.ENOSPC:
                return SyncErrorCode.INSUFFICIENT_SPACE
            if err_no in (errno.EACCES, errno.EPERM):
                return SyncErrorCode.PERMISSION_DENIED
            if err_no == errno.ENOENT:
                return SyncErrorCode.FILE_NOT_FOUND

        message = str(error).lower()
        if "checksum" in message or "hash" in message:
            return SyncErrorCode.CHECKSUM_MISMATCH
        if "size mismatch" in message:
            return SyncErrorCode.SIZE_MISMATCH
        return None

    def handle_filesystem_error(self, error: BaseException, path: str) -> None:
        """Attempt remediation for a filesystem error, then raise it classified.

        - INSUFFICIENT_SPACE: log the free space of the target volume
        - PERMISSION_DENIED: log the failing path
        - FILE_NOT_FOUND: create the missing parent directory

        Raises:
            SyncError: Always.
        """
        sync_error = self.classify(error)

        if sync_error.code is SyncErrorCode.INSUFFICIENT_SPACE:
            probe = path
            while probe and not os.path.exists(probe):
                parent = os.path.dirname(probe)
                if parent == probe:
                    break
                probe = parent
            try:
                usage = shutil.disk_usage(probe or os.sep)
                logger.error("Available disk space: %d bytes", usage.free)
            except OSError as e:
                logger.error("Cannot read disk usage for %s: %s", path, e)
        elif sync_error.code is SyncErrorCode.PERMISSION_DENIED:
            logger.error("Permission denied for path: %s", path)
        elif sync_error.code is SyncErrorCode.FILE_NOT_FOUND:
            parent_dir = os.path.dirname(path)
            try:
                os.makedirs(parent_dir, exist_ok=True)
                logger.info("Created missing parent directory: %s", parent_dir)
            except OSError:
                logger.exception("Failed to create parent directory %s", parent_dir)

        raise sync_error from error

    @staticmethod
    def get_user_message(error: SyncError) -> str:
        """Build the message shown to the user."""
        return error.user_message + (RETRY_NOTICE if error.retryable else "")

    @staticmethod
    def log_error(error: SyncError, **context: Any) -> None:
        """Log at warning level if retryable, error level otherwise."""
        if error.retryable:
            logger.warning(
                "Retryable error %s: %s %s", error.code.value, error.message, context
            )
        else:
            logger.error(
                "Fatal error %s: %s %s", error.code.value, error.message, context
            )


class RetryPolicy:
    """Retry decisions and per-item exponential backoff with jitter."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the policy.

        Args:
            config: Retry settings (defaults to RetryConfig()).
            rng: Random source for jitter.
        """
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()
        self._delays: dict[str, float] = {}
        self._lock = threading.Lock()

    def should_retry(
        self,
        error: SyncError,
        attempt: int,
        max_retries: int | None = None,
    ) -> bool:
        """Decide whether a failed attempt should be retried.

        Args:
            error: Classified error of the attempt.
            attempt: Number of attempts made so far (1-based).
            max_retries: Override of the configured maximum.
        """
        limit = self.config.max_retries if max_retries is None else max_retries
        if not error.retryable:
            return False
        if attempt >= limit:
            return False
        return error.code.value in self.config.retryable_errors

    def get_retry_delay(self, item_id: str, attempt: int) -> float:
        """Compute (and remember) the delay before the next attempt.

        The base is the delay last returned for this item, or the initial
        delay. Up to 30% of random jitter is added after capping.
        """
        with self._lock:
            base = self._delays.get(item_id) or self.config.initial_delay
            delay = min(
                base * self.config.backoff_multiplier ** max(attempt - 1, 0),
                self.config.max_delay,
            )
            delay += self._rng.random() * JITTER_RATIO * delay
            self._delays[item_id] = delay
        return delay

    def reset_retry_delay(self, item_id: str) -> None:
        """Forget the remembered delay after a success or a manual retry."""
        with self._lock:
            self._delays.pop(item_id, None)
