"""Tests for error classification and retry backoff."""

from __future__ import annotations

import errno
import random
from pathlib import Path

import httpx
import pytest

from permasync.client.sync.retry import RETRY_NOTICE, ErrorClassifier, RetryPolicy
from permasync.client.sync.types import SyncCancelledError, SyncError, SyncErrorCode
from permasync.core.config import RetryConfig


class _ZeroRandom(random.Random):
    def random(self) -> float:
        return 0.0


class _MaxRandom(random.Random):
    def random(self) -> float:
        return 1.0


def _http_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://gateway.example/tx")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("bad status", request=request, response=response)


class TestErrorClassifier:
    """Tests for ErrorClassifier.classify()."""

    @pytest.fixture
    def classifier(self) -> ErrorClassifier:
        return ErrorClassifier()

    def test_timeout_errno(self, classifier: ErrorClassifier) -> None:
        """ETIMEDOUT should be a retryable network timeout."""
        error = classifier.classify(OSError(errno.ETIMEDOUT, "timed out"))
        assert error.code is SyncErrorCode.NETWORK_TIMEOUT
        assert error.retryable is True

    def test_httpx_timeout(self, classifier: ErrorClassifier) -> None:
        """httpx timeouts should be network timeouts."""
        error = classifier.classify(httpx.ReadTimeout("slow"))
        assert error.code is SyncErrorCode.NETWORK_TIMEOUT

    def test_connection_refused(self, classifier: ErrorClassifier) -> None:
        """ECONNREFUSED should mean offline."""
        error = classifier.classify(ConnectionRefusedError(errno.ECONNREFUSED, "refused"))
        assert error.code is SyncErrorCode.NETWORK_OFFLINE
        assert error.retryable is True

    def test_httpx_connect_error(self, classifier: ErrorClassifier) -> None:
        """httpx transport errors should mean offline."""
        error = classifier.classify(httpx.ConnectError("no route"))
        assert error.code is SyncErrorCode.NETWORK_OFFLINE

    def test_gateway_error(self, classifier: ErrorClassifier) -> None:
        """5xx responses should be retryable gateway errors."""
        error = classifier.classify(_http_error(502))
        assert error.code is SyncErrorCode.GATEWAY_ERROR
        assert error.message == "Gateway error: 502"
        assert error.retryable is True

    def test_client_error_is_unknown(self, classifier: ErrorClassifier) -> None:
        """4xx responses should not be retried."""
        error = classifier.classify(_http_error(404))
        assert error.code is SyncErrorCode.UNKNOWN_ERROR
        assert error.retryable is False

    def test_filesystem_errors(self, classifier: ErrorClassifier) -> None:
        """Filesystem errnos should map to non-retryable codes."""
        assert classifier.classify(OSError(errno.ENOSPC, "full")).code is (
            SyncErrorCode.INSUFFICIENT_SPACE
        )
        assert classifier.classify(PermissionError(errno.EACCES, "denied")).code is (
            SyncErrorCode.PERMISSION_DENIED
        )
        missing = classifier.classify(FileNotFoundError(errno.ENOENT, "missing"))
        assert missing.code is SyncErrorCode.FILE_NOT_FOUND
        assert missing.retryable is False

    def test_checksum_message(self, classifier: ErrorClassifier) -> None:
        """A hash failure message should be a retryable checksum mismatch."""
        error = classifier.classify(ValueError("Hash verification failed"))
        assert error.code is SyncErrorCode.CHECKSUM_MISMATCH
        assert error.retryable is True

    def test_unknown_keeps_original(self, classifier: ErrorClassifier) -> None:
        """Unknown errors should carry the original exception."""
        original = RuntimeError("boom")
        error = classifier.classify(original)
        assert error.code is SyncErrorCode.UNKNOWN_ERROR
        assert error.retryable is False
        assert error.details["original_error"] is original

    def test_cancelled(self, classifier: ErrorClassifier) -> None:
        """Cancellation should never be retried."""
        error = classifier.classify(SyncCancelledError("stop"))
        assert error.code is SyncErrorCode.SYNC_CANCELLED
        assert error.retryable is False

    def test_sync_error_passes_through(self, classifier: ErrorClassifier) -> None:
        """An already classified error should be returned unchanged."""
        error = SyncError("quota", SyncErrorCode.QUOTA_EXCEEDED, False, "Quota reached.")
        assert classifier.classify(error) is error

    def test_user_message_mentions_retry(self, classifier: ErrorClassifier) -> None:
        """Retryable failures should tell the user they will be retried."""
        retryable = classifier.classify(OSError(errno.ETIMEDOUT, "timed out"))
        fatal = classifier.classify(OSError(errno.EACCES, "denied"))
        assert classifier.get_user_message(retryable).endswith(RETRY_NOTICE)
        assert RETRY_NOTICE not in classifier.get_user_message(fatal)
        assert retryable.user_message != retryable.message


class TestHandleFilesystemError:
    """Tests for ErrorClassifier.handle_filesystem_error()."""

    def test_creates_missing_parent(self, tmp_path: Path) -> None:
        """FILE_NOT_FOUND should create the parent directory, then raise."""
        target = tmp_path / "a" / "b" / "file.txt"
        with pytest.raises(SyncError) as exc_info:
            ErrorClassifier().handle_filesystem_error(
                FileNotFoundError(errno.ENOENT, "missing"), str(target)
            )
        assert exc_info.value.code is SyncErrorCode.FILE_NOT_FOUND
        assert target.parent.is_dir()

    def test_raises_classified_error(self, tmp_path: Path) -> None:
        """Other errors should be raised classified and chained."""
        original = OSError(errno.ENOSPC, "no space")
        with pytest.raises(SyncError) as exc_info:
            ErrorClassifier().handle_filesystem_error(original, str(tmp_path / "x"))
        assert exc_info.value.code is SyncErrorCode.INSUFFICIENT_SPACE
        assert exc_info.value.__cause__ is original


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def _timeout(self) -> SyncError:
        return ErrorClassifier().classify(OSError(errno.ETIMEDOUT, "timed out"))

    def test_should_retry_below_limit(self) -> None:
        """Retryable errors should be retried while attempts < max_retries."""
        policy = RetryPolicy()
        error = self._timeout()
        assert policy.should_retry(error, 1) is True
        assert policy.should_retry(error, 2) is True
        assert policy.should_retry(error, 3) is False

    def test_should_not_retry_fatal(self) -> None:
        """Non-retryable errors should never be retried."""
        error = ErrorClassifier().classify(OSError(errno.EACCES, "denied"))
        assert RetryPolicy().should_retry(error, 1) is False

    def test_code_must_be_configured(self) -> None:
        """A retryable code outside the configured set should not be retried."""
        checksum = ErrorClassifier().classify(ValueError("checksum mismatch"))
        assert checksum.retryable is True
        assert RetryPolicy().should_retry(checksum, 1) is False

        policy = RetryPolicy(RetryConfig(retryable_errors=frozenset({"CHECKSUM_MISMATCH"})))
        assert policy.should_retry(checksum, 1) is True

    def test_max_retries_override(self) -> None:
        """An explicit max_retries should win over the configuration."""
        assert RetryPolicy().should_retry(self._timeout(), 4, max_retries=5) is True

    def test_delays_without_jitter(self) -> None:
        """Delays should compound per item and cap at max_delay."""
        policy = RetryPolicy(rng=_ZeroRandom())
        delays = [policy.get_retry_delay("item", n) for n in range(1, 5)]
        assert delays == [1.0, 2.0, 8.0, 30.0]

    def test_jitter_bounded(self) -> None:
        """Jitter should add at most 30% of the delay."""
        policy = RetryPolicy(rng=_MaxRandom())
        assert policy.get_retry_delay("item", 1) == pytest.approx(1.3)

    def test_backoff_monotonic(self) -> None:
        """Each delay should be at least multiplier * 0.7 times the previous one."""
        config = RetryConfig(max_delay=1000.0)
        policy = RetryPolicy(config, rng=random.Random(42))
        previous = policy.get_retry_delay("item", 1)
        for attempt in range(2, 5):
            current = policy.get_retry_delay("item", attempt)
            assert current >= previous * config.backoff_multiplier * 0.7
            previous = current

    def test_reset_forgets_delay(self) -> None:
        """After a reset the next delay should start from the initial delay."""
        policy = RetryPolicy(rng=_ZeroRandom())
        policy.get_retry_delay("item", 1)
        policy.get_retry_delay("item", 2)
        policy.reset_retry_delay("item")
        assert policy.get_retry_delay("item", 1) == 1.0

    def test_items_are_independent(self) -> None:
        """Delays should be remembered per item id."""
        policy = RetryPolicy(rng=_ZeroRandom())
        policy.get_retry_delay("a", 1)
        policy.get_retry_delay("a", 2)
        assert policy.get_retry_delay("b", 1) == 1.0
