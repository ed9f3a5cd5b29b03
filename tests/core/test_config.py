"""Tests for core configuration classes."""

from __future__ import annotations

import pytest

from permasync.core.config import (
    DEFAULT_RETRYABLE_ERRORS,
    DetectorConfig,
    QueueConfig,
    RetryConfig,
    StabilityConfig,
    SyncConfig,
)


class TestRetryConfig:
    """Tests for RetryConfig class."""

    def test_defaults(self) -> None:
        """Should default to 3 retries with 1s..30s doubling backoff."""
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.initial_delay == 1.0
        assert config.max_delay == 30.0
        assert config.backoff_multiplier == 2.0
        assert config.retryable_errors == DEFAULT_RETRYABLE_ERRORS

    def test_retryable_set_accepts_lists(self) -> None:
        """Should normalize retryable_errors to a frozenset."""
        config = RetryConfig(retryable_errors=["NETWORK_TIMEOUT"])  # type: ignore[arg-type]
        assert config.retryable_errors == frozenset({"NETWORK_TIMEOUT"})

    def test_rejects_negative_retries(self) -> None:
        """Should reject a negative max_retries."""
        with pytest.raises(ValueError):
            RetryConfig(max_retries=-1)

    def test_rejects_shrinking_multiplier(self) -> None:
        """Should reject a multiplier below 1."""
        with pytest.raises(ValueError):
            RetryConfig(backoff_multiplier=0.5)


class TestStabilityConfig:
    """Tests for StabilityConfig class."""

    def test_defaults(self) -> None:
        """Should read up to 5 times, 200ms apart."""
        config = StabilityConfig()
        assert config.max_attempts == 5
        assert config.delay == 0.2
        assert config.required_stable_checks == 2

    def test_rejects_zero_attempts(self) -> None:
        """Should need at least one read."""
        with pytest.raises(ValueError):
            StabilityConfig(max_attempts=0)


class TestSyncConfig:
    """Tests for the aggregate SyncConfig."""

    def test_from_empty_dict(self) -> None:
        """Should use defaults for missing sections."""
        config = SyncConfig.from_dict(None)
        assert config == SyncConfig()

    def test_from_partial_dict(self) -> None:
        """Should override only the given values."""
        config = SyncConfig.from_dict({
            "retry": {"max_retries": 5, "retryable_errors": ["GATEWAY_ERROR"]},
            "detector": {"detection_window": 0.5},
        })
        assert config.retry.max_retries == 5
        assert config.retry.retryable_errors == frozenset({"GATEWAY_ERROR"})
        assert config.detector.detection_window == 0.5
        assert config.detector.operation_cache_ttl == DetectorConfig().operation_cache_ttl
        assert config.queue == QueueConfig()

    def test_unknown_key_rejected(self) -> None:
        """Should surface typos in config files."""
        with pytest.raises(TypeError):
            SyncConfig.from_dict({"queue": {"tick_intervall": 2}})

    def test_to_dict_is_json_compatible(self) -> None:
        """Should serialize the retryable set as a sorted list."""
        data = SyncConfig().to_dict()
        assert data["retry"]["retryable_errors"] == sorted(DEFAULT_RETRYABLE_ERRORS)
        assert SyncConfig.from_dict(data) == SyncConfig()
