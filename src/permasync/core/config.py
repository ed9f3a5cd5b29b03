"""Shared configuration classes for permasync.

This module defines the tunables of the sync engine. All durations are in
seconds.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

# Codes that are retried unless the configuration says otherwise
DEFAULT_RETRYABLE_ERRORS = frozenset({
    "NETWORK_TIMEOUT",
    "NETWORK_OFFLINE",
    "GATEWAY_ERROR",
})


@dataclass
class RetryConfig:
    """Retry and backoff settings.

    Attributes:
        max_retries: Attempts allowed before an item is marked failed.
        initial_delay: First backoff delay in seconds.
        max_delay: Upper bound for the backoff delay (before jitter).
        backoff_multiplier: Growth factor applied per attempt.
        retryable_errors: Error codes eligible for retry.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_errors: frozenset[str] = field(
        default_factory=lambda: DEFAULT_RETRYABLE_ERRORS
    )

    def __post_init__(self) -> None:
        """Validate values and normalize the retryable set."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        self.retryable_errors = frozenset(
            getattr(code, "value", code) for code in self.retryable_errors
        )


@dataclass
class StabilityConfig:
    """File stability check settings.

    Attributes:
        max_attempts: Maximum number of content reads.
        delay: Pause between reads in seconds.
        required_stable_checks: Consecutive unchanged re-reads needed.
    """

    max_attempts: int = 5
    delay: float = 0.2
    required_stable_checks: int = 2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.required_stable_checks < 1:
            raise ValueError("required_stable_checks must be >= 1")


@dataclass
class DetectorConfig:
    """Folder operation detection settings.

    Attributes:
        detection_window: Time a folder delete waits for a matching add.
        operation_cache_ttl: How long classifications stay queryable.
        sweep_interval: Period of the stale pending-delete sweep.
        similarity_threshold: Children similarity (percent) above which an
            unrelated-looking add is treated as rename_and_move.
    """

    detection_window: float = 2.0
    operation_cache_ttl: float = 10.0
    sweep_interval: float = 60.0
    similarity_threshold: float = 80.0


@dataclass
class QueueConfig:
    """Transfer queue settings.

    Attributes:
        tick_interval: Period of the queue processing loop.
        recently_downloaded_ttl: Window during which a freshly downloaded
            file is not re-uploaded when the watcher reports it.
    """

    tick_interval: float = 1.0
    recently_downloaded_ttl: float = 30.0


@dataclass
class SyncConfig:
    """Aggregate configuration for the sync engine."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SyncConfig:
        """Build a config from a (possibly partial) dictionary.

        Unknown keys are rejected so typos in config files surface early.
        """
        data = data or {}
        retry = dict(data.get("retry", {}))
        if "retryable_errors" in retry:
            retry["retryable_errors"] = frozenset(retry["retryable_errors"])
        return cls(
            retry=RetryConfig(**retry),
            stability=StabilityConfig(**data.get("stability", {})),
            detector=DetectorConfig(**data.get("detector", {})),
            queue=QueueConfig(**data.get("queue", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        data = asdict(self)
        data["retry"]["retryable_errors"] = sorted(self.retry.retryable_errors)
        return data
