"""Queue-wide defaults and per-consumer settings.

All durations are in seconds; ``datetime.timedelta`` values are accepted too.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from typing import Any, Callable

from .backoff import exponential_backoff

BackoffFunc = Callable[[int], float]

INFINITE_RETRIES = -1
DEFAULT_MAX_RETRIES = 3
DEFAULT_CONCURRENCY = max(1, min(os.cpu_count() or 1, 0xFFFF))
DEFAULT_PREFETCH_COUNT = DEFAULT_CONCURRENCY
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_JOB_TIMEOUT = 15 * 60.0
DEFAULT_CLEANUP_PROCESSED_INTERVAL = 60 * 60.0
DEFAULT_CLEANUP_PROCESSED_AGE = 7 * 24 * 60 * 60.0
DEFAULT_CLEANUP_DLQ_INTERVAL = 6 * 60 * 60.0
DEFAULT_CLEANUP_DLQ_AGE = 30 * 24 * 60 * 60.0
DEFAULT_CLEANUP_BATCH = 500

_DURATIONS = frozenset(
    {
        "poll_interval",
        "job_timeout",
        "cleanup_processed_interval",
        "cleanup_processed_age",
        "cleanup_dlq_interval",
        "cleanup_dlq_age",
    }
)
_COUNTS = frozenset(
    {"concurrency", "prefetch_count", "cleanup_batch", "max_retries", "async_push_rate_limit"}
)


def _seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _normalize(name: str, value: Any) -> Any:
    if name in _DURATIONS:
        return _seconds(value)
    if name in _COUNTS:
        return int(value)
    if name == "async_push":
        return bool(value)
    return value


def _positive(value: Any) -> bool:
    return value > 0


def _retries(value: Any) -> bool:
    return value >= INFINITE_RETRIES


# Options listed here are only accepted when their check passes; every other
# option is accepted as given.
_RULES: dict[str, Callable[[Any], bool]] = {
    "concurrency": _positive,
    "prefetch_count": _positive,
    "cleanup_batch": _positive,
    "poll_interval": _positive,
    "max_retries": _retries,
    "job_timeout": _positive,
    "cleanup_processed_age": _positive,
    "cleanup_dlq_age": _positive,
}


def _valid(name: str, value: Any) -> bool:
    rule = _RULES.get(name)
    return rule is None or rule(value)


@dataclass(frozen=True)
class ConsumerOptions:
    """Settings of one consumer.

    ``max_retries`` of -1 means unlimited retries; a cleanup interval of zero
    or less disables that cleanup; ``async_push_rate_limit`` of 0 means no limit.
    """

    concurrency: int = DEFAULT_CONCURRENCY
    prefetch_count: int = DEFAULT_PREFETCH_COUNT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    backoff_func: BackoffFunc = exponential_backoff
    max_retries: int = DEFAULT_MAX_RETRIES
    job_timeout: float = DEFAULT_JOB_TIMEOUT
    cleanup_processed_interval: float = DEFAULT_CLEANUP_PROCESSED_INTERVAL
    cleanup_processed_age: float = DEFAULT_CLEANUP_PROCESSED_AGE
    cleanup_dlq_interval: float = DEFAULT_CLEANUP_DLQ_INTERVAL
    cleanup_dlq_age: float = DEFAULT_CLEANUP_DLQ_AGE
    cleanup_batch: int = DEFAULT_CLEANUP_BATCH
    async_push: bool = False
    async_push_rate_limit: int = 0

    def apply(self, **kwargs: Any) -> ConsumerOptions:
        """Return a copy with the given overrides.

        Values outside an option's valid range are ignored and the current
        value kept. The prefetch count is raised to the concurrency if lower.
        """
        known = {spec.name for spec in fields(self)}
        unknown = kwargs.keys() - known
        if unknown:
            raise TypeError(f"unknown consumer option(s): {', '.join(sorted(unknown))}")

        changes = {}
        for name, raw in kwargs.items():
            value = _normalize(name, raw)
            if _valid(name, value):
                changes[name] = value

        result = replace(self, **changes)
        if result.prefetch_count < result.concurrency:
            result = replace(result, prefetch_count=result.concurrency)
        return result


@dataclass(frozen=True)
class QueueOptions:
    """Queue-wide defaults for new consumers.

    Values outside an option's valid range fall back to the default.
    """

    poll_interval: float = DEFAULT_POLL_INTERVAL
    backoff_func: BackoffFunc = exponential_backoff
    concurrency: int = DEFAULT_CONCURRENCY
    prefetch_count: int = DEFAULT_PREFETCH_COUNT
    max_retries: int = DEFAULT_MAX_RETRIES
    job_timeout: float = DEFAULT_JOB_TIMEOUT
    cleanup_processed_interval: float = DEFAULT_CLEANUP_PROCESSED_INTERVAL
    cleanup_processed_age: float = DEFAULT_CLEANUP_PROCESSED_AGE
    cleanup_dlq_interval: float = DEFAULT_CLEANUP_DLQ_INTERVAL
    cleanup_dlq_age: float = DEFAULT_CLEANUP_DLQ_AGE
    cleanup_batch: int = DEFAULT_CLEANUP_BATCH

    def __post_init__(self) -> None:
        for spec in fields(self):
            value = _normalize(spec.name, getattr(self, spec.name))
            if not _valid(spec.name, value):
                value = spec.default
            object.__setattr__(self, spec.name, value)

    def consumer_defaults(self) -> ConsumerOptions:
        """Return consumer settings seeded from these defaults."""
        return ConsumerOptions(**{spec.name: getattr(self, spec.name) for spec in fields(self)})


def normalize_delay(delay: float | timedelta | None) -> float:
    """Return a publish delay in seconds; non-positive delays become zero."""
    if delay is None:
        return 0.0
    seconds = _seconds(delay)
    return seconds if seconds > 0 else 0.0