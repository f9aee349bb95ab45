"""Core data types and errors of the job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class DBType(str, Enum):
    """Supported database kinds."""

    SQLITE = "sqlite"
    POSTGRES = "postgres"

    def __str__(self) -> str:
        return self.value


@dataclass
class Job:
    """A job fetched from the queue for processing."""

    id: int
    job_type: str
    payload: bytes
    retry_count: int = 0
    trace_context: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class DeadLetterJob:
    """A job that was moved to the dead letter queue."""

    original_id: int
    job_type: str
    payload: bytes
    created_at: datetime
    failed_at: datetime
    retry_count: int
    failure_reason: str


class SqlqError(Exception):
    """Base class of all queue errors."""

    message = "sqlq error"

    def __init__(self, detail: Any = None) -> None:
        self.detail = detail
        text = self.message if detail is None else f"{self.message}: {detail}"
        super().__init__(text)


class DuplicateConsumerError(SqlqError):
    """A consumer was registered twice for the same job type."""

    message = ".Consume was called twice for same job type"


class UnsupportedDBTypeError(SqlqError):
    """The database type is not supported."""

    message = "unsupported database type"


class MaxRetriesExceededError(SqlqError):
    """A job failed more often than its retry limit allows."""

    message = "maximum retries exceeded"


class JobNotFoundError(SqlqError):
    """No job with the given id exists."""

    message = "job not found"


class PushNotSupportedError(SqlqError):
    """Async push was requested from a driver that cannot deliver it."""

    message = "async push is not supported"