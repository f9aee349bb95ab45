"""Database driver interface and transaction helper."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from contextlib import contextmanager, suppress
from typing import Any

from .models import DeadLetterJob, Job
from .token_bucket import TokenBucket


class Driver(ABC):
    """Database-specific storage operations of the queue. Durations are seconds."""

    @abstractmethod
    def init_schema(self) -> None:
        """Create tables and indexes if missing; safe to call repeatedly."""

    @abstractmethod
    def insert_job(
        self,
        job_type: str,
        payload: bytes,
        delay: float,
        trace_context: Mapping[str, str],
    ) -> None:
        """Insert a job that becomes available after ``delay`` seconds."""

    @abstractmethod
    def get_jobs_for_consumer(self, job_type: str, prefetch_count: int) -> list[Job]:
        """Claim up to ``prefetch_count`` available jobs.

        A claimed job is not returned again unless it is rescheduled.
        """

    @abstractmethod
    def subscribe_for_consumer(
        self, job_type: str, token_bucket: TokenBucket | None
    ) -> threading.Event | None:
        """Return an event set when new jobs may be available, or None.

        None means the driver cannot push notifications. The optional
        token bucket limits how often the event is set.
        """

    @abstractmethod
    def mark_job_processed(self, job_id: int) -> None:
        """Mark a claimed job as successfully processed."""

    @abstractmethod
    def mark_job_failed_and_reschedule(self, job_id: int, error_msg: str, backoff: float) -> None:
        """Record a failure, bump the retry count and reschedule after ``backoff``."""

    @abstractmethod
    def move_to_dead_letter_queue(self, job_id: int, reason: str) -> None:
        """Move a job to the dead letter queue; raise JobNotFoundError if absent."""

    @abstractmethod
    def get_dead_letter_jobs(self, job_type: str, limit: int) -> list[DeadLetterJob]:
        """Return dead letter jobs, newest failure first; empty type means all."""

    @abstractmethod
    def requeue_dead_letter_job(self, original_job_id: int) -> None:
        """Move a dead letter job back to the queue; raise JobNotFoundError if absent."""

    @abstractmethod
    def cleanup_jobs(self, job_type: str, max_age: float, batch_size: int) -> int:
        """Delete processed jobs older than ``max_age`` in batches; return the count."""

    @abstractmethod
    def cleanup_dead_letter_queue_jobs(self, job_type: str, max_age: float, batch_size: int) -> int:
        """Delete dead letter jobs older than ``max_age`` in batches; return the count."""


@contextmanager
def transaction(conn: Any) -> Iterator[Any]:
    """Run a block in a transaction on a DB-API connection.

    Commits when the block succeeds; rolls back and re-raises otherwise.
    Errors from the rollback itself are ignored.
    """
    try:
        yield conn
        conn.commit()
    except BaseException:
        with suppress(Exception):
            conn.rollback()
        raise