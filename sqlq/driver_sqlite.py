"""SQLite storage driver.

Timestamps are stored as integer milliseconds since the Unix epoch.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable

from .driver import Driver, transaction
from .models import DeadLetterJob, DuplicateConsumerError, Job, JobNotFoundError
from .token_bucket import TokenBucket

logger = logging.getLogger(__name__)

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_type TEXT NOT NULL,
        payload BLOB,
        created_at INTEGER NOT NULL,
        scheduled_at INTEGER NOT NULL,
        retry_count INTEGER DEFAULT 0,
        last_error TEXT,
        trace_context TEXT,
        consumed_at INTEGER NULL,
        processed_at INTEGER NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_jobs_job_type ON jobs(job_type)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_scheduled_at_consumed_at ON jobs(scheduled_at, consumed_at)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_job_type_processed_at ON jobs(job_type, processed_at)",
    """CREATE TABLE IF NOT EXISTS dead_letter_queue (
        original_job_id INTEGER PRIMARY KEY,
        job_type TEXT NOT NULL,
        payload BLOB,
        created_at INTEGER NOT NULL,
        failed_at INTEGER NOT NULL,
        retry_count INTEGER,
        failure_reason TEXT
    )""",
    "CREATE INDEX IF NOT EXISTS idx_dlq_job_type ON dead_letter_queue(job_type)",
)

_DLQ_COLUMNS = (
    "original_job_id, job_type, payload, created_at, failed_at, retry_count, failure_reason"
)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _decode_trace_context(raw: str | None, job_id: int) -> dict[str, str]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except ValueError:
        logger.warning("failed to decode trace context of job %d", job_id)
        return {}
    if not isinstance(decoded, dict):
        logger.warning("trace context of job %d is not an object", job_id)
        return {}
    return {str(key): str(value) for key, value in decoded.items()}


class _Subscription:
    """Event-based notification of a consumer, optionally rate limited."""

    def __init__(self, bucket: TokenBucket | None) -> None:
        self.event = threading.Event()
        self.bucket = bucket

    def notify(self) -> None:
        if self.bucket is None or self.bucket.spend_token(_now_ms()):
            self.event.set()


class SQLiteDriver(Driver):
    """Driver storing the queue in SQLite.

    ``connect`` is a callable returning a new ``sqlite3`` connection to the
    database. Database access is serialized within the process.
    """

    def __init__(self, connect: Callable[[], sqlite3.Connection]) -> None:
        self._connect = connect
        self._db_lock = threading.Lock()
        self._notif_lock = threading.Lock()
        self._subscriptions: dict[str, _Subscription] = {}

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._db_lock:
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()

    def init_schema(self) -> None:
        with self._session() as conn, transaction(conn):
            for statement in _SCHEMA:
                conn.execute(statement)

    def insert_job(
        self,
        job_type: str,
        payload: bytes,
        delay: float,
        trace_context: Mapping[str, str],
    ) -> None:
        encoded_context = json.dumps(dict(trace_context)) if trace_context else ""
        now_ms = _now_ms()
        scheduled_ms = now_ms + int(delay * 1000) if delay > 0 else now_ms

        try:
            with self._session() as conn, transaction(conn):
                conn.execute(
                    "INSERT INTO jobs (job_type, payload, created_at, scheduled_at, trace_context) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (job_type, bytes(payload), now_ms, scheduled_ms, encoded_context),
                )
        except sqlite3.Error:
            logger.exception("failed to insert job of type %s", job_type)

        with self._notif_lock:
            subscription = self._subscriptions.get(job_type)
        if subscription is not None:
            subscription.notify()

    def get_jobs_for_consumer(self, job_type: str, prefetch_count: int) -> list[Job]:
        now_ms = _now_ms()
        claimed: list[Job] = []
        with self._session() as conn, transaction(conn):
            rows = conn.execute(
                """SELECT id, payload, retry_count, trace_context
                   FROM jobs
                   WHERE job_type = ? AND scheduled_at <= ? AND consumed_at IS NULL
                   ORDER BY id
                   LIMIT ?""",
                (job_type, now_ms, prefetch_count),
            ).fetchall()

            candidates = [
                Job(
                    id=job_id,
                    job_type=job_type,
                    payload=bytes(payload or b""),
                    retry_count=retry_count or 0,
                    trace_context=_decode_trace_context(raw_context, job_id),
                )
                for job_id, payload, retry_count, raw_context in rows
            ]

            for job in candidates:
                try:
                    cursor = conn.execute(
                        "UPDATE jobs SET consumed_at = ? WHERE id = ? AND consumed_at IS NULL",
                        (now_ms, job.id),
                    )
                except sqlite3.Error:
                    logger.warning("failed to claim job %d", job.id, exc_info=True)
                    continue
                if cursor.rowcount > 0:
                    claimed.append(job)
                else:
                    logger.debug("job %d already consumed", job.id)
        return claimed

    def subscribe_for_consumer(
        self, job_type: str, token_bucket: TokenBucket | None
    ) -> threading.Event:
        with self._notif_lock:
            if job_type in self._subscriptions:
                raise DuplicateConsumerError(job_type)
            subscription = _Subscription(token_bucket)
            self._subscriptions[job_type] = subscription
        return subscription.event

    def mark_job_processed(self, job_id: int) -> None:
        with self._session() as conn, transaction(conn):
            cursor = conn.execute(
                "UPDATE jobs SET processed_at = ? "
                "WHERE id = ? AND consumed_at IS NOT NULL AND processed_at IS NULL",
                (_now_ms(), job_id),
            )
        if cursor.rowcount == 0:
            logger.debug("no consumed, unprocessed job %d to mark processed", job_id)

    def mark_job_failed_and_reschedule(self, job_id: int, error_msg: str, backoff: float) -> None:
        scheduled_ms = _now_ms() + int(backoff * 1000)
        with self._session() as conn, transaction(conn):
            conn.execute(
                """UPDATE jobs SET
                       retry_count = retry_count + 1,
                       last_error = ?,
                       scheduled_at = ?,
                       consumed_at = NULL,
                       processed_at = NULL
                   WHERE id = ?""",
                (error_msg, scheduled_ms, job_id),
            )

    def move_to_dead_letter_queue(self, job_id: int, reason: str) -> None:
        with self._session() as conn, transaction(conn):
            row = conn.execute(
                "SELECT job_type, payload, created_at, retry_count FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
            if row is None:
                raise JobNotFoundError(job_id)
            job_type, payload, created_at, retry_count = row
            conn.execute(
                f"INSERT INTO dead_letter_queue ({_DLQ_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (job_id, job_type, payload, created_at, _now_ms(), retry_count, reason),
            )
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))

    def get_dead_letter_jobs(self, job_type: str, limit: int) -> list[DeadLetterJob]:
        if job_type:
            query = (
                f"SELECT {_DLQ_COLUMNS} FROM dead_letter_queue WHERE job_type = ? "
                "ORDER BY failed_at DESC LIMIT ?"
            )
            params: tuple[object, ...] = (job_type, limit)
        else:
            query = f"SELECT {_DLQ_COLUMNS} FROM dead_letter_queue ORDER BY failed_at DESC LIMIT ?"
            params = (limit,)

        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            DeadLetterJob(
                original_id=original_id,
                job_type=dlq_type,
                payload=bytes(payload or b""),
                created_at=_from_ms(created_at),
                failed_at=_from_ms(failed_at),
                retry_count=retry_count or 0,
                failure_reason=failure_reason or "",
            )
            for original_id, dlq_type, payload, created_at, failed_at, retry_count, failure_reason in rows
        ]

    def requeue_dead_letter_job(self, original_job_id: int) -> None:
        with self._session() as conn, transaction(conn):
            row = conn.execute(
                "SELECT job_type, payload FROM dead_letter_queue WHERE original_job_id = ?",
                (original_job_id,),
            ).fetchone()
            if row is None:
                raise JobNotFoundError(original_job_id)
            job_type, payload = row
            now_ms = _now_ms()
            conn.execute(
                "INSERT INTO jobs (job_type, payload, retry_count, created_at, scheduled_at) "
                "VALUES (?, ?, 0, ?, ?)",
                (job_type, payload, now_ms, now_ms),
            )
            conn.execute(
                "DELETE FROM dead_letter_queue WHERE original_job_id = ?", (original_job_id,)
            )

    def cleanup_jobs(self, job_type: str, max_age: float, batch_size: int) -> int:
        return self._delete_in_batches(
            """DELETE FROM jobs WHERE rowid IN (
                   SELECT rowid FROM jobs
                   WHERE job_type = ? AND processed_at < ?
                   LIMIT ?)""",
            job_type,
            max_age,
            batch_size,
        )

    def cleanup_dead_letter_queue_jobs(self, job_type: str, max_age: float, batch_size: int) -> int:
        return self._delete_in_batches(
            """DELETE FROM dead_letter_queue WHERE rowid IN (
                   SELECT rowid FROM dead_letter_queue
                   WHERE job_type = ? AND failed_at < ?
                   LIMIT ?)""",
            job_type,
            max_age,
            batch_size,
        )

    def _delete_in_batches(self, statement: str, job_type: str, max_age: float, batch_size: int) -> int:
        if batch_size <= 0:
            raise ValueError(f"batch size must be positive, got {batch_size}")
        threshold_ms = _now_ms() - int(max_age * 1000)
        total = 0
        while True:
            with self._session() as conn, transaction(conn):
                deleted = conn.execute(statement, (job_type, threshold_ms, batch_size)).rowcount
            total += deleted
            if deleted < batch_size:
                return total