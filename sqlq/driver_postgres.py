"""PostgreSQL storage driver.

Works with any DB-API 2.0 connection using the ``format`` parameter style
(``%s`` placeholders).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .driver import Driver, transaction
from .models import DeadLetterJob, Job, JobNotFoundError
from .token_bucket import TokenBucket

logger = logging.getLogger(__name__)

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS jobs (
        id SERIAL PRIMARY KEY,
        job_type TEXT NOT NULL,
        payload BYTEA,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        scheduled_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        retry_count INTEGER DEFAULT 0,
        last_error TEXT,
        trace_context JSONB,
        consumed_at TIMESTAMP WITH TIME ZONE NULL,
        processed_at TIMESTAMP WITH TIME ZONE NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_jobs_job_type ON jobs(job_type)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_scheduled_at_consumed_at ON jobs(scheduled_at, consumed_at)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_job_type_processed_at ON jobs(job_type, processed_at)",
    """CREATE TABLE IF NOT EXISTS dead_letter_queue (
        original_job_id INTEGER PRIMARY KEY,
        job_type TEXT NOT NULL,
        payload BYTEA,
        created_at TIMESTAMP,
        failed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        retry_count INTEGER,
        failure_reason TEXT
    )""",
    "CREATE INDEX IF NOT EXISTS idx_dlq_job_type ON dead_letter_queue(job_type)",
)

_DLQ_COLUMNS = (
    "original_job_id, job_type, payload, created_at, failed_at, retry_count, failure_reason"
)


def _interval(seconds: float) -> str:
    return f"{round(seconds * 1000)} milliseconds"


def _decode_trace_context(raw: Any, job_id: int) -> dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    if isinstance(raw, str):
        if raw in ("", "null"):
            return {}
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("failed to decode trace context of job %d", job_id)
            return {}
    if not isinstance(raw, Mapping):
        logger.warning("trace context of job %d is not an object", job_id)
        return {}
    return {str(key): str(value) for key, value in raw.items()}


def _execute(conn: Any, statement: str, params: tuple[Any, ...] = ()) -> Any:
    cursor = conn.cursor()
    cursor.execute(statement, params)
    return cursor


class PostgresDriver(Driver):
    """Driver storing the queue in PostgreSQL.

    ``connect`` is a callable returning a new DB-API connection. Each
    operation uses its own connection, which is closed afterwards.
    """

    def __init__(self, connect: Callable[[], Any]) -> None:
        self._connect = connect

    @contextmanager
    def _session(self) -> Iterator[Any]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self._session() as conn, transaction(conn):
            for statement in _SCHEMA:
                _execute(conn, statement)

    def insert_job(
        self,
        job_type: str,
        payload: bytes,
        delay: float,
        trace_context: Mapping[str, str],
    ) -> None:
        encoded_context = json.dumps(dict(trace_context or {}))
        if delay <= 0:
            statement = "INSERT INTO jobs (job_type, payload, trace_context) VALUES (%s, %s, %s)"
            params: tuple[Any, ...] = (job_type, bytes(payload), encoded_context)
        else:
            statement = (
                "INSERT INTO jobs (job_type, payload, scheduled_at, trace_context) "
                "VALUES (%s, %s, NOW() + %s::interval, %s)"
            )
            params = (job_type, bytes(payload), _interval(delay), encoded_context)

        with self._session() as conn, transaction(conn):
            _execute(conn, statement, params)

    def get_jobs_for_consumer(self, job_type: str, prefetch_count: int) -> list[Job]:
        with self._session() as conn, transaction(conn):
            rows = _execute(
                conn,
                """UPDATE jobs
                   SET consumed_at = NOW()
                   WHERE id IN (
                       SELECT id
                       FROM jobs
                       WHERE job_type = %s
                         AND scheduled_at <= NOW()
                         AND consumed_at IS NULL
                       ORDER BY scheduled_at, id
                       LIMIT %s
                       FOR UPDATE SKIP LOCKED
                   )
                   RETURNING id, payload, retry_count, trace_context""",
                (job_type, prefetch_count),
            ).fetchall()

        return [
            Job(
                id=job_id,
                job_type=job_type,
                payload=bytes(payload or b""),
                retry_count=retry_count or 0,
                trace_context=_decode_trace_context(raw_context, job_id),
            )
            for job_id, payload, retry_count, raw_context in rows
        ]

    def subscribe_for_consumer(self, job_type: str, token_bucket: TokenBucket | None) -> None:
        """Async push is not available; always returns None."""
        return None

    def mark_job_processed(self, job_id: int) -> None:
        with self._session() as conn, transaction(conn):
            cursor = _execute(
                conn,
                "UPDATE jobs SET processed_at = NOW() "
                "WHERE id = %s AND consumed_at IS NOT NULL AND processed_at IS NULL",
                (job_id,),
            )
        if cursor.rowcount == 0:
            logger.debug("no consumed, unprocessed job %d to mark processed", job_id)

    def mark_job_failed_and_reschedule(self, job_id: int, error_msg: str, backoff: float) -> None:
        with self._session() as conn, transaction(conn):
            _execute(
                conn,
                """UPDATE jobs SET
                       retry_count = retry_count + 1,
                       last_error = %s,
                       scheduled_at = NOW() + %s::interval,
                       consumed_at = NULL,
                       processed_at = NULL
                   WHERE id = %s""",
                (error_msg, _interval(backoff), job_id),
            )

    def move_to_dead_letter_queue(self, job_id: int, reason: str) -> None:
        with self._session() as conn, transaction(conn):
            row = _execute(
                conn,
                "SELECT job_type, payload, created_at, retry_count FROM jobs WHERE id = %s",
                (job_id,),
            ).fetchone()
            if row is None:
                raise JobNotFoundError(job_id)
            job_type, payload, created_at, retry_count = row
            _execute(
                conn,
                "INSERT INTO dead_letter_queue "
                "(original_job_id, job_type, payload, created_at, retry_count, failure_reason) "
                "VALUES (%s, %s, %s, %s, %s, %s)",
                (job_id, job_type, payload, created_at, retry_count, reason),
            )
            _execute(conn, "DELETE FROM jobs WHERE id = %s", (job_id,))

    def get_dead_letter_jobs(self, job_type: str, limit: int) -> list[DeadLetterJob]:
        if job_type:
            statement = (
                f"SELECT {_DLQ_COLUMNS} FROM dead_letter_queue WHERE job_type = %s "
                "ORDER BY failed_at DESC LIMIT %s"
            )
            params: tuple[Any, ...] = (job_type, limit)
        else:
            statement = (
                f"SELECT {_DLQ_COLUMNS} FROM dead_letter_queue ORDER BY failed_at DESC LIMIT %s"
            )
            params = (limit,)

        with self._session() as conn, transaction(conn):
            rows = _execute(conn, statement, params).fetchall()

        return [
            DeadLetterJob(
                original_id=original_id,
                job_type=dlq_type,
                payload=bytes(payload or b""),
                created_at=created_at,
                failed_at=failed_at,
                retry_count=retry_count or 0,
                failure_reason=failure_reason or "",
            )
            for original_id, dlq_type, payload, created_at, failed_at, retry_count, failure_reason in rows
        ]

    def requeue_dead_letter_job(self, original_job_id: int) -> None:
        with self._session() as conn, transaction(conn):
            row = _execute(
                conn,
                "SELECT job_type, payload FROM dead_letter_queue WHERE original_job_id = %s",
                (original_job_id,),
            ).fetchone()
            if row is None:
                raise JobNotFoundError(original_job_id)
            job_type, payload = row
            _execute(
                conn,
                "INSERT INTO jobs (job_type, payload, retry_count, scheduled_at) "
                "VALUES (%s, %s, 0, NOW())",
                (job_type, payload),
            )
            _execute(
                conn,
                "DELETE FROM dead_letter_queue WHERE original_job_id = %s",
                (original_job_id,),
            )

    def cleanup_jobs(self, job_type: str, max_age: float, batch_size: int) -> int:
        return self._delete_in_batches(
            """DELETE FROM jobs WHERE ctid IN (
                   SELECT ctid FROM jobs
                   WHERE job_type = %s AND processed_at < %s
                   LIMIT %s)""",
            job_type,
            max_age,
            batch_size,
        )

    def cleanup_dead_letter_queue_jobs(self, job_type: str, max_age: float, batch_size: int) -> int:
        return self._delete_in_batches(
            """DELETE FROM dead_letter_queue WHERE ctid IN (
                   SELECT ctid FROM dead_letter_queue
                   WHERE job_type = %s AND failed_at < %s
                   LIMIT %s)""",
            job_type,
            max_age,
            batch_size,
        )

    def _delete_in_batches(
        self, statement: str, job_type: str, max_age: float, batch_size: int
    ) -> int:
        if batch_size <= 0:
            raise ValueError(f"batch size must be positive, got {batch_size}")
        threshold = datetime.now(timezone.utc) - timedelta(seconds=max_age)
        total = 0
        while True:
            with self._session() as conn, transaction(conn):
                deleted = _execute(conn, statement, (job_type, threshold, batch_size)).rowcount
            total += max(deleted, 0)
            if deleted < batch_size:
                return total