"""The job queue: publishing, consuming and dead letter handling."""

from __future__ import annotations

import json
import logging
import threading
from datetime import timedelta
from typing import Any, Callable

from .consumer import Consumer, Handler
from .driver import Driver
from .driver_postgres import PostgresDriver
from .driver_sqlite import SQLiteDriver
from .models import (
    DBType,
    DeadLetterJob,
    DuplicateConsumerError,
    PushNotSupportedError,
    UnsupportedDBTypeError,
)
from .options import QueueOptions, normalize_delay

logger = logging.getLogger(__name__)


def get_driver(connect: Callable[[], Any], db_type: DBType | str) -> Driver:
    """Return the storage driver for ``db_type``.

    Raises UnsupportedDBTypeError for unknown database types.
    """
    try:
        kind = DBType(db_type)
    except ValueError:
        raise UnsupportedDBTypeError(db_type) from None
    if kind is DBType.SQLITE:
        return SQLiteDriver(connect)
    return PostgresDriver(connect)


def _encode_payload(payload: Any) -> bytes:
    try:
        text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise TypeError(f"failed to marshal payload: {exc}") from exc
    return text.encode("utf-8")


class JobsQueue:
    """A job queue stored in an SQL database.

    ``connect`` returns a new DB-API connection to the database. Payloads are
    stored as JSON. Use as a context manager to shut consumers down on exit.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        db_type: DBType | str,
        options: QueueOptions | None = None,
    ) -> None:
        self._driver = get_driver(connect, db_type)
        self.db_type = DBType(db_type)
        self.options = options if options is not None else QueueOptions()
        self._connect = connect
        self._consumers: dict[str, Consumer] = {}
        self._consumers_lock = threading.Lock()

    def run(self) -> None:
        """Create the database schema if it does not exist yet.

        Failures are logged and do not stop the queue.
        """
        try:
            self._driver.init_schema()
        except Exception:
            logger.exception("failed to initialise the queue schema")

    def publish(
        self, job_type: str, payload: Any, delay: float | timedelta | None = None
    ) -> None:
        """Add a job whose payload is ``payload`` encoded as JSON.

        With a positive ``delay`` (seconds) the job becomes available later.
        Raises TypeError if the payload cannot be encoded.
        """
        self.publish_tx(None, job_type, payload, delay)

    def publish_tx(
        self,
        conn: Any,
        job_type: str,
        payload: Any,
        delay: float | timedelta | None = None,
    ) -> None:
        """Add a job while the caller holds the connection ``conn``.

        The driver inserts the job through its own connection; ``conn`` is
        not written to.
        """
        payload_bytes = _encode_payload(payload)
        self._driver.insert_job(job_type, payload_bytes, normalize_delay(delay), {})

    def consume(self, job_type: str, handler: Handler, **kwargs: Any) -> None:
        """Start processing jobs of ``job_type`` with ``handler``.

        The handler is called as ``handler(context, connection, payload)`` and
        signals failure by raising. Keyword arguments override the queue's
        consumer defaults (see ``ConsumerOptions``).

        Raises PushNotSupportedError if async push is asked of a database
        other than SQLite, and DuplicateConsumerError if ``job_type`` already
        has a consumer.
        """
        options = self.options.consumer_defaults().apply(**kwargs)
        if options.async_push and self.db_type is not DBType.SQLITE:
            raise PushNotSupportedError(self.db_type)

        consumer = Consumer(self._connect, self._driver, job_type, handler, options)
        with self._consumers_lock:
            if job_type in self._consumers:
                raise DuplicateConsumerError(job_type)
            self._consumers[job_type] = consumer
        consumer.start()

    def get_dead_letter_jobs(self, job_type: str, limit: int) -> list[DeadLetterJob]:
        """Return up to ``limit`` dead letter jobs; an empty type means all types."""
        return self._driver.get_dead_letter_jobs(job_type, limit)

    def requeue_dead_letter_job(self, original_job_id: int) -> None:
        """Move a dead letter job back to the queue.

        Raises JobNotFoundError if there is no such dead letter job.
        """
        self._driver.requeue_dead_letter_job(original_job_id)

    def shutdown(self) -> None:
        """Stop all consumers and wait for them to finish."""
        with self._consumers_lock:
            consumers = list(self._consumers.values())
        threads = [
            threading.Thread(target=consumer.shutdown, name=f"sqlq-shutdown-{consumer.job_type}")
            for consumer in consumers
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def __enter__(self) -> JobsQueue:
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()