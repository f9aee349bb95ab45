"""Background processing of the jobs of one job type."""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import CancelledError
from contextlib import suppress
from typing import Any, Callable

from .backoff import exponential_backoff
from .driver import Driver
from .models import Job, SqlqError
from .options import INFINITE_RETRIES, ConsumerOptions
from .token_bucket import TokenBucket

logger = logging.getLogger(__name__)

DEADLINE_EXCEEDED = "context deadline exceeded"
CANCELED = "context canceled"

# How long idle threads block before looking at the stop flag again.
_IDLE_WAIT = 0.05
# Keeps the fetch retry delay within what a thread wait can handle.
_MAX_FETCH_ATTEMPT = 30


class JobContext:
    """Cancellation state handed to a job handler.

    The context ends when ``cancel`` is called or when its optional timeout
    (in seconds) runs out; ``error`` then tells which of the two happened.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._error: BaseException | None = None
        self._deadline = time.monotonic() + timeout if timeout and timeout > 0 else None

    @property
    def deadline(self) -> float | None:
        """The ``time.monotonic()`` value at which the context expires, if any."""
        return self._deadline

    @property
    def error(self) -> BaseException | None:
        """``TimeoutError`` after expiry, ``CancelledError`` after cancel, else None."""
        with self._lock:
            if self._error is None and self._expired():
                self._error = TimeoutError(DEADLINE_EXCEEDED)
                self._event.set()
            return self._error

    @property
    def done(self) -> bool:
        """Whether the context has ended."""
        return self.error is not None

    def cancel(self) -> None:
        """End the context; an already ended context keeps its error."""
        with self._lock:
            if self._error is None:
                self._error = (
                    TimeoutError(DEADLINE_EXCEEDED) if self._expired() else CancelledError(CANCELED)
                )
        self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the context ends or ``timeout`` seconds pass; return ``done``."""
        end = None if timeout is None else time.monotonic() + timeout
        while not self.done:
            now = time.monotonic()
            limit = None if end is None else end - now
            if limit is not None and limit <= 0:
                return False
            if self._deadline is not None:
                remaining = self._deadline - now
                limit = remaining if limit is None else min(limit, remaining)
            self._event.wait(None if limit is None else max(limit, 0.0))
        return True

    def _expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline


Handler = Callable[[JobContext, Any, bytes], Any]


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


class Consumer:
    """Polls the queue for one job type and runs its handler on worker threads.

    ``connect`` returns a new DB-API connection; the handler is called as
    ``handler(context, connection, payload)`` and signals failure by raising.
    Its transaction is committed once the handler returns, whatever the outcome.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        driver: Driver,
        job_type: str,
        handler: Handler,
        options: ConsumerOptions | None = None,
    ) -> None:
        self.job_type = job_type
        self.options = options if options is not None else ConsumerOptions()
        self._connect = connect
        self._driver = driver
        self._handler = handler
        self._jobs: queue.Queue[Job] = queue.Queue(maxsize=max(1, self.options.prefetch_count))
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._notification: threading.Event | None = None
        self._started = False

    def start(self) -> None:
        """Launch the polling, worker and cleanup threads."""
        if self._started:
            raise RuntimeError(f"consumer for {self.job_type!r} already started")
        self._started = True

        if self.options.async_push:
            self._subscribe()

        self._spawn(self._fetch_loop, "fetch")
        for number in range(self.options.concurrency):
            self._spawn(self._worker_loop, f"worker-{number}")
        if self.options.cleanup_processed_interval > 0:
            self._spawn(
                lambda: self._cleanup_loop(
                    self.options.cleanup_processed_interval, self._cleanup_processed
                ),
                "cleanup-processed",
            )
        if self.options.cleanup_dlq_interval > 0:
            self._spawn(
                lambda: self._cleanup_loop(self.options.cleanup_dlq_interval, self._cleanup_dlq),
                "cleanup-dlq",
            )

    def shutdown(self) -> None:
        """Stop all threads and wait for them; jobs being handled are finished first."""
        self._stop.set()
        if self._notification is not None:
            self._notification.set()
        for thread in self._threads:
            thread.join()

    def fetch_jobs(self) -> int:
        """Claim available jobs and hand them to the workers; return how many."""
        jobs = self._driver.get_jobs_for_consumer(self.job_type, self.options.prefetch_count)
        handed = 0
        for job in jobs:
            if not self._put(job):
                break
            handed += 1
        return handed

    def process_job(self, job: Job) -> None:
        """Run the handler for one job and record the outcome in the queue."""
        try:
            conn = self._connect()
        except Exception:
            logger.exception("failed to open connection for job %d", job.id)
            return

        try:
            error = self._handle(job, conn)
            self._finish_transaction(conn, job)
        finally:
            with suppress(Exception):
                conn.close()

        if error is None:
            try:
                self._driver.mark_job_processed(job.id)
            except Exception:
                logger.exception("failed to mark job %d processed", job.id)
            return

        message = _describe(error)
        max_retries = self.options.max_retries
        if max_retries == INFINITE_RETRIES or job.retry_count < max_retries:
            try:
                backoff = self.options.backoff_func(job.retry_count + 1)
                self._driver.mark_job_failed_and_reschedule(job.id, message, backoff)
            except Exception:
                logger.exception("failed to reschedule job %d", job.id)
            return

        try:
            self._driver.move_to_dead_letter_queue(job.id, message)
        except Exception:
            logger.exception("failed to move job %d to the dead letter queue", job.id)

    def _spawn(self, target: Callable[[], None], role: str) -> None:
        thread = threading.Thread(target=target, name=f"sqlq-{self.job_type}-{role}", daemon=True)
        self._threads.append(thread)
        thread.start()

    def _subscribe(self) -> None:
        rpm = self.options.async_push_rate_limit
        bucket = TokenBucket(capacity=rpm, rpm=rpm) if rpm != 0 else None
        try:
            self._notification = self._driver.subscribe_for_consumer(self.job_type, bucket)
        except SqlqError:
            logger.warning("async push unavailable for job type %s", self.job_type, exc_info=True)
            self._notification = None

    def _put(self, job: Job) -> bool:
        while not self._stop.is_set():
            try:
                self._jobs.put(job, timeout=_IDLE_WAIT)
            except queue.Full:
                continue
            return True
        return False

    def _fetch_loop(self) -> None:
        attempt = 0
        while not self._stop.is_set():
            try:
                self.fetch_jobs()
            except Exception:
                logger.exception(
                    "failed to fetch jobs of type %s (attempt %d)", self.job_type, attempt
                )
                delay = exponential_backoff(attempt)
                attempt = min(attempt + 1, _MAX_FETCH_ATTEMPT)
                if self._stop.wait(delay):
                    return
                continue
            attempt = 0
            self._wait_for_next_poll()

    def _wait_for_next_poll(self) -> None:
        if self._notification is None:
            self._stop.wait(self.options.poll_interval)
            return
        if self._notification.wait(self.options.poll_interval):
            self._notification.clear()

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                job = self._jobs.get(timeout=_IDLE_WAIT)
            except queue.Empty:
                continue
            if self._stop.is_set():
                return
            self.process_job(job)

    def _handle(self, job: Job, conn: Any) -> BaseException | None:
        context = JobContext(self.options.job_timeout)
        try:
            self._handler(context, conn, job.payload)
        except Exception as exc:
            context.cancel()
            return exc
        error = context.error
        context.cancel()
        return error

    def _finish_transaction(self, conn: Any, job: Job) -> None:
        try:
            conn.commit()
        except Exception:
            logger.exception("failed to commit handler transaction of job %d", job.id)
            with suppress(Exception):
                conn.rollback()

    def _cleanup_loop(self, interval: float, action: Callable[[], None]) -> None:
        while not self._stop.wait(interval):
            action()

    def _cleanup_processed(self) -> None:
        try:
            deleted = self._driver.cleanup_jobs(
                self.job_type, self.options.cleanup_processed_age, self.options.cleanup_batch
            )
        except Exception as exc:
            logger.error("sqlq: processed cleanup failed for job_type %s: %s", self.job_type, exc)
            return
        logger.debug("deleted %d processed jobs of type %s", deleted, self.job_type)

    def _cleanup_dlq(self) -> None:
        try:
            deleted = self._driver.cleanup_dead_letter_queue_jobs(
                self.job_type, self.options.cleanup_dlq_age, self.options.cleanup_batch
            )
        except Exception as exc:
            logger.error("sqlq: dlq cleanup failed for job_type %s: %s", self.job_type, exc)
            return
        logger.debug("deleted %d dead letter jobs of type %s", deleted, self.job_type)