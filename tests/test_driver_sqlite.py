import sqlite3
import time
from contextlib import closing

import pytest

from sqlq.driver_sqlite import SQLiteDriver
from sqlq.models import DuplicateConsumerError, JobNotFoundError
from sqlq.token_bucket import TokenBucket

PAYLOAD = b"Hi"
TRACE_CONTEXT = {"foo": "bar"}


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "queue.db"


@pytest.fixture
def driver(db_path):
    drv = SQLiteDriver(lambda: sqlite3.connect(db_path))
    drv.init_schema()
    return drv


def query(db_path, sql, params=()):
    with closing(sqlite3.connect(db_path)) as conn:
        return conn.execute(sql, params).fetchall()


def now_ms():
    return time.time_ns() // 1_000_000


def test_init_schema_is_idempotent(driver, db_path):
    driver.init_schema()
    tables = {row[0] for row in query(db_path, "SELECT name FROM sqlite_master WHERE type='table'")}
    assert {"jobs", "dead_letter_queue"} <= tables

    driver.insert_job("after_reinit", PAYLOAD, 0, {})
    jobs = driver.get_jobs_for_consumer("after_reinit", 10)
    assert [job.payload for job in jobs] == [PAYLOAD]


def test_insert_with_delay(driver, db_path):
    delay = 30 * 60
    expected_scheduled = now_ms() + delay * 1000
    driver.insert_job("insert_with_delay", PAYLOAD, delay, TRACE_CONTEXT)

    rows = query(
        db_path,
        "SELECT job_type, payload, created_at, scheduled_at FROM jobs WHERE job_type = ?",
        ("insert_with_delay",),
    )
    assert len(rows) == 1
    job_type, payload, created_at, scheduled_at = rows[0]
    assert job_type == "insert_with_delay"
    assert payload == PAYLOAD
    assert abs(scheduled_at - expected_scheduled) < 1000
    assert now_ms() - created_at < 5000


def test_get_jobs_for_consumer(driver):
    driver.insert_job("GetJobsForConsumer", PAYLOAD, 0, TRACE_CONTEXT)
    jobs = driver.get_jobs_for_consumer("GetJobsForConsumer", 10)
    assert len(jobs) == 1
    job = jobs[0]
    assert job.payload == PAYLOAD
    assert job.job_type == "GetJobsForConsumer"
    assert job.trace_context == TRACE_CONTEXT
    assert job.retry_count == 0


def test_get_jobs_for_consumer_respects_delay(driver):
    driver.insert_job("delayed", PAYLOAD, 30 * 60, TRACE_CONTEXT)
    assert driver.get_jobs_for_consumer("delayed", 10) == []


def test_get_jobs_empty_trace_context(driver):
    driver.insert_job("no_trace", PAYLOAD, 0, {})
    jobs = driver.get_jobs_for_consumer("no_trace", 10)
    assert [job.trace_context for job in jobs] == [{}]


def test_get_jobs_respects_prefetch_and_order(driver):
    for index in range(5):
        driver.insert_job("batch", bytes([index]), 0, {})
    first = driver.get_jobs_for_consumer("batch", 3)
    second = driver.get_jobs_for_consumer("batch", 3)
    assert [job.payload for job in first] == [b"\x00", b"\x01", b"\x02"]
    assert [job.payload for job in second] == [b"\x03", b"\x04"]


def test_millisecond_time_precision(driver, db_path):
    start = now_ms()
    driver.insert_job("epoch_test", PAYLOAD, 0, TRACE_CONTEXT)
    created_at, scheduled_at = query(
        db_path, "SELECT created_at, scheduled_at FROM jobs WHERE job_type = ?", ("epoch_test",)
    )[0]
    assert start - 5000 < created_at < start + 5000
    assert created_at == scheduled_at

    jobs = driver.get_jobs_for_consumer("epoch_test", 10)
    assert [job.payload for job in jobs] == [PAYLOAD]

    for _ in range(3):
        driver.insert_job("precision_test", PAYLOAD, 0, TRACE_CONTEXT)
        time.sleep(0.002)
    timestamps = [
        row[0]
        for row in query(
            db_path,
            "SELECT created_at FROM jobs WHERE job_type = 'precision_test' ORDER BY created_at",
        )
    ]
    assert len(timestamps) == 3
    assert len(set(timestamps)) > 1


def test_concurrent_fetch_does_not_return_claimed_job(driver, db_path):
    driver.insert_job("concurrent_race_test", PAYLOAD, 0, TRACE_CONTEXT)
    jobs1 = driver.get_jobs_for_consumer("concurrent_race_test", 1)
    assert len(jobs1) == 1
    jobs2 = driver.get_jobs_for_consumer("concurrent_race_test", 1)
    assert jobs2 == []

    driver.mark_job_processed(jobs1[0].id)
    processed = query(db_path, "SELECT processed_at FROM jobs WHERE id = ?", (jobs1[0].id,))
    assert processed[0][0] is not None


def test_mark_processed_ignores_unclaimed_job(driver, db_path):
    driver.insert_job("unclaimed", PAYLOAD, 0, {})
    job_id = query(db_path, "SELECT id FROM jobs WHERE job_type = 'unclaimed'")[0][0]
    driver.mark_job_processed(job_id)
    assert query(db_path, "SELECT processed_at FROM jobs WHERE id = ?", (job_id,)) == [(None,)]


def test_mark_failed_and_reschedule_immediately(driver, db_path):
    driver.insert_job("retry", PAYLOAD, 0, {})
    job = driver.get_jobs_for_consumer("retry", 1)[0]
    driver.mark_job_failed_and_reschedule(job.id, "boom", 0)

    row = query(
        db_path, "SELECT retry_count, last_error, consumed_at FROM jobs WHERE id = ?", (job.id,)
    )
    assert row == [(1, "boom", None)]
    again = driver.get_jobs_for_consumer("retry", 1)
    assert [(j.id, j.retry_count) for j in again] == [(job.id, 1)]


def test_mark_failed_with_backoff_delays_job(driver):
    driver.insert_job("retry_later", PAYLOAD, 0, {})
    job = driver.get_jobs_for_consumer("retry_later", 1)[0]
    driver.mark_job_failed_and_reschedule(job.id, "boom", 60)
    assert driver.get_jobs_for_consumer("retry_later", 1) == []


def test_move_to_dead_letter_queue(driver, db_path):
    driver.insert_job("to_dlq", PAYLOAD, 0, {})
    job = driver.get_jobs_for_consumer("to_dlq", 1)[0]
    driver.move_to_dead_letter_queue(job.id, "too many failures")

    dlq = driver.get_dead_letter_jobs("to_dlq", 10)
    assert len(dlq) == 1
    entry = dlq[0]
    assert entry.original_id == job.id
    assert entry.job_type == "to_dlq"
    assert entry.payload == PAYLOAD
    assert entry.retry_count == 0
    assert entry.failure_reason == "too many failures"
    assert entry.created_at <= entry.failed_at
    assert query(db_path, "SELECT id FROM jobs WHERE id = ?", (job.id,)) == []


def test_move_missing_job_raises(driver):
    with pytest.raises(JobNotFoundError):
        driver.move_to_dead_letter_queue(9999, "missing")


def test_requeue_missing_job_raises(driver):
    with pytest.raises(JobNotFoundError):
        driver.requeue_dead_letter_job(9999)


def test_requeue_dead_letter_job(driver):
    driver.insert_job("requeue", PAYLOAD, 0, {})
    job = driver.get_jobs_for_consumer("requeue", 1)[0]
    driver.mark_job_failed_and_reschedule(job.id, "boom", 0)
    driver.move_to_dead_letter_queue(job.id, "dead")
    assert driver.get_dead_letter_jobs("requeue", 10)[0].retry_count == 1

    driver.requeue_dead_letter_job(job.id)
    assert driver.get_dead_letter_jobs("requeue", 10) == []
    requeued = driver.get_jobs_for_consumer("requeue", 10)
    assert [(j.payload, j.retry_count) for j in requeued] == [(PAYLOAD, 0)]


def test_dead_letter_jobs_filter_limit_and_order(driver):
    for job_type in ("type_a", "type_b", "type_a"):
        driver.insert_job(job_type, job_type.encode(), 0, {})
        job = driver.get_jobs_for_consumer(job_type, 1)[0]
        driver.move_to_dead_letter_queue(job.id, "fail")
        time.sleep(0.01)

    only_a = driver.get_dead_letter_jobs("type_a", 10)
    assert [j.job_type for j in only_a] == ["type_a", "type_a"]
    assert only_a[0].failed_at >= only_a[1].failed_at

    everything = driver.get_dead_letter_jobs("", 10)
    assert {j.job_type for j in everything} == {"type_a", "type_b"}
    assert everything[0].job_type == "type_a"
    assert len(driver.get_dead_letter_jobs("", 1)) == 1


def test_cleanup_jobs_deletes_processed_in_batches(driver, db_path):
    for _ in range(5):
        driver.insert_job("cleanup", PAYLOAD, 0, {})
    driver.insert_job("cleanup", PAYLOAD, 0, {})
    jobs = driver.get_jobs_for_consumer("cleanup", 5)
    for job in jobs:
        driver.mark_job_processed(job.id)

    assert driver.cleanup_jobs("cleanup", -60, 2) == 5
    assert query(db_path, "SELECT COUNT(*) FROM jobs WHERE job_type = 'cleanup'") == [(1,)]


def test_cleanup_jobs_keeps_recent(driver):
    driver.insert_job("recent", PAYLOAD, 0, {})
    job = driver.get_jobs_for_consumer("recent", 1)[0]
    driver.mark_job_processed(job.id)
    assert driver.cleanup_jobs("recent", 3600, 10) == 0


def test_cleanup_dead_letter_queue_jobs(driver):
    for _ in range(3):
        driver.insert_job("dlq_cleanup", PAYLOAD, 0, {})
    for job in driver.get_jobs_for_consumer("dlq_cleanup", 3):
        driver.move_to_dead_letter_queue(job.id, "fail")

    assert driver.cleanup_dead_letter_queue_jobs("dlq_cleanup", 3600, 10) == 0
    assert driver.cleanup_dead_letter_queue_jobs("dlq_cleanup", -60, 2) == 3
    assert driver.get_dead_letter_jobs("dlq_cleanup", 10) == []


def test_cleanup_rejects_zero_batch(driver):
    with pytest.raises(ValueError):
        driver.cleanup_jobs("any", 0, 0)


def test_subscribe_twice_raises(driver):
    driver.subscribe_for_consumer("sub", None)
    with pytest.raises(DuplicateConsumerError):
        driver.subscribe_for_consumer("sub", None)


def test_insert_notifies_subscriber(driver):
    event = driver.subscribe_for_consumer("notify", None)
    assert not event.is_set()
    driver.insert_job("other", PAYLOAD, 0, {})
    assert not event.is_set()
    driver.insert_job("notify", PAYLOAD, 0, {})
    assert event.is_set()


def test_notifications_are_rate_limited(driver):
    event = driver.subscribe_for_consumer("limited", TokenBucket(capacity=1, rpm=0))
    driver.insert_job("limited", PAYLOAD, 0, {})
    assert event.is_set()
    event.clear()
    driver.insert_job("limited", PAYLOAD, 0, {})
    assert not event.is_set()