import sqlite3

import pytest

from sqlq.driver import Driver, transaction

ABSTRACT_METHODS = (
    "init_schema",
    "insert_job",
    "get_jobs_for_consumer",
    "subscribe_for_consumer",
    "mark_job_processed",
    "mark_job_failed_and_reschedule",
    "move_to_dead_letter_queue",
    "get_dead_letter_jobs",
    "requeue_dead_letter_job",
    "cleanup_jobs",
    "cleanup_dead_letter_queue_jobs",
)


class _RecordingConnection:
    def __init__(self, fail_commit=False, fail_rollback=False):
        self.calls = []
        self.fail_commit = fail_commit
        self.fail_rollback = fail_rollback

    def commit(self):
        self.calls.append("commit")
        if self.fail_commit:
            raise RuntimeError("commit failed")

    def rollback(self):
        self.calls.append("rollback")
        if self.fail_rollback:
            raise RuntimeError("rollback failed")


def test_driver_cannot_be_instantiated():
    with pytest.raises(TypeError) as info:
        Driver()
    message = str(info.value)
    for name in ABSTRACT_METHODS:
        assert name in message


def test_transaction_commits_on_success():
    conn = _RecordingConnection()
    with transaction(conn) as tx:
        assert tx is conn
    assert conn.calls == ["commit"]


def test_transaction_rolls_back_on_error():
    conn = _RecordingConnection()
    with pytest.raises(ValueError):
        with transaction(conn):
            raise ValueError("boom")
    assert conn.calls == ["rollback"]


def test_transaction_ignores_rollback_failure():
    conn = _RecordingConnection(fail_rollback=True)
    with pytest.raises(ValueError, match="boom"):
        with transaction(conn):
            raise ValueError("boom")
    assert conn.calls == ["rollback"]


def test_transaction_commit_failure_propagates():
    conn = _RecordingConnection(fail_commit=True)
    with pytest.raises(RuntimeError, match="commit failed"):
        with transaction(conn):
            pass
    assert conn.calls == ["commit", "rollback"]


def test_transaction_with_sqlite(tmp_path):
    path = tmp_path / "tx.db"
    writer = sqlite3.connect(path)
    reader = sqlite3.connect(path)
    try:
        writer.execute("CREATE TABLE t (v INTEGER)")
        writer.commit()

        with transaction(writer) as conn:
            assert conn is writer
            conn.execute("INSERT INTO t VALUES (1)")
        assert reader.execute("SELECT v FROM t").fetchall() == [(1,)]

        with pytest.raises(RuntimeError):
            with transaction(writer) as conn:
                assert conn is writer
                conn.execute("INSERT INTO t VALUES (2)")
                raise RuntimeError("abort")
        assert reader.execute("SELECT v FROM t").fetchall() == [(1,)]
    finally:
        writer.close()
        reader.close()