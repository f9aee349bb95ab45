# sqlq

A job queue that keeps its jobs in an SQL database. Jobs are published
with a JSON-serialisable payload, picked up by background worker threads,
rescheduled with exponential backoff when a handler fails, and moved to a
dead letter queue once their retries are used up.

SQLite and PostgreSQL are supported. The package has no dependencies of
its own: SQLite goes through the standard `sqlite3` module, and for
PostgreSQL you supply any DB-API 2.0 driver that uses `%s` placeholders.

## Installing

```
pip install sqlq
```

To run the test suite:

```
pip install "sqlq[test]"
pytest
```

## Using it

The package's `__init__` exports nothing; import from the modules.

```python
import functools
import json
import sqlite3

from sqlq.models import DBType
from sqlq.options import QueueOptions
from sqlq.queue import JobsQueue

connect = functools.partial(sqlite3.connect, "jobs.db")

with JobsQueue(connect, DBType.SQLITE, QueueOptions()) as queue:
    queue.run()  # creates the tables if they are missing

    def send_welcome(ctx, conn, payload):
        message = json.loads(payload)
        print("welcome", message["user"])

    queue.consume("send_welcome", send_welcome, max_retries=3)

    queue.publish("send_welcome", {"user": "someone@example.com"}, None)
```

- `JobsQueue(connect, db_type, options)` takes a callable that returns a
  new DB-API connection. Every database operation opens its own connection
  and closes it afterwards, so an SQLite database must be a file (or a
  shared-cache URI), not a private `:memory:` one. `db_type` is a `DBType`
  or the string `"sqlite"` / `"postgres"`; anything else raises
  `UnsupportedDBTypeError` (from `sqlq.queue.get_driver`).
- `run()` creates the schema. It is safe to call more than once; a failure
  is logged, not raised.
- `publish(job_type, payload, delay)` encodes the payload as JSON and
  stores the job; a payload that cannot be encoded raises `TypeError`.
  With a positive `delay` (seconds or a `timedelta`) the job is not handed
  out before that time. `publish_tx(conn, job_type, payload, delay)` takes
  a connection you hold, but the job is still written through the queue's
  own connection, not through `conn`.
- `consume(job_type, handler, **options)` starts a polling thread, worker
  threads and cleanup threads for one job type. A second consumer for the
  same job type raises `DuplicateConsumerError`.
- `shutdown()`, also called when the `with` block ends, stops every
  consumer and waits for its threads. Jobs already being handled finish.

## Handlers

A handler is called as `handler(ctx, conn, payload)`:

- `ctx` is a `sqlq.consumer.JobContext`. Its `done`, `error`, `deadline`
  and `wait(timeout)` tell the handler whether the job timeout has run out.
- `conn` is a fresh connection from `connect`; it is committed when the
  handler returns, whether the job succeeded or not, and then closed.
- `payload` is the JSON payload as bytes.

Raising an exception counts as a failure, and so does returning after the
job timeout has passed; the failure reason stored is the exception's text
(`"context deadline exceeded"` for a timeout).

## Failures and the dead letter queue

A failed job whose retry count is below the consumer's `max_retries` is
rescheduled; `-1` means retry forever. The delay comes from the
consumer's `backoff_func`, called with the number of the coming retry. The
default, `sqlq.backoff.exponential_backoff(n)`, returns `2 ** n` seconds
plus a random whole number of seconds from `0` to `n - 1`, so the first
retry waits 2 s, the second 4–5 s, the third 8–10 s, and so on.

Once the retries are used up the job is moved to the dead letter queue:

```python
for dead in queue.get_dead_letter_jobs("send_welcome", 10):
    print(dead.original_id, dead.retry_count, dead.failure_reason)
    queue.requeue_dead_letter_job(dead.original_id)
```

`get_dead_letter_jobs` returns `DeadLetterJob` records, most recent failure
first; an empty job type lists every type. `requeue_dead_letter_job` puts
the job back with its retry count reset, and raises `JobNotFoundError` if
there is no such dead letter job.

## Settings

Queue-wide defaults live in `sqlq.options.QueueOptions`; each consumer may
override them with keyword arguments to `consume`, which become a
`ConsumerOptions`. Durations are seconds (a `timedelta` is accepted).

| Option | Default |
| --- | --- |
| `poll_interval` | 0.1 s |
| `concurrency` | number of CPUs |
| `prefetch_count` | same as concurrency, never less |
| `max_retries` | 3 |
| `job_timeout` | 15 minutes |
| `backoff_func` | `exponential_backoff` |
| `cleanup_processed_interval` / `cleanup_processed_age` | 1 hour / 7 days |
| `cleanup_dlq_interval` / `cleanup_dlq_age` | 6 hours / 30 days |
| `cleanup_batch` | 500 |
| `async_push` / `async_push_rate_limit` | off / no limit (consumer only) |

Values outside an option's valid range (for example a non-positive
concurrency, or `max_retries` below `-1`) are ignored and the default kept.
An unknown keyword to `consume` raises `TypeError`. A cleanup interval of
zero or less turns that cleanup off.

With SQLite, `async_push=True` wakes the consumer as soon as a job of its
type is published in the same process instead of waiting for the next
poll; `async_push_rate_limit` caps the wake-ups per minute. PostgreSQL
consumers poll only, and asking for async push raises
`PushNotSupportedError`.

## What it does not do

- There is no command-line tool or server; the queue is used as a library.
- No trace context is attached to published jobs.
- Jobs already claimed from the database but not yet started when a
  consumer shuts down stay claimed and are not handed out again.