"""A job queue stored in an SQLite or PostgreSQL database, with retries and a dead letter queue."""

__version__ = "0.1.0"