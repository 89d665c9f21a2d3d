"""DuckDB session management and table initialization.

``get_db()`` hands the application its singleton connection.  Stores take
a connection in their constructor, so tests pass ``duckdb.connect(":memory:")``
after calling ``init_tables`` on it.

Timestamps are stored as naive UTC in TIMESTAMP columns; ``to_db_ts`` /
``from_db_ts`` convert at the boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone

import duckdb

from forecast_pipeline.config import settings
from forecast_pipeline.utils.logger import logger

_connection: duckdb.DuckDBPyConnection | None = None


def get_db() -> duckdb.DuckDBPyConnection:
    """Return the singleton DuckDB connection, creating tables on first call."""
    global _connection  # noqa: PLW0603
    if _connection is None:
        db_path = str(settings.DB_PATH)
        logger.info("Opening DuckDB at %s", db_path)
        _connection = duckdb.connect(db_path)
        init_tables(_connection)
    return _connection


def close_db() -> None:
    global _connection  # noqa: PLW0603
    if _connection is not None:
        _connection.close()
        _connection = None


def to_db_ts(dt: datetime | None) -> datetime | None:
    """Aware → naive UTC for storage.  Naive input is assumed to be UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def from_db_ts(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def init_tables(conn: duckdb.DuckDBPyConnection) -> None:
    """Create tables if they don't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS forecasters (
            id            VARCHAR PRIMARY KEY,
            name          VARCHAR NOT NULL,
            slug          VARCHAR NOT NULL,
            is_verified   BOOLEAN DEFAULT FALSE,
            expertise     VARCHAR DEFAULT '[]',
            social_links  VARCHAR DEFAULT '{}',
            metrics       VARCHAR DEFAULT '{}',
            created_at    TIMESTAMP
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS channels (
            id             VARCHAR PRIMARY KEY,
            forecaster_id  VARCHAR NOT NULL,
            type           VARCHAR NOT NULL,
            external_id    VARCHAR NOT NULL,
            url            VARCHAR DEFAULT '',
            is_primary     BOOLEAN DEFAULT FALSE,
            enabled        BOOLEAN DEFAULT TRUE,
            created_at     TIMESTAMP
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS channel_keywords (
            channel_id  VARCHAR NOT NULL,
            keyword     VARCHAR NOT NULL,
            position    INTEGER NOT NULL,
            PRIMARY KEY (channel_id, keyword)
        );
    """)

    # Idempotency key for the pipeline: one row per (channel, content item)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS processed_content (
            channel_id           VARCHAR NOT NULL,
            external_id          VARCHAR NOT NULL,
            job_id               VARCHAR,
            source_url           VARCHAR,
            predictions_created  INTEGER DEFAULT 0,
            processed_at         TIMESTAMP,
            PRIMARY KEY (channel_id, external_id)
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS predictions (
            id               VARCHAR PRIMARY KEY,
            forecaster_id    VARCHAR NOT NULL,
            asset_symbol     VARCHAR NOT NULL,
            asset_type       VARCHAR NOT NULL,
            prediction_text  VARCHAR NOT NULL,
            direction        VARCHAR NOT NULL,
            confidence       DOUBLE NOT NULL,
            baseline_price   DOUBLE,
            target_price     DOUBLE,
            target_date      DATE,
            created_at       TIMESTAMP NOT NULL,
            outcome          VARCHAR NOT NULL DEFAULT 'PENDING',
            validated_at     TIMESTAMP,
            metadata         VARCHAR DEFAULT '{}'
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS extraction_jobs (
            id               VARCHAR PRIMARY KEY,
            type             VARCHAR NOT NULL,
            status           VARCHAR NOT NULL,
            forecaster_ids   VARCHAR DEFAULT '[]',
            sources          VARCHAR DEFAULT '[]',
            request          VARCHAR DEFAULT '{}',
            created_at       TIMESTAMP NOT NULL,
            completed_at     TIMESTAMP,
            error            VARCHAR,
            results_summary  VARCHAR DEFAULT '{}'
        );
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS job_events (
            id          VARCHAR PRIMARY KEY,
            job_id      VARCHAR,
            timestamp   TIMESTAMP NOT NULL,
            phase       VARCHAR NOT NULL,
            event_type  VARCHAR NOT NULL,
            detail      VARCHAR,
            metadata    VARCHAR DEFAULT '{}',
            status      VARCHAR DEFAULT 'success'
        );
    """)

