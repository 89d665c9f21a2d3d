"""Job Event Logger — persistent audit trail for extraction runs.

``log_event()`` records what happened at each stage of a job (collection,
transcription, extraction, persistence) in the ``job_events`` table.
Events are read back per job with ``get_events()``.
"""

from __future__ import annotations

import json
import uuid

import duckdb

from forecast_pipeline.database import from_db_ts, get_db, to_db_ts, utcnow
from forecast_pipeline.utils.logger import logger


def log_event(
    job_id: str | None,
    phase: str,
    event_type: str,
    detail: str,
    *,
    metadata: dict | None = None,
    status: str = "success",
    conn: duckdb.DuckDBPyConnection | None = None,
) -> None:
    """Write one event row to job_events.

    Parameters
    ----------
    job_id : str | None
        Owning extraction job (``None`` for scheduler/system events).
    phase : str
        ``collection``, ``transcription``, ``extraction``, ``persistence``,
        ``validation`` or ``system``.
    event_type : str
        Short event name, e.g. ``pair_started``, ``item_failed``.
    detail : str
        Human-readable summary.
    metadata : dict | None
        Arbitrary JSON blob with counts / specifics.
    status : str
        ``success`` | ``error`` | ``warning`` | ``skipped``.
    """
    try:
        db = conn or get_db()
        db.execute(
            """
            INSERT INTO job_events
                (id, job_id, timestamp, phase, event_type, detail, metadata, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                uuid.uuid4().hex,
                job_id,
                to_db_ts(utcnow()),
                phase,
                event_type,
                detail,
                json.dumps(metadata or {}, default=str),
                status,
            ],
        )
    except duckdb.Error as exc:
        # Never let audit failures break the pipeline
        logger.warning("[EventLogger] Failed to log event: %s", exc)


def get_events(
    job_id: str,
    *,
    limit: int = 500,
    conn: duckdb.DuckDBPyConnection | None = None,
) -> list[dict]:
    db = conn or get_db()
    rows = db.execute(
        """
        SELECT timestamp, phase, event_type, detail, metadata, status
        FROM job_events
        WHERE job_id = ?
        ORDER BY timestamp
        LIMIT ?
        """,
        [job_id, limit],
    ).fetchall()
    return [
        {
            "timestamp": from_db_ts(r[0]).isoformat() if r[0] else None,
            "phase": r[1],
            "event_type": r[2],
            "detail": r[3],
            "metadata": json.loads(r[4] or "{}"),
            "status": r[5],
        }
        for r in rows
    ]
