"""Extraction job store — explicit, injected registry of job rows.

Status is one-directional: a row only leaves RUNNING, exactly once.
``transition`` re-reads the row and refuses to touch a terminal job, so
a late writer (e.g. a worker finishing after a cancel) cannot resurrect
or overwrite a final state.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta

import duckdb

from forecast_pipeline.config import settings
from forecast_pipeline.database import from_db_ts, to_db_ts, utcnow
from forecast_pipeline.errors import JobNotFound
from forecast_pipeline.models.job import ExtractionJob, JobStatus, JobType, ResultsSummary
from forecast_pipeline.utils.logger import logger

_COLUMNS = (
    "id, type, status, forecaster_ids, sources, request, created_at, "
    "completed_at, error, results_summary"
)


class JobStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self.conn = conn

    def create(
        self,
        job_type: JobType,
        *,
        forecaster_ids: list[str] | None = None,
        sources: list[str] | None = None,
        request: dict | None = None,
    ) -> ExtractionJob:
        job = ExtractionJob(
            id=uuid.uuid4().hex,
            type=job_type,
            forecaster_ids=forecaster_ids or [],
            sources=sources or [],
            request=request or {},
        )
        self.conn.execute(
            f"INSERT INTO extraction_jobs ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                job.id,
                job.type.value,
                job.status.value,
                json.dumps(job.forecaster_ids),
                json.dumps(job.sources),
                json.dumps(job.request),
                to_db_ts(job.created_at),
                None,
                None,
                job.results_summary.model_dump_json(),
            ],
        )
        logger.info("[Jobs] Created %s job %s", job.type.value, job.id)
        return job

    def get(self, job_id: str) -> ExtractionJob:
        row = self.conn.execute(
            f"SELECT {_COLUMNS} FROM extraction_jobs WHERE id = ?", [job_id],
        ).fetchone()
        if row is None:
            raise JobNotFound(job_id)
        return self._row_to_job(row)

    def update_summary(self, job_id: str, summary: ResultsSummary) -> None:
        """Progress update while the job is still RUNNING."""
        self.conn.execute(
            "UPDATE extraction_jobs SET results_summary = ? "
            "WHERE id = ? AND status = 'RUNNING'",
            [summary.model_dump_json(), job_id],
        )

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: str | None = None,
        summary: ResultsSummary | None = None,
    ) -> bool:
        """RUNNING → terminal.  Returns False if the job was already terminal."""
        status = JobStatus(status)
        if not status.is_terminal:
            msg = f"Cannot transition a job to {status.value}"
            raise ValueError(msg)
        current = self.get(job_id)
        if current.status.is_terminal:
            logger.debug(
                "[Jobs] Ignoring %s for job %s (already %s)",
                status.value, job_id, current.status.value,
            )
            return False
        payload = (summary or current.results_summary).model_dump_json()
        self.conn.execute(
            "UPDATE extraction_jobs "
            "SET status = ?, completed_at = ?, error = ?, results_summary = ? "
            "WHERE id = ? AND status = 'RUNNING'",
            [status.value, to_db_ts(utcnow()), error, payload, job_id],
        )
        logger.info("[Jobs] Job %s → %s", job_id, status.value)
        return True

    def list_recent(self, limit: int = 20) -> list[ExtractionJob]:
        rows = self.conn.execute(
            f"SELECT {_COLUMNS} FROM extraction_jobs ORDER BY created_at DESC LIMIT ?",
            [limit],
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def list_running(self) -> list[ExtractionJob]:
        rows = self.conn.execute(
            f"SELECT {_COLUMNS} FROM extraction_jobs WHERE status = 'RUNNING'"
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def statistics(self) -> dict:
        rows = self.conn.execute(
            "SELECT status, COUNT(*) FROM extraction_jobs GROUP BY status"
        ).fetchall()
        counts = {status.value.lower(): 0 for status in JobStatus}
        for status, count in rows:
            counts[status.lower()] = count
        total = sum(counts.values())
        finished = counts["completed"] + counts["failed"]
        return {
            "total": total,
            **counts,
            "success_rate": round(counts["completed"] / finished, 4) if finished else None,
        }

    def mark_orphaned_failed(self, *, known_running: set[str] | None = None) -> int:
        """Fail RUNNING rows that no live task owns (e.g. after a crash)."""
        orphaned = [
            job.id for job in self.list_running()
            if job.id not in (known_running or set())
        ]
        for job_id in orphaned:
            self.transition(
                job_id, JobStatus.FAILED,
                error="Job interrupted: process restarted while running",
            )
        if orphaned:
            logger.warning("[Jobs] Marked %d orphaned job(s) FAILED", len(orphaned))
        return len(orphaned)

    def cleanup(self, now: datetime | None = None) -> int:
        """Delete COMPLETED jobs older than the completed retention and
        FAILED jobs older than the failed retention."""
        now = now or utcnow()
        completed_cutoff = to_db_ts(now - timedelta(days=settings.JOB_RETENTION_COMPLETED_DAYS))
        failed_cutoff = to_db_ts(now - timedelta(days=settings.JOB_RETENTION_FAILED_DAYS))
        stale = self.conn.execute(
            """
            SELECT id FROM extraction_jobs
            WHERE (status = 'COMPLETED' AND completed_at < ?)
               OR (status = 'FAILED' AND completed_at < ?)
            """,
            [completed_cutoff, failed_cutoff],
        ).fetchall()
        ids = [r[0] for r in stale]
        if ids:
            placeholders = ", ".join("?" for _ in ids)
            self.conn.execute(f"DELETE FROM job_events WHERE job_id IN ({placeholders})", ids)
            self.conn.execute(f"DELETE FROM extraction_jobs WHERE id IN ({placeholders})", ids)
            logger.info("[Jobs] Cleaned up %d old job(s)", len(ids))
        return len(ids)

    @staticmethod
    def _row_to_job(row: tuple) -> ExtractionJob:
        return ExtractionJob(
            id=row[0],
            type=JobType(row[1]),
            status=JobStatus(row[2]),
            forecaster_ids=json.loads(row[3] or "[]"),
            sources=json.loads(row[4] or "[]"),
            request=json.loads(row[5] or "{}"),
            created_at=from_db_ts(row[6]) or utcnow(),
            completed_at=from_db_ts(row[7]),
            error=row[8],
            results_summary=ResultsSummary.model_validate_json(row[9] or "{}"),
        )
