"""Extraction Scheduler — APScheduler-based recurring pipeline runs.

  - Hourly (minute 0, UTC):  bulk extraction over every enabled channel
  - Every 15 minutes:        outcome validation sweep
  - Daily 02:00 UTC:         old extraction job cleanup

Run history is the ``extraction_jobs`` table itself; the bulk run is
skipped while a previous bulk job is still RUNNING.
"""

from __future__ import annotations

from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from forecast_pipeline.database import utcnow
from forecast_pipeline.models.job import JobType
from forecast_pipeline.services.job_orchestrator import JobOrchestrator
from forecast_pipeline.services.job_store import JobStore
from forecast_pipeline.services.outcome_validator import OutcomeValidator
from forecast_pipeline.utils.logger import logger

_TZ = "UTC"

SCHEDULED_JOBS: list[dict[str, str]] = [
    {
        "id": "bulk_extraction",
        "name": "Bulk Channel Extraction",
        "schedule": "0 * * * *",
        "description": "Collect and extract predictions from every enabled channel",
    },
    {
        "id": "validation_sweep",
        "name": "Prediction Validation",
        "schedule": "*/15 * * * *",
        "description": "Grade PENDING predictions whose target date has passed",
    },
    {
        "id": "job_cleanup",
        "name": "Job Cleanup",
        "schedule": "0 2 * * *",
        "description": "Delete completed jobs after 3 days and failed jobs after 7 days",
    },
]


class ExtractionScheduler:
    """Owns the AsyncIOScheduler and the recurring pipeline jobs."""

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        validator: OutcomeValidator,
        jobs: JobStore,
    ) -> None:
        self._orchestrator = orchestrator
        self._validator = validator
        self._jobs = jobs
        self._scheduler: AsyncIOScheduler | None = None
        self.is_running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> dict:
        if self.is_running:
            return {"status": "already_running"}

        self._scheduler = AsyncIOScheduler(timezone=_TZ)
        handlers = self._handlers()
        for job_def in SCHEDULED_JOBS:
            self._scheduler.add_job(
                handlers[job_def["id"]],
                CronTrigger.from_crontab(job_def["schedule"], timezone=_TZ),
                id=job_def["id"],
                name=job_def["name"],
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        self._scheduler.start()
        self.is_running = True
        logger.info("[Scheduler] Started with %d jobs", len(SCHEDULED_JOBS))
        return {"status": "started", "jobs": len(self._scheduler.get_jobs())}

    def stop(self) -> dict:
        if not self.is_running or not self._scheduler:
            return {"status": "not_running"}

        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self.is_running = False
        logger.info("[Scheduler] Stopped")
        return {"status": "stopped"}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        return {
            "is_running": self.is_running,
            "jobs": self.list_scheduled_jobs(),
            "statistics": self._jobs.statistics(),
        }

    def list_scheduled_jobs(self, now: datetime | None = None) -> list[dict]:
        """``[{name, schedule, nextRun, description}]`` straight from the
        cron expressions, so it works whether or not the scheduler runs."""
        now = now or utcnow()
        out = []
        for job_def in SCHEDULED_JOBS:
            trigger = CronTrigger.from_crontab(job_def["schedule"], timezone=_TZ)
            next_run = trigger.get_next_fire_time(None, now)
            out.append({
                "name": job_def["name"],
                "schedule": job_def["schedule"],
                "nextRun": next_run.isoformat() if next_run else None,
                "description": job_def["description"],
            })
        return out

    # ------------------------------------------------------------------
    # Manual triggers
    # ------------------------------------------------------------------

    async def run_job(self, job_id: str) -> dict:
        handler = self._handlers().get(job_id)
        if not handler:
            return {"error": f"Unknown job: {job_id}"}
        await handler()
        return {"status": "completed", "job": job_id}

    def _handlers(self) -> dict:
        return {
            "bulk_extraction": self._bulk_extraction_run,
            "validation_sweep": self._validation_sweep,
            "job_cleanup": self._cleanup_run,
        }

    # ------------------------------------------------------------------
    # Job implementations
    # ------------------------------------------------------------------

    async def _bulk_extraction_run(self) -> None:
        if self._orchestrator.has_running(JobType.BULK_EXTRACTION):
            logger.info("[Scheduler] Bulk extraction still running, skipping this tick")
            return
        try:
            job_id = await self._orchestrator.trigger_bulk_extraction()
            logger.info("[Scheduler] Bulk extraction started: job %s", job_id)
        except Exception:
            logger.exception("[Scheduler] Bulk extraction failed to start")

    async def _validation_sweep(self) -> None:
        try:
            summary = await self._validator.validate_all_pending()
            logger.info(
                "[Scheduler] Validation sweep: %d checked, %d graded",
                summary["checked"], summary["graded"],
            )
        except Exception:
            logger.exception("[Scheduler] Validation sweep failed")

    async def _cleanup_run(self) -> None:
        try:
            removed = self._jobs.cleanup()
            logger.info("[Scheduler] Cleanup removed %d job(s)", removed)
        except Exception:
            logger.exception("[Scheduler] Job cleanup failed")
