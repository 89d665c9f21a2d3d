"""Extraction job models — lifecycle state and aggregated results."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


class JobType(str, Enum):
    SINGLE_EXTRACTION = "SINGLE_EXTRACTION"
    BULK_EXTRACTION = "BULK_EXTRACTION"


class PairStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PairResult(BaseModel):
    """Outcome of one (forecaster, channel) unit of work."""

    forecaster_id: str | None = None
    channel_id: str | None = None
    source: str | None = None
    status: PairStatus = PairStatus.SUCCEEDED
    attempts: int = 0
    items_seen: int = 0
    items_processed: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    predictions_created: int = 0
    error: str | None = None
    item_errors: list[str] = Field(default_factory=list)
    # Single extractions without a forecaster report candidates here only
    candidates: list[dict] = Field(default_factory=list)


class ResultsSummary(BaseModel):
    total_pairs: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    items_processed: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    predictions_created: int = 0
    pairs: list[PairResult] = Field(default_factory=list)

    @classmethod
    def from_pairs(cls, pairs: list[PairResult]) -> ResultsSummary:
        return cls(
            total_pairs=len(pairs),
            succeeded=sum(p.status == PairStatus.SUCCEEDED for p in pairs),
            failed=sum(p.status == PairStatus.FAILED for p in pairs),
            cancelled=sum(p.status == PairStatus.CANCELLED for p in pairs),
            items_processed=sum(p.items_processed for p in pairs),
            items_skipped=sum(p.items_skipped for p in pairs),
            items_failed=sum(p.items_failed for p in pairs),
            predictions_created=sum(p.predictions_created for p in pairs),
            pairs=pairs,
        )


class ExtractionJob(BaseModel):
    id: str
    type: JobType
    status: JobStatus = JobStatus.RUNNING
    forecaster_ids: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    request: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    error: str | None = None
    results_summary: ResultsSummary = Field(default_factory=ResultsSummary)
