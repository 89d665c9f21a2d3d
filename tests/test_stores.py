"""Tests for the DuckDB-backed prediction, job and event stores."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from forecast_pipeline.errors import JobNotFound
from forecast_pipeline.models.job import JobStatus, JobType, PairResult, ResultsSummary
from forecast_pipeline.models.prediction import (
    AssetType,
    Direction,
    Outcome,
    PredictionCandidate,
)
from forecast_pipeline.services.event_logger import get_events, log_event


def _candidate(**overrides) -> PredictionCandidate:
    data = {
        "asset_symbol": "BTC",
        "asset_type": AssetType.CRYPTO,
        "prediction_text": "Bitcoin will reach $150,000 by the end of 2025.",
        "direction": Direction.BULLISH,
        "confidence": 0.8,
        "target_price": 150000.0,
        "target_date": date(2025, 12, 31),
    }
    data.update(overrides)
    return PredictionCandidate(**data)


def _create(predictions, **overrides):
    return predictions.create(
        "f1", _candidate(**overrides),
        source_type="youtube", source_url="https://www.youtube.com/watch?v=abc",
    )


class TestPredictionStore:
    def test_create_records_source_provenance(self, predictions) -> None:
        created = _create(predictions)
        stored = predictions.get(created.id)

        assert stored.outcome == Outcome.PENDING
        assert stored.validated_at is None
        assert stored.source == {
            "type": "youtube", "url": "https://www.youtube.com/watch?v=abc",
        }
        assert stored.target_date == date(2025, 12, 31)
        assert stored.created_at.tzinfo is not None

    def test_missing_symbol_stored_as_unknown(self, predictions) -> None:
        created = _create(predictions, asset_symbol=None, asset_type=AssetType.UNKNOWN)
        assert predictions.get(created.id).asset_symbol == "UNKNOWN"

    def test_direction_override_at_create(self, predictions) -> None:
        created = predictions.create(
            "f1", _candidate(), source_type="twitter", source_url="u",
            baseline_price=160000.0, direction=Direction.BEARISH,
            extra_metadata={"directionCorrection": {"original": "BULLISH"}},
        )
        stored = predictions.get(created.id)
        assert stored.direction == Direction.BEARISH
        assert stored.baseline_price == 160000.0
        assert stored.metadata["directionCorrection"]["original"] == "BULLISH"

    def test_record_outcome_is_one_way(self, predictions) -> None:
        created = _create(predictions)

        assert predictions.record_outcome(created.id, Outcome.CORRECT, evaluation={"high": 1})
        assert not predictions.record_outcome(created.id, Outcome.INCORRECT)

        stored = predictions.get(created.id)
        assert stored.outcome == Outcome.CORRECT
        assert stored.validated_at is not None
        assert stored.metadata["evaluation"] == {"high": 1}

    def test_record_outcome_rejects_pending(self, predictions) -> None:
        created = _create(predictions)
        assert not predictions.record_outcome(created.id, Outcome.PENDING)

    def test_admin_override_keeps_history(self, predictions) -> None:
        created = _create(predictions)
        predictions.record_outcome(created.id, Outcome.CORRECT)

        updated = predictions.override_outcome(created.id, Outcome.INCORRECT, reason="bad data")

        assert updated.outcome == Outcome.INCORRECT
        assert updated.metadata["overrides"][0]["from"] == "CORRECT"
        assert updated.metadata["overrides"][0]["reason"] == "bad data"
        assert predictions.override_outcome("missing", Outcome.CORRECT) is None

    def test_update_fields(self, predictions) -> None:
        created = _create(predictions)
        updated = predictions.update_fields(created.id, target_price=120000.0, direction="BEARISH")
        assert updated.target_price == 120000.0
        assert updated.direction == Direction.BEARISH
        with pytest.raises(ValueError, match="not editable"):
            predictions.update_fields(created.id, outcome="CORRECT")

    def test_list_due_for_validation(self, predictions) -> None:
        due = _create(predictions, target_date=date(2025, 6, 30))
        _create(predictions, target_date=date(2026, 6, 30))
        _create(predictions, target_date=None)
        graded = _create(predictions, target_date=date(2025, 1, 31))
        predictions.record_outcome(graded.id, Outcome.INCORRECT)

        now = datetime(2025, 7, 1, tzinfo=timezone.utc)
        assert [p.id for p in predictions.list_due_for_validation(now)] == [due.id]

    def test_list_filters(self, predictions) -> None:
        first = _create(predictions)
        predictions.create("f2", _candidate(), source_type="twitter", source_url="u")
        predictions.record_outcome(first.id, Outcome.CORRECT)

        assert len(predictions.list_predictions()) == 2
        assert [p.id for p in predictions.list_predictions(forecaster_id="f1")] == [first.id]
        assert len(predictions.list_predictions(outcome=Outcome.PENDING)) == 1

    def test_processed_ledger(self, predictions) -> None:
        assert not predictions.is_processed("ch1", "vid1")
        predictions.mark_processed(
            "ch1", "vid1", job_id="j1", source_url="u", predictions_created=2,
        )
        predictions.mark_processed(
            "ch1", "vid1", job_id="j2", source_url="u", predictions_created=0,
        )
        assert predictions.is_processed("ch1", "vid1")
        assert not predictions.is_processed("ch2", "vid1")


class TestJobStore:
    def test_create_and_get(self, jobs) -> None:
        job = jobs.create(JobType.BULK_EXTRACTION, forecaster_ids=["f1"], sources=["twitter"])
        loaded = jobs.get(job.id)
        assert loaded.status == JobStatus.RUNNING
        assert loaded.forecaster_ids == ["f1"]
        assert loaded.completed_at is None

    def test_unknown_job(self, jobs) -> None:
        with pytest.raises(JobNotFound):
            jobs.get("nope")

    def test_transition_only_once(self, jobs) -> None:
        job = jobs.create(JobType.SINGLE_EXTRACTION)
        summary = ResultsSummary.from_pairs([PairResult(predictions_created=2)])

        assert jobs.transition(job.id, JobStatus.CANCELLED)
        assert not jobs.transition(job.id, JobStatus.COMPLETED, summary=summary)

        loaded = jobs.get(job.id)
        assert loaded.status == JobStatus.CANCELLED
        assert loaded.completed_at is not None
        assert loaded.results_summary.predictions_created == 0

    def test_transition_to_running_rejected(self, jobs) -> None:
        job = jobs.create(JobType.SINGLE_EXTRACTION)
        with pytest.raises(ValueError):
            jobs.transition(job.id, JobStatus.RUNNING)

    def test_failed_keeps_error_verbatim(self, jobs) -> None:
        job = jobs.create(JobType.BULK_EXTRACTION)
        jobs.transition(job.id, JobStatus.FAILED, error="database is locked")
        assert jobs.get(job.id).error == "database is locked"

    def test_summary_updates_only_while_running(self, jobs) -> None:
        job = jobs.create(JobType.BULK_EXTRACTION)
        jobs.update_summary(job.id, ResultsSummary(total_pairs=3))
        assert jobs.get(job.id).results_summary.total_pairs == 3
        jobs.transition(job.id, JobStatus.COMPLETED)
        jobs.update_summary(job.id, ResultsSummary(total_pairs=9))
        assert jobs.get(job.id).results_summary.total_pairs == 3

    def test_orphans_marked_failed(self, jobs) -> None:
        live = jobs.create(JobType.BULK_EXTRACTION)
        orphan = jobs.create(JobType.BULK_EXTRACTION)

        assert jobs.mark_orphaned_failed(known_running={live.id}) == 1

        assert jobs.get(live.id).status == JobStatus.RUNNING
        assert jobs.get(orphan.id).status == JobStatus.FAILED
        assert "interrupted" in jobs.get(orphan.id).error

    def test_cleanup_respects_retention(self, jobs) -> None:
        done = jobs.create(JobType.BULK_EXTRACTION)
        failed = jobs.create(JobType.BULK_EXTRACTION)
        running = jobs.create(JobType.BULK_EXTRACTION)
        jobs.transition(done.id, JobStatus.COMPLETED)
        jobs.transition(failed.id, JobStatus.FAILED, error="x")

        now = datetime.now(timezone.utc)
        assert jobs.cleanup(now + timedelta(days=1)) == 0
        assert jobs.cleanup(now + timedelta(days=5)) == 1
        assert jobs.cleanup(now + timedelta(days=30)) == 1

        assert [j.id for j in jobs.list_recent()] == [running.id]

    def test_statistics(self, jobs) -> None:
        ok = jobs.create(JobType.BULK_EXTRACTION)
        bad = jobs.create(JobType.BULK_EXTRACTION)
        jobs.create(JobType.BULK_EXTRACTION)
        jobs.transition(ok.id, JobStatus.COMPLETED)
        jobs.transition(bad.id, JobStatus.FAILED)

        stats = jobs.statistics()

        assert stats["total"] == 3
        assert stats["running"] == 1
        assert stats["success_rate"] == 0.5


class TestEventLogger:
    def test_events_scoped_to_job(self, conn) -> None:
        log_event("j1", "collection", "pair_started", "start", conn=conn)
        log_event(
            "j1", "extraction", "item_failed", "boom",
            metadata={"item": "vid1"}, status="error", conn=conn,
        )
        log_event("j2", "system", "other", "ignored", conn=conn)

        events = {e["event_type"]: e for e in get_events("j1", conn=conn)}

        assert set(events) == {"pair_started", "item_failed"}
        assert events["item_failed"]["metadata"] == {"item": "vid1"}
        assert events["item_failed"]["status"] == "error"
