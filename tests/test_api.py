"""HTTP-level tests for the FastAPI routes, backed by real stores on an
in-memory DuckDB."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from fakes import FakeLLM, FakeSource
from forecast_pipeline.collectors.content_collector import ContentCollector
from forecast_pipeline.engine.extraction_engine import ExtractionEngine
from forecast_pipeline.main import app
from forecast_pipeline.models.job import JobType
from forecast_pipeline.models.prediction import AssetType, Direction, PredictionCandidate
from forecast_pipeline.services.job_orchestrator import JobOrchestrator
from forecast_pipeline.services.outcome_validator import OutcomeValidator
from forecast_pipeline.services.scheduler import ExtractionScheduler
from forecast_pipeline.services.speech_to_text import WhisperClient
from forecast_pipeline.services.transcoder import Transcoder


@pytest.fixture
def services(forecasters, channels, predictions, jobs):
    orchestrator = JobOrchestrator(
        jobs,
        channels,
        forecasters,
        predictions,
        ContentCollector([FakeSource()]),
        Transcoder(WhisperClient(api_key="")),
        ExtractionEngine(FakeLLM()),
    )
    validator = OutcomeValidator(predictions, AsyncMock(), forecasters)
    return SimpleNamespace(
        jobs=jobs,
        channels=channels,
        forecasters=forecasters,
        predictions=predictions,
        orchestrator=orchestrator,
        validator=validator,
        scheduler=ExtractionScheduler(orchestrator, validator, jobs),
    )


@pytest.fixture
def client(services):
    with patch("forecast_pipeline.main.get_services", return_value=services):
        yield TestClient(app)


class TestJobRoutes:
    def test_unknown_job_is_404(self, client) -> None:
        assert client.get("/api/jobs/nope").status_code == 404
        assert client.post("/api/jobs/nope/cancel").status_code == 404
        assert client.get("/api/jobs/nope/events").status_code == 404

    def test_status_and_cancel(self, client, services) -> None:
        job = services.jobs.create(JobType.BULK_EXTRACTION)

        resp = client.get(f"/api/jobs/{job.id}")
        assert resp.status_code == 200
        assert resp.json()["status"] == "RUNNING"

        resp = client.post(f"/api/jobs/{job.id}/cancel")
        assert resp.json() == {"accepted": True, "status": "CANCELLED"}
        assert client.get(f"/api/jobs/{job.id}").json()["status"] == "CANCELLED"

    def test_list_jobs(self, client, services) -> None:
        services.jobs.create(JobType.SINGLE_EXTRACTION)
        body = client.get("/api/jobs").json()
        assert len(body["jobs"]) == 1
        assert body["statistics"]["running"] == 1

    def test_bad_source_type_is_400(self, client) -> None:
        resp = client.post(
            "/api/extraction/single", json={"source_type": "myspace", "url": "https://a.b/c"},
        )
        assert resp.status_code == 400
        assert "Unsupported source type" in resp.json()["detail"]


class TestSchedulerRoutes:
    def test_scheduled_jobs_listing(self, client) -> None:
        jobs = client.get("/api/scheduler/jobs").json()
        assert [j["schedule"] for j in jobs] == ["0 * * * *", "*/15 * * * *", "0 2 * * *"]
        assert all(j["nextRun"] for j in jobs)

    def test_run_unknown_job_is_404(self, client) -> None:
        assert client.post("/api/scheduler/run/nope").status_code == 404


class TestChannelRoutes:
    def test_add_channel_from_url(self, client) -> None:
        jane = client.post("/api/forecasters", json={"name": "Jane Doe"}).json()

        resp = client.post(
            f"/api/forecasters/{jane['id']}/channels",
            json={"url": "https://x.com/janedoe", "is_primary": True},
        )

        assert resp.status_code == 200
        assert resp.json()["type"] == "TWITTER"
        assert resp.json()["external_id"] == "janedoe"

    def test_invalid_config_is_400(self, client) -> None:
        jane = client.post("/api/forecasters", json={"name": "Jane Doe"}).json()
        url = f"/api/forecasters/{jane['id']}/channels"

        resp = client.post(url, json={"type": "twitter", "external_id": "jd", "is_primary": True,
                                      "keywords": ["btc"]})
        assert resp.status_code == 400

        assert client.post(url, json={"url": "https://example.com/jd"}).status_code == 400
        assert client.post(url, json={}).status_code == 400

    def test_channels_listed_under_forecaster(self, client) -> None:
        jane = client.post("/api/forecasters", json={"name": "Jane Doe"}).json()
        client.post(
            f"/api/forecasters/{jane['id']}/channels",
            json={"type": "youtube", "external_id": "@jane", "keywords": ["bitcoin"]},
        )

        [listed] = client.get("/api/forecasters").json()["forecasters"]
        assert listed["channels"][0]["keywords"] == ["bitcoin"]

    def test_unknown_channel_is_404(self, client) -> None:
        assert client.patch("/api/channels/nope", json={"enabled": False}).status_code == 404


class TestPredictionRoutes:
    def _create(self, services):
        return services.predictions.create(
            "f1",
            PredictionCandidate(
                asset_symbol="BTC", asset_type=AssetType.CRYPTO,
                prediction_text="BTC to 150k", direction=Direction.BULLISH, confidence=0.7,
            ),
            source_type="youtube", source_url="https://www.youtube.com/watch?v=abc",
        )

    def test_get_and_list(self, client, services) -> None:
        created = self._create(services)
        body = client.get(f"/api/predictions/{created.id}").json()
        assert body["metadata"]["source"]["type"] == "youtube"
        assert len(client.get("/api/predictions?outcome=PENDING").json()["predictions"]) == 1
        assert client.get("/api/predictions/missing").status_code == 404

    def test_override_outcome(self, client, services) -> None:
        created = self._create(services)
        resp = client.put(
            f"/api/predictions/{created.id}/outcome",
            json={"outcome": "INCORRECT", "reason": "manual review"},
        )
        assert resp.json()["outcome"] == "INCORRECT"

    def test_edit_rejects_outcome_field(self, client, services) -> None:
        created = self._create(services)
        resp = client.patch(
            f"/api/predictions/{created.id}", json={"fields": {"outcome": "CORRECT"}},
        )
        assert resp.status_code == 400

    def test_validate_unknown_is_404(self, client) -> None:
        assert client.post("/api/predictions/missing/validate").status_code == 404
