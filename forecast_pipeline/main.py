"""FastAPI application — collaborator-facing pipeline operations.

Extraction triggers, job status/cancellation, scheduled-job listing,
prediction read/override, and the channel configuration the pipeline
consumes.
"""

from __future__ import annotations

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from forecast_pipeline.collectors.content_collector import ContentCollector
from forecast_pipeline.collectors.twitter_source import TwitterSource
from forecast_pipeline.collectors.youtube_source import YouTubeSource
from forecast_pipeline.config import settings
from forecast_pipeline.database import close_db, get_db
from forecast_pipeline.engine.channel_registry import parse_channel_url
from forecast_pipeline.engine.extraction_engine import ExtractionEngine
from forecast_pipeline.errors import InvalidChannelConfig, JobNotFound
from forecast_pipeline.models.channel import ChannelType
from forecast_pipeline.models.prediction import Outcome
from forecast_pipeline.services.channel_store import ChannelStore, ForecasterStore
from forecast_pipeline.services.event_logger import get_events
from forecast_pipeline.services.job_orchestrator import JobOrchestrator
from forecast_pipeline.services.job_store import JobStore
from forecast_pipeline.services.llm_service import LLMService, close_shared_client
from forecast_pipeline.services.market_data import MarketDataService
from forecast_pipeline.services.outcome_validator import OutcomeValidator
from forecast_pipeline.services.prediction_store import PredictionStore
from forecast_pipeline.services.scheduler import ExtractionScheduler
from forecast_pipeline.services.transcoder import Transcoder
from forecast_pipeline.utils.logger import logger

app = FastAPI(
    title="Forecast Pipeline",
    description="Prediction extraction & outcome validation for tracked forecasters",
    version="0.1.0",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Models ──────────────────────────────────────────────────────────
class SingleExtractionRequest(BaseModel):
    source_type: str
    url: str
    forecaster_id: str | None = None


class BulkExtractionRequest(BaseModel):
    forecaster_ids: list[str] = Field(default_factory=list)
    source_types: list[str] = Field(default_factory=list)


class ForecasterCreateRequest(BaseModel):
    name: str
    slug: str | None = None
    is_verified: bool = False
    expertise: list[str] = Field(default_factory=list)
    social_links: dict[str, str] = Field(default_factory=dict)


class ChannelCreateRequest(BaseModel):
    url: str | None = None
    type: str | None = None
    external_id: str | None = None
    is_primary: bool = False
    enabled: bool = True
    keywords: list[str] = Field(default_factory=list)


class ChannelUpdateRequest(BaseModel):
    enabled: bool | None = None
    is_primary: bool | None = None


class KeywordRequest(BaseModel):
    keyword: str


class OutcomeOverrideRequest(BaseModel):
    outcome: Outcome
    reason: str = ""


class PredictionEditRequest(BaseModel):
    fields: dict


class LLMConfigRequest(BaseModel):
    provider: str | None = None
    ollama_url: str | None = None
    lmstudio_url: str | None = None
    openai_url: str | None = None
    model: str | None = None
    context_size: int | None = None
    temperature: float | None = None


# ── Service wiring ──────────────────────────────────────────────────
class Services:
    """Every pipeline component, sharing one DuckDB connection."""

    def __init__(self) -> None:
        conn = get_db()
        self.jobs = JobStore(conn)
        self.channels = ChannelStore(conn)
        self.forecasters = ForecasterStore(conn)
        self.predictions = PredictionStore(conn)
        self.market = MarketDataService()
        self.orchestrator = JobOrchestrator(
            self.jobs,
            self.channels,
            self.forecasters,
            self.predictions,
            ContentCollector([YouTubeSource(), TwitterSource()]),
            Transcoder(),
            ExtractionEngine(),
            self.market,
        )
        self.validator = OutcomeValidator(self.predictions, self.market, self.forecasters)
        self.scheduler = ExtractionScheduler(self.orchestrator, self.validator, self.jobs)


_services: Services | None = None


def get_services() -> Services:
    global _services  # noqa: PLW0603
    if _services is None:
        _services = Services()
    return _services


@app.on_event("startup")
async def _on_startup() -> None:
    services = get_services()
    orphaned = services.orchestrator.mark_orphans()
    if orphaned:
        logger.warning("[Boot] %d orphaned job(s) marked FAILED", orphaned)
    if settings.SCHEDULER_AUTOSTART:
        logger.info("[Boot] Scheduler auto-started: %s", services.scheduler.start())


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    if _services is not None:
        _services.scheduler.stop()
    await close_shared_client()
    close_db()


# ══════════════════════════════════════════════════════════════════════
# HEALTH + LLM CONFIG
# ══════════════════════════════════════════════════════════════════════


@app.get("/api/health")
async def health() -> dict:
    """Health check including LLM status."""
    llm_status = await LLMService().health_check()
    return {
        "api": "ok",
        "llm": llm_status,
        "config": {
            "provider": settings.LLM_PROVIDER,
            "model": settings.LLM_MODEL,
            "base_url": settings.LLM_BASE_URL,
        },
    }


@app.get("/api/llm-config")
async def get_llm_config() -> dict:
    return settings.get_llm_config()


@app.put("/api/llm-config")
async def update_llm_config(req: LLMConfigRequest) -> dict:
    """Save new LLM settings + hot-patch the running config."""
    data = {k: v for k, v in req.model_dump().items() if v is not None}
    merged = settings.update_llm_config(data)
    logger.info(
        "LLM config updated: provider=%s model=%s ctx=%s",
        merged.get("provider"), merged.get("model"), merged.get("context_size"),
    )
    return {"status": "updated", "config": merged}


# ══════════════════════════════════════════════════════════════════════
# EXTRACTION JOBS
# ══════════════════════════════════════════════════════════════════════


@app.post("/api/extraction/single")
async def trigger_single_extraction(req: SingleExtractionRequest) -> dict:
    try:
        job_id = await get_services().orchestrator.trigger_single_extraction(
            req.source_type, req.url, req.forecaster_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"job_id": job_id}


@app.post("/api/extraction/bulk")
async def trigger_bulk_extraction(req: BulkExtractionRequest) -> dict:
    try:
        job_id = await get_services().orchestrator.trigger_bulk_extraction(
            req.forecaster_ids, req.source_types,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"job_id": job_id}


@app.get("/api/jobs")
async def list_jobs(limit: int = Query(default=20, ge=1, le=200)) -> dict:
    services = get_services()
    jobs = services.jobs.list_recent(limit)
    return {
        "jobs": [job.model_dump(mode="json", exclude={"results_summary"}) for job in jobs],
        "statistics": services.jobs.statistics(),
    }


@app.get("/api/jobs/{job_id}")
async def get_job_status(job_id: str) -> dict:
    try:
        return get_services().orchestrator.get_job_status(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.post("/api/jobs/{job_id}/cancel")
async def cancel_job(job_id: str) -> dict:
    try:
        return get_services().orchestrator.cancel_job(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.get("/api/jobs/{job_id}/events")
async def job_events(job_id: str, limit: int = Query(default=500, ge=1, le=5000)) -> dict:
    services = get_services()
    try:
        services.jobs.get(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"job_id": job_id, "events": get_events(job_id, limit=limit, conn=services.jobs.conn)}


# ══════════════════════════════════════════════════════════════════════
# SCHEDULER
# ══════════════════════════════════════════════════════════════════════


@app.get("/api/scheduler/jobs")
async def list_scheduled_jobs() -> list[dict]:
    return get_services().scheduler.list_scheduled_jobs()


@app.get("/api/scheduler/status")
async def scheduler_status() -> dict:
    return get_services().scheduler.get_status()


@app.post("/api/scheduler/start")
async def scheduler_start() -> dict:
    return get_services().scheduler.start()


@app.post("/api/scheduler/stop")
async def scheduler_stop() -> dict:
    return get_services().scheduler.stop()


@app.post("/api/scheduler/run/{job_name}")
async def scheduler_run_job(job_name: str) -> dict:
    """Manually trigger: bulk_extraction, validation_sweep, job_cleanup."""
    result = await get_services().scheduler.run_job(job_name)
    if "error" in result:
        raise HTTPException(status_code=404, detail=result["error"])
    return result


# ══════════════════════════════════════════════════════════════════════
# PREDICTIONS
# ══════════════════════════════════════════════════════════════════════


@app.get("/api/predictions")
async def list_predictions(
    forecaster_id: str | None = None,
    outcome: Outcome | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
) -> dict:
    predictions = get_services().predictions.list_predictions(
        forecaster_id=forecaster_id, outcome=outcome, limit=limit,
    )
    return {"predictions": [p.model_dump(mode="json") for p in predictions]}


@app.get("/api/predictions/{prediction_id}")
async def get_prediction(prediction_id: str) -> dict:
    prediction = get_services().predictions.get(prediction_id)
    if prediction is None:
        raise HTTPException(status_code=404, detail=f"Prediction not found: {prediction_id}")
    return prediction.model_dump(mode="json")


@app.post("/api/predictions/{prediction_id}/validate")
async def validate_prediction(prediction_id: str, force: bool = False) -> dict:
    outcome = await get_services().validator.validate(prediction_id, force=force)
    if outcome is None:
        raise HTTPException(status_code=404, detail=f"Prediction not found: {prediction_id}")
    return {"id": prediction_id, "outcome": outcome.value}


@app.post("/api/predictions/validate-pending")
async def validate_pending() -> dict:
    return await get_services().validator.validate_all_pending()


@app.put("/api/predictions/{prediction_id}/outcome")
async def override_outcome(prediction_id: str, req: OutcomeOverrideRequest) -> dict:
    """Admin override; the only path that can change a terminal outcome."""
    prediction = get_services().predictions.override_outcome(
        prediction_id, req.outcome, reason=req.reason,
    )
    if prediction is None:
        raise HTTPException(status_code=404, detail=f"Prediction not found: {prediction_id}")
    return prediction.model_dump(mode="json")


@app.patch("/api/predictions/{prediction_id}")
async def edit_prediction(prediction_id: str, req: PredictionEditRequest) -> dict:
    try:
        prediction = get_services().predictions.update_fields(prediction_id, **req.fields)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if prediction is None:
        raise HTTPException(status_code=404, detail=f"Prediction not found: {prediction_id}")
    return prediction.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════════════
# FORECASTERS + CHANNELS
# ══════════════════════════════════════════════════════════════════════


@app.get("/api/forecasters")
async def list_forecasters() -> dict:
    services = get_services()
    return {
        "forecasters": [
            {
                **f.model_dump(mode="json"),
                "channels": [
                    c.model_dump(mode="json")
                    for c in services.channels.list_channels(forecaster_ids=[f.id])
                ],
            }
            for f in services.forecasters.list_all()
        ],
    }


@app.post("/api/forecasters")
async def create_forecaster(req: ForecasterCreateRequest) -> dict:
    if not req.name.strip():
        raise HTTPException(status_code=400, detail="Forecaster name is required")
    forecaster = get_services().forecasters.create(
        req.name,
        slug=req.slug,
        is_verified=req.is_verified,
        expertise=req.expertise,
        social_links=req.social_links,
    )
    return forecaster.model_dump(mode="json")


@app.delete("/api/forecasters/{forecaster_id}")
async def delete_forecaster(forecaster_id: str) -> dict:
    services = get_services()
    if services.forecasters.get(forecaster_id) is None:
        raise HTTPException(status_code=404, detail=f"Forecaster not found: {forecaster_id}")
    services.forecasters.delete(forecaster_id)
    return {"status": "deleted", "id": forecaster_id}


@app.post("/api/forecasters/{forecaster_id}/channels")
async def add_channel(forecaster_id: str, req: ChannelCreateRequest) -> dict:
    """Add a channel from a URL, or from an explicit type + external id."""
    url = req.url or ""
    if req.url:
        parsed = parse_channel_url(req.url)
        if parsed is None:
            raise HTTPException(status_code=400, detail=f"Unrecognized channel URL: {req.url}")
        channel_type, external_id, url = parsed
    elif req.type and req.external_id:
        try:
            channel_type = ChannelType.from_source(req.type)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        external_id = req.external_id
    else:
        raise HTTPException(status_code=400, detail="Provide a url, or type and external_id")

    try:
        channel = get_services().channels.add_channel(
            forecaster_id,
            channel_type,
            external_id,
            url=url,
            is_primary=req.is_primary,
            enabled=req.enabled,
            keywords=req.keywords,
        )
    except InvalidChannelConfig as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return channel.model_dump(mode="json")


@app.patch("/api/channels/{channel_id}")
async def update_channel(channel_id: str, req: ChannelUpdateRequest) -> dict:
    channels = get_services().channels
    try:
        channel = channels.get(channel_id)
        if channel is None:
            raise HTTPException(status_code=404, detail=f"Channel not found: {channel_id}")
        if req.enabled is not None:
            channel = channels.set_enabled(channel_id, req.enabled)
        if req.is_primary is not None:
            channel = channels.set_primary(channel_id, req.is_primary)
    except InvalidChannelConfig as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return channel.model_dump(mode="json")


@app.post("/api/channels/{channel_id}/promote")
async def promote_channel(channel_id: str) -> dict:
    """Demote the current primary of this type, then promote this channel."""
    try:
        channel = get_services().channels.promote_to_primary(channel_id)
    except InvalidChannelConfig as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return channel.model_dump(mode="json")


@app.post("/api/channels/{channel_id}/keywords")
async def add_keyword(channel_id: str, req: KeywordRequest) -> dict:
    try:
        channel = get_services().channels.add_keyword(channel_id, req.keyword)
    except InvalidChannelConfig as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return channel.model_dump(mode="json")


@app.delete("/api/channels/{channel_id}/keywords/{keyword}")
async def remove_keyword(channel_id: str, keyword: str) -> dict:
    try:
        channel = get_services().channels.remove_keyword(channel_id, keyword)
    except InvalidChannelConfig as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return channel.model_dump(mode="json")


@app.delete("/api/channels/{channel_id}")
async def delete_channel(channel_id: str) -> dict:
    get_services().channels.delete_channel(channel_id)
    return {"status": "deleted", "id": channel_id}
