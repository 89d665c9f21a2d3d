"""Job Orchestrator — single and bulk extraction runs as tracked jobs.

A job wraps Collector → Transcoder → Extraction Engine → PredictionStore
for one or many (forecaster, channel) pairs:

  trigger_*()  → JobStore row (RUNNING) + background asyncio task
  bulk fan-out → bounded pool of workers pulling pairs from a queue,
                 pushing PairResults onto a result queue that an
                 aggregator folds into the job's ResultsSummary
  cancel_job() → sets the job's CancellationToken; workers check it
                 between items, before starting a pair and while
                 backing off between source retries

Failure policy:
  - item errors (UnsupportedMedia / TranscriptionFailed / ExtractionFailed)
    are counted on the pair, which carries on with the next item
  - SourceUnavailable is retried per pair with exponential backoff, then
    the pair is recorded as FAILED
  - only errors escaping the fan-out itself (e.g. the channel table can't
    be read) fail the job; the message is stored verbatim
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any, TypeVar

import duckdb

from forecast_pipeline.collectors.content_collector import CollectionStats, ContentCollector
from forecast_pipeline.config import settings
from forecast_pipeline.database import utcnow
from forecast_pipeline.engine.extraction_engine import ExtractionEngine, correct_direction
from forecast_pipeline.errors import (
    ExtractionFailed,
    OrchestrationError,
    SourceUnavailable,
    TranscriptionFailed,
    UnsupportedMedia,
)
from forecast_pipeline.models.channel import Channel, ChannelType, Forecaster
from forecast_pipeline.models.content import ContentItem
from forecast_pipeline.models.job import JobStatus, JobType, PairResult, PairStatus, ResultsSummary
from forecast_pipeline.models.prediction import Prediction, PredictionCandidate
from forecast_pipeline.services.channel_store import ChannelStore, ForecasterStore
from forecast_pipeline.services.event_logger import log_event
from forecast_pipeline.services.job_store import JobStore
from forecast_pipeline.services.market_data import MarketDataService
from forecast_pipeline.services.prediction_store import PredictionStore
from forecast_pipeline.services.transcoder import Transcoder
from forecast_pipeline.utils.logger import logger

T = TypeVar("T")

_ITEM_ERRORS = (UnsupportedMedia, TranscriptionFailed, ExtractionFailed)


class CancellationToken:
    """Cooperative cancellation flag handed to every unit of work."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancellation.
        Returns True if the token was cancelled."""
        try:
            await asyncio.wait_for(self._event.wait(), max(0.0, timeout))
        except asyncio.TimeoutError:
            pass
        return self.is_cancelled


class _RetryAborted(Exception):
    """Cancellation arrived while a source call was being retried."""


class JobOrchestrator:
    def __init__(
        self,
        jobs: JobStore,
        channels: ChannelStore,
        forecasters: ForecasterStore,
        predictions: PredictionStore,
        collector: ContentCollector,
        transcoder: Transcoder,
        engine: ExtractionEngine,
        market: MarketDataService | None = None,
        *,
        parallelism: int | None = None,
        max_source_retries: int | None = None,
        retry_base_delay: float | None = None,
        lookback_days: int | None = None,
        direction_correction: bool | None = None,
        neutral_band_pct: float | None = None,
    ) -> None:
        self.jobs = jobs
        self.channels = channels
        self.forecasters = forecasters
        self.predictions = predictions
        self.collector = collector
        self.transcoder = transcoder
        self.engine = engine
        self.market = market
        self.parallelism = max(1, parallelism or settings.EXTRACTION_PARALLELISM)
        self.max_source_retries = (
            max_source_retries if max_source_retries is not None
            else settings.SOURCE_MAX_RETRIES
        )
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None
            else settings.SOURCE_RETRY_BASE_DELAY
        )
        self.lookback_days = lookback_days or settings.COLLECTION_LOOKBACK_DAYS
        self.direction_correction = (
            direction_correction if direction_correction is not None
            else settings.DIRECTION_CORRECTION_ENABLED
        )
        self.neutral_band_pct = (
            neutral_band_pct if neutral_band_pct is not None
            else settings.DIRECTION_NEUTRAL_BAND_PCT
        )
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ──────────────────────────────────────────────────────────────
    # Collaborator operations
    # ──────────────────────────────────────────────────────────────

    async def trigger_single_extraction(
        self, source_type: str, url: str, forecaster_id: str | None = None,
    ) -> str:
        """Start a job extracting one content URL; returns the job id.

        Raises ValueError for an unknown source type.
        """
        channel_type = ChannelType.from_source(source_type)
        if not url or not url.strip():
            msg = "A content URL is required"
            raise ValueError(msg)
        job = self.jobs.create(
            JobType.SINGLE_EXTRACTION,
            forecaster_ids=[forecaster_id] if forecaster_id else [],
            sources=[channel_type.source_name],
            request={"url": url.strip(), "forecaster_id": forecaster_id},
        )
        token = CancellationToken()
        self._start(
            job.id, token,
            self._run_single(job.id, channel_type, url.strip(), forecaster_id, token),
        )
        return job.id

    async def trigger_bulk_extraction(
        self,
        forecaster_ids: Iterable[str] | None = None,
        source_types: Iterable[str] | None = None,
    ) -> str:
        """Start a job over every enabled channel of the given forecasters
        (all forecasters when empty) and source types (all when empty)."""
        ids = [f for f in (forecaster_ids or []) if f]
        types = [ChannelType.from_source(s) for s in (source_types or [])]
        job = self.jobs.create(
            JobType.BULK_EXTRACTION,
            forecaster_ids=ids,
            sources=[t.source_name for t in types] or [t.source_name for t in ChannelType],
            request={"forecaster_ids": ids, "source_types": [t.value for t in types]},
        )
        token = CancellationToken()
        self._start(job.id, token, self._run_bulk(job.id, ids, types, token))
        return job.id

    def get_job_status(self, job_id: str) -> dict:
        """Raises JobNotFound for an unknown id."""
        job = self.jobs.get(job_id)
        return {
            "id": job.id,
            "type": job.type.value,
            "status": job.status.value,
            "results_summary": job.results_summary.model_dump(mode="json"),
            "error": job.error,
            "created_at": job.created_at.isoformat(),
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            "cancel_requested": bool(
                job_id in self._tokens and self._tokens[job_id].is_cancelled
            ),
        }

    def cancel_job(self, job_id: str) -> dict:
        """Request cancellation.  Idempotent: a non-RUNNING job is a no-op
        that still reports ``accepted``."""
        job = self.jobs.get(job_id)
        if job.status.is_terminal:
            return {"accepted": True, "status": job.status.value}

        token = self._tokens.get(job_id)
        if token is None:
            # RUNNING row with no live task in this process
            self.jobs.transition(job_id, JobStatus.CANCELLED, error="Cancelled (no active worker)")
            logger.info("[Orchestrator] Cancelled orphaned job %s", job_id)
            return {"accepted": True, "status": self.jobs.get(job_id).status.value}

        if not token.is_cancelled:
            token.cancel()
            logger.info("[Orchestrator] Cancellation requested for job %s", job_id)
            self._event(job_id, "system", "cancel_requested", "Cancellation requested")
        return {"accepted": True, "status": JobStatus.RUNNING.value}

    async def wait(self, job_id: str) -> dict:
        """Await a background job started in this process, then report it."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return self.get_job_status(job_id)

    def mark_orphans(self) -> int:
        """Fail RUNNING rows left behind by a previous process."""
        return self.jobs.mark_orphaned_failed(known_running=set(self._tasks))

    def has_running(self, job_type: JobType) -> bool:
        return any(
            job.type == job_type and job.id in self._tasks
            for job in self.jobs.list_running()
        )

    # ──────────────────────────────────────────────────────────────
    # Job lifecycle
    # ──────────────────────────────────────────────────────────────

    def _start(
        self,
        job_id: str,
        token: CancellationToken,
        work: Awaitable[list[PairResult]],
    ) -> None:
        self._tokens[job_id] = token
        self._tasks[job_id] = asyncio.create_task(
            self._execute(job_id, token, work), name=f"extraction-{job_id}",
        )

    async def _execute(
        self,
        job_id: str,
        token: CancellationToken,
        work: Awaitable[list[PairResult]],
    ) -> None:
        try:
            pairs = await work
            summary = ResultsSummary.from_pairs(pairs)
            status = JobStatus.CANCELLED if token.is_cancelled else JobStatus.COMPLETED
            self.jobs.transition(job_id, status, summary=summary)
            self._event(
                job_id, "system", "job_finished",
                f"{status.value}: {summary.succeeded}/{summary.total_pairs} pair(s) succeeded, "
                f"{summary.predictions_created} prediction(s)",
                metadata=summary.model_dump(mode="json", exclude={"pairs"}),
            )
        except asyncio.CancelledError:
            self.jobs.transition(job_id, JobStatus.CANCELLED, error="Job task cancelled")
            raise
        except Exception as exc:
            logger.exception("[Orchestrator] Job %s failed", job_id)
            message = str(exc) or type(exc).__name__
            self.jobs.transition(job_id, JobStatus.FAILED, error=message)
            self._event(job_id, "system", "job_failed", message, status="error")
        finally:
            self._tokens.pop(job_id, None)
            self._tasks.pop(job_id, None)

    # ──────────────────────────────────────────────────────────────
    # Single extraction
    # ──────────────────────────────────────────────────────────────

    async def _run_single(
        self,
        job_id: str,
        channel_type: ChannelType,
        url: str,
        forecaster_id: str | None,
        token: CancellationToken,
    ) -> list[PairResult]:
        result = PairResult(forecaster_id=forecaster_id, source=channel_type.source_name)
        if forecaster_id and self.forecasters.get(forecaster_id) is None:
            result.status = PairStatus.FAILED
            result.error = f"Forecaster not found: {forecaster_id}"
            return [result]

        try:
            source = self.collector.source_for(channel_type)
        except SourceUnavailable as exc:
            result.status = PairStatus.FAILED
            result.error = str(exc)
            return [result]
        if not source.handles(url):
            result.status = PairStatus.FAILED
            result.error = f"Not a {channel_type.source_name} URL: {url}"
            return [result]
        try:
            item = await self._with_source_retries(
                lambda: source.fetch_item(url), result, token, label=url,
            )
        except _RetryAborted:
            result.status = PairStatus.CANCELLED
            return [result]
        except SourceUnavailable as exc:
            result.status = PairStatus.FAILED
            result.error = str(exc)
            self._event(job_id, "collection", "fetch_failed", str(exc), status="error")
            return [result]
        except UnsupportedMedia as exc:
            result.status = PairStatus.FAILED
            result.error = str(exc)
            return [result]

        if token.is_cancelled:
            result.status = PairStatus.CANCELLED
            return [result]

        result.items_seen = 1
        ok = await self._process_item(job_id, item, forecaster_id, result)
        if not ok:
            result.status = PairStatus.FAILED
            result.error = result.item_errors[-1] if result.item_errors else "Item failed"
        return [result]

    # ──────────────────────────────────────────────────────────────
    # Bulk fan-out
    # ──────────────────────────────────────────────────────────────

    async def _run_bulk(
        self,
        job_id: str,
        forecaster_ids: list[str],
        channel_types: list[ChannelType],
        token: CancellationToken,
    ) -> list[PairResult]:
        try:
            forecasters = {f.id: f for f in self.forecasters.list_all()}
            channels = self.channels.list_channels(
                forecaster_ids or None, channel_types or None, enabled_only=True,
            )
        except duckdb.Error as exc:
            raise OrchestrationError(f"Cannot read channel configuration: {exc}") from exc

        collected: list[PairResult] = [
            PairResult(
                forecaster_id=fid,
                status=PairStatus.FAILED,
                error=f"Forecaster not found: {fid}",
            )
            for fid in forecaster_ids
            if fid not in forecasters
        ]

        logger.info(
            "[Orchestrator] Job %s: %d channel pair(s), parallelism=%d",
            job_id, len(channels), self.parallelism,
        )
        self._event(
            job_id, "system", "job_started",
            f"Bulk extraction over {len(channels)} channel(s)",
            metadata={"forecasters": forecaster_ids, "types": [t.value for t in channel_types]},
        )

        since = utcnow() - timedelta(days=self.lookback_days)
        pending: asyncio.Queue[Channel] = asyncio.Queue()
        for channel in channels:
            pending.put_nowait(channel)
        results: asyncio.Queue[PairResult | None] = asyncio.Queue()

        async def worker() -> None:
            while True:
                try:
                    channel = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if token.is_cancelled:
                    await results.put(self._pair_for(channel, PairStatus.CANCELLED))
                    continue
                forecaster = forecasters.get(channel.forecaster_id)
                await results.put(
                    await self._run_pair(job_id, channel, forecaster, since, token)
                )

        async def aggregate() -> None:
            while (result := await results.get()) is not None:
                collected.append(result)
                self.jobs.update_summary(job_id, ResultsSummary.from_pairs(collected))

        aggregator = asyncio.create_task(aggregate())
        workers = [asyncio.create_task(worker()) for _ in range(min(self.parallelism, len(channels)))]
        try:
            await asyncio.gather(*workers)
        finally:
            await results.put(None)
            await aggregator
        return collected

    @staticmethod
    def _pair_for(channel: Channel, status: PairStatus = PairStatus.SUCCEEDED) -> PairResult:
        return PairResult(
            forecaster_id=channel.forecaster_id,
            channel_id=channel.id,
            source=channel.type.source_name,
            status=status,
        )

    async def _run_pair(
        self,
        job_id: str,
        channel: Channel,
        forecaster: Forecaster | None,
        since: datetime,
        token: CancellationToken,
    ) -> PairResult:
        """One (forecaster, channel) unit of work.  Never raises."""
        result = self._pair_for(channel)
        if forecaster is None:
            result.status = PairStatus.FAILED
            result.error = f"Forecaster not found: {channel.forecaster_id}"
            return result

        try:
            stopped_early = await self._with_source_retries(
                lambda: self._process_channel(job_id, channel, forecaster, since, token, result),
                result,
                token,
                label=f"{channel.type.value}:{channel.external_id}",
            )
        except _RetryAborted:
            result.status = PairStatus.CANCELLED
            return result
        except SourceUnavailable as exc:
            result.status = PairStatus.FAILED
            result.error = str(exc)
            logger.warning(
                "[Orchestrator] %s %s unavailable after %d attempt(s): %s",
                channel.type.value, channel.external_id, result.attempts, exc,
            )
            self._event(
                job_id, "collection", "pair_failed", str(exc),
                metadata={"channel_id": channel.id, "attempts": result.attempts},
                status="error",
            )
            return result
        except Exception as exc:
            logger.exception(
                "[Orchestrator] Unexpected failure on %s %s",
                channel.type.value, channel.external_id,
            )
            result.status = PairStatus.FAILED
            result.error = f"{type(exc).__name__}: {exc}"
            return result

        if stopped_early:
            result.status = PairStatus.CANCELLED
        self._event(
            job_id, "persistence", "pair_finished",
            f"{channel.external_id}: {result.items_processed} processed, "
            f"{result.items_skipped} skipped, {result.items_failed} failed, "
            f"{result.predictions_created} prediction(s)",
            metadata={"channel_id": channel.id, "status": result.status.value},
        )
        return result

    async def _process_channel(
        self,
        job_id: str,
        channel: Channel,
        forecaster: Forecaster,
        since: datetime,
        token: CancellationToken,
        result: PairResult,
    ) -> bool:
        """Process items oldest first.  Returns True if cancellation cut
        the channel short."""
        stats = CollectionStats()
        async for item in self.collector.collect(
            channel, since, forecaster_name=forecaster.name, stats=stats,
        ):
            if token.is_cancelled:
                logger.info(
                    "[Orchestrator] Job %s cancelled, stopping %s before %s",
                    job_id, channel.external_id, item.external_id,
                )
                return True
            result.items_seen += 1
            if self.predictions.is_processed(channel.id, item.external_id):
                result.items_skipped += 1
                continue
            await self._process_item(job_id, item, forecaster.id, result, channel_id=channel.id)
        return False

    async def _process_item(
        self,
        job_id: str,
        item: ContentItem,
        forecaster_id: str | None,
        result: PairResult,
        *,
        channel_id: str | None = None,
    ) -> bool:
        try:
            document = await self.transcoder.normalize(item)
            candidates = await self.engine.extract(document, forecaster_id)
        except _ITEM_ERRORS as exc:
            result.items_failed += 1
            result.item_errors.append(f"{item.external_id}: {exc}")
            logger.warning(
                "[Orchestrator] Skipping %s (%s): %s",
                item.external_id, type(exc).__name__, exc,
            )
            self._event(
                job_id,
                "extraction" if isinstance(exc, ExtractionFailed) else "transcription",
                "item_failed", str(exc),
                metadata={"external_id": item.external_id, "error": type(exc).__name__},
                status="error",
            )
            return False

        if forecaster_id is None:
            result.candidates.extend(c.model_dump(mode="json") for c in candidates)
        else:
            for candidate in candidates:
                await self._persist(job_id, item, forecaster_id, candidate)
            result.predictions_created += len(candidates)

        if channel_id is not None:
            self.predictions.mark_processed(
                channel_id, item.external_id,
                job_id=job_id,
                source_url=item.url,
                predictions_created=len(candidates) if forecaster_id else 0,
            )
        result.items_processed += 1
        return True

    async def _persist(
        self,
        job_id: str,
        item: ContentItem,
        forecaster_id: str,
        candidate: PredictionCandidate,
    ) -> Prediction:
        baseline = None
        if self.market is not None and candidate.asset_symbol:
            baseline = await self.market.get_price(candidate.asset_symbol, candidate.asset_type)

        direction, correction = candidate.direction, None
        if self.direction_correction:
            direction, correction = correct_direction(
                candidate.direction, candidate.target_price, baseline, self.neutral_band_pct,
            )
            if correction:
                logger.info(
                    "[Orchestrator] Direction corrected for %s: %s",
                    candidate.asset_symbol, correction["reason"],
                )

        extra: dict[str, Any] = {
            "extraction": {
                "jobId": job_id,
                "model": self.engine.model_name,
                "externalId": item.external_id,
                "llmDirection": candidate.direction.value,
                "qualityScore": candidate.quality_score,
                "qualityGrade": candidate.quality_grade,
                "timeframe": candidate.timeframe,
                "quote": candidate.quote,
                "reasoning": candidate.reasoning,
            },
        }
        if correction:
            extra["directionCorrection"] = correction

        prediction = self.predictions.create(
            forecaster_id,
            candidate,
            source_type=item.source_type.source_name,
            source_url=item.url,
            baseline_price=baseline,
            direction=direction,
            extra_metadata=extra,
        )
        self._event(
            job_id, "persistence", "prediction_created",
            f"{prediction.asset_symbol} {prediction.direction.value}",
            metadata={"prediction_id": prediction.id, "external_id": item.external_id},
        )
        return prediction

    # ──────────────────────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────────────────────

    async def _with_source_retries(
        self,
        op: Callable[[], Awaitable[T]],
        result: PairResult,
        token: CancellationToken,
        *,
        label: str,
    ) -> T:
        """Run ``op``, retrying SourceUnavailable with exponential backoff.

        The backoff wakes as soon as ``token`` is cancelled; no further
        attempt is made after that and ``_RetryAborted`` is raised.
        """
        attempt = 0
        while True:
            result.attempts = attempt + 1
            try:
                return await op()
            except SourceUnavailable as exc:
                if token.is_cancelled:
                    raise _RetryAborted(str(exc)) from exc
                if attempt >= self.max_source_retries:
                    raise
                delay = self.retry_base_delay * (2 ** attempt)
                logger.warning(
                    "[Orchestrator] %s unavailable (attempt %d/%d), retrying in %.1fs: %s",
                    label, attempt + 1, self.max_source_retries + 1, delay, exc,
                )
                if await token.wait(delay):
                    logger.info("[Orchestrator] %s: retry abandoned, job cancelled", label)
                    raise _RetryAborted(str(exc)) from exc
            attempt += 1

    def _event(self, job_id: str, phase: str, event_type: str, detail: str, **kwargs: Any) -> None:
        log_event(job_id, phase, event_type, detail, conn=self.jobs.conn, **kwargs)
