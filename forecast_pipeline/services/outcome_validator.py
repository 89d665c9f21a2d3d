"""Outcome Validator — grades PENDING predictions against market prices.

``evaluate()`` is pure: given a prediction and the market snapshot for its
window it returns the outcome.  ``OutcomeValidator`` fetches snapshots,
writes terminal outcomes through ``PredictionStore.record_outcome`` (which
refuses to touch a terminal row) and refreshes the forecaster's metrics.

Grading with a target price (tolerance = band around the target):
  BULLISH  high ≥ target                  → CORRECT
           last < reference − tolerance   → INCORRECT
           otherwise                      → PARTIALLY_CORRECT
  BEARISH  mirror image using low
  NEUTRAL  |last − target| ≤ tolerance    → CORRECT, else INCORRECT

Without a target price only the sign of (last − reference) counts;
NEUTRAL is CORRECT when the move stays inside the tolerance band around
the reference.  The reference is the baseline price captured at creation,
or the first close in the window when no baseline was captured.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timezone

from forecast_pipeline.config import settings
from forecast_pipeline.database import utcnow
from forecast_pipeline.engine.scoring import forecaster_metrics
from forecast_pipeline.models.market import MarketSnapshot
from forecast_pipeline.models.prediction import Direction, Outcome, Prediction
from forecast_pipeline.services.channel_store import ForecasterStore
from forecast_pipeline.services.market_data import MarketDataService
from forecast_pipeline.services.prediction_store import PredictionStore
from forecast_pipeline.utils.logger import logger


@dataclass(frozen=True)
class ToleranceBand:
    """``percent`` → value % of the anchor price; ``absolute`` → value as is."""

    mode: str = "percent"
    value: float = 5.0

    @classmethod
    def from_settings(cls) -> ToleranceBand:
        return cls(mode=settings.OUTCOME_TOLERANCE_MODE, value=settings.OUTCOME_TOLERANCE_VALUE)

    def width(self, anchor: float) -> float:
        if self.mode == "absolute":
            return abs(self.value)
        return abs(anchor) * abs(self.value) / 100.0


def reference_price(prediction: Prediction, snapshot: MarketSnapshot) -> float | None:
    if prediction.baseline_price:
        return prediction.baseline_price
    return snapshot.start_price


def evaluate(
    prediction: Prediction,
    snapshot: MarketSnapshot | None,
    *,
    now: datetime | None = None,
    tolerance: ToleranceBand | None = None,
    force: bool = False,
) -> Outcome:
    """Outcome for ``prediction`` given the observed prices.

    Returns PENDING while the target date is in the future (unless
    ``force``) or when there is no usable market data.
    """
    if prediction.outcome.is_terminal:
        return prediction.outcome
    now = now or utcnow()
    if prediction.target_date and prediction.target_date > now.date() and not force:
        return Outcome.PENDING
    if snapshot is None or snapshot.current_price is None:
        return Outcome.PENDING
    reference = reference_price(prediction, snapshot)
    if reference is None:
        return Outcome.PENDING

    band = tolerance or ToleranceBand.from_settings()
    last = snapshot.current_price
    target = prediction.target_price
    direction = prediction.direction

    if target is not None:
        tol = band.width(target)
        if direction is Direction.BULLISH:
            peak = snapshot.high if snapshot.high is not None else last
            if peak >= target:
                return Outcome.CORRECT
            if last < reference - tol:
                return Outcome.INCORRECT
            return Outcome.PARTIALLY_CORRECT
        if direction is Direction.BEARISH:
            trough = snapshot.low if snapshot.low is not None else last
            if trough <= target:
                return Outcome.CORRECT
            if last > reference + tol:
                return Outcome.INCORRECT
            return Outcome.PARTIALLY_CORRECT
        return Outcome.CORRECT if abs(last - target) <= tol else Outcome.INCORRECT

    move = last - reference
    if direction is Direction.BULLISH:
        return Outcome.CORRECT if move > 0 else Outcome.INCORRECT
    if direction is Direction.BEARISH:
        return Outcome.CORRECT if move < 0 else Outcome.INCORRECT
    return Outcome.CORRECT if abs(move) <= band.width(reference) else Outcome.INCORRECT


class OutcomeValidator:
    def __init__(
        self,
        predictions: PredictionStore,
        market: MarketDataService,
        forecasters: ForecasterStore | None = None,
        tolerance: ToleranceBand | None = None,
    ) -> None:
        self.predictions = predictions
        self.market = market
        self.forecasters = forecasters
        self.tolerance = tolerance or ToleranceBand.from_settings()

    async def validate(
        self,
        prediction_id: str,
        *,
        force: bool = False,
        now: datetime | None = None,
    ) -> Outcome | None:
        """Grade one prediction.  Returns None for an unknown id.

        A prediction that is already terminal is returned unchanged and
        nothing is written.
        """
        prediction = self.predictions.get(prediction_id)
        if prediction is None:
            return None
        if prediction.outcome.is_terminal:
            logger.debug(
                "[Validator] %s already %s, skipping", prediction_id, prediction.outcome.value,
            )
            return prediction.outcome

        now = now or utcnow()
        if prediction.target_date and prediction.target_date > now.date() and not force:
            return Outcome.PENDING
        if prediction.asset_symbol == "UNKNOWN":
            logger.info("[Validator] %s has no asset symbol, leaving PENDING", prediction_id)
            return Outcome.PENDING

        window_end = now
        if prediction.target_date:
            target_end = datetime.combine(prediction.target_date, time.max, tzinfo=timezone.utc)
            window_end = min(target_end, now)
        snapshot = await self.market.get_snapshot(
            prediction.asset_symbol, prediction.asset_type, prediction.created_at, window_end,
        )
        outcome = evaluate(prediction, snapshot, now=now, tolerance=self.tolerance, force=force)
        if not outcome.is_terminal:
            logger.info(
                "[Validator] %s %s: no decision (snapshot=%s)",
                prediction_id, prediction.asset_symbol, "yes" if snapshot else "none",
            )
            return outcome

        recorded = self.predictions.record_outcome(
            prediction_id,
            outcome,
            evaluation={
                "evaluatedAt": now.isoformat(),
                "referencePrice": reference_price(prediction, snapshot) if snapshot else None,
                "snapshot": snapshot.model_dump(mode="json") if snapshot else None,
                "tolerance": {"mode": self.tolerance.mode, "value": self.tolerance.value},
            },
        )
        if recorded:
            logger.info(
                "[Validator] %s %s %s → %s",
                prediction_id, prediction.asset_symbol, prediction.direction.value, outcome.value,
            )
            self._refresh_metrics(prediction.forecaster_id)
        return outcome

    async def validate_all_pending(self, now: datetime | None = None) -> dict:
        """Sweep every PENDING prediction whose target date has passed."""
        now = now or utcnow()
        due = self.predictions.list_due_for_validation(now)
        counts = {outcome.value: 0 for outcome in Outcome}
        for prediction in due:
            outcome = await self.validate(prediction.id, now=now)
            if outcome is not None:
                counts[outcome.value] += 1
        graded = sum(v for k, v in counts.items() if k != Outcome.PENDING.value)
        logger.info("[Validator] Sweep: %d due, %d graded", len(due), graded)
        return {"checked": len(due), "graded": graded, "outcomes": counts}

    def _refresh_metrics(self, forecaster_id: str) -> None:
        if self.forecasters is None:
            return
        metrics = forecaster_metrics(self.predictions.list_for_forecaster(forecaster_id))
        self.forecasters.update_metrics(forecaster_id, metrics)
