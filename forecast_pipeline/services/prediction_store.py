"""Prediction persistence and the processed-content ledger.

Write paths:
  - ``create``          — extraction engine output, always PENDING
  - ``record_outcome``  — validator only; never touches a terminal row
  - ``override_outcome``/``update_fields`` — admin boundary
"""

from __future__ import annotations

import json
import uuid
from datetime import date, datetime

import duckdb

from forecast_pipeline.database import from_db_ts, to_db_ts, utcnow
from forecast_pipeline.models.prediction import (
    AssetType,
    Direction,
    Outcome,
    Prediction,
    PredictionCandidate,
)
from forecast_pipeline.utils.logger import logger

_COLUMNS = (
    "id, forecaster_id, asset_symbol, asset_type, prediction_text, direction, "
    "confidence, baseline_price, target_price, target_date, created_at, "
    "outcome, validated_at, metadata"
)

_EDITABLE_FIELDS = {
    "asset_symbol", "asset_type", "prediction_text", "direction",
    "confidence", "baseline_price", "target_price", "target_date",
}


class PredictionStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self.conn = conn

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        forecaster_id: str,
        candidate: PredictionCandidate,
        *,
        source_type: str,
        source_url: str,
        baseline_price: float | None = None,
        direction: Direction | None = None,
        extra_metadata: dict | None = None,
    ) -> Prediction:
        """Persist a candidate as a PENDING prediction.

        ``metadata.source`` is always written so every pipeline-produced
        prediction traces back to its content item.
        """
        metadata = {
            "source": {"type": source_type, "url": source_url},
            **(extra_metadata or {}),
        }
        prediction = Prediction(
            id=uuid.uuid4().hex,
            forecaster_id=forecaster_id,
            asset_symbol=candidate.asset_symbol or "UNKNOWN",
            asset_type=candidate.asset_type,
            prediction_text=candidate.prediction_text,
            direction=direction or candidate.direction,
            confidence=candidate.confidence,
            baseline_price=baseline_price,
            target_price=candidate.target_price,
            target_date=candidate.target_date,
            metadata=metadata,
        )
        self.conn.execute(
            f"INSERT INTO predictions ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                prediction.id,
                prediction.forecaster_id,
                prediction.asset_symbol,
                prediction.asset_type.value,
                prediction.prediction_text,
                prediction.direction.value,
                prediction.confidence,
                prediction.baseline_price,
                prediction.target_price,
                prediction.target_date,
                to_db_ts(prediction.created_at),
                prediction.outcome.value,
                None,
                json.dumps(prediction.metadata, default=str),
            ],
        )
        return prediction

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, prediction_id: str) -> Prediction | None:
        row = self.conn.execute(
            f"SELECT {_COLUMNS} FROM predictions WHERE id = ?", [prediction_id],
        ).fetchone()
        return self._row_to_prediction(row) if row else None

    def list_predictions(
        self,
        *,
        forecaster_id: str | None = None,
        outcome: Outcome | None = None,
        limit: int = 100,
    ) -> list[Prediction]:
        clauses: list[str] = []
        params: list = []
        if forecaster_id:
            clauses.append("forecaster_id = ?")
            params.append(forecaster_id)
        if outcome:
            clauses.append("outcome = ?")
            params.append(Outcome(outcome).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT {_COLUMNS} FROM predictions {where} "
            "ORDER BY created_at DESC LIMIT ?",
            [*params, limit],
        ).fetchall()
        return [self._row_to_prediction(r) for r in rows]

    def list_for_forecaster(self, forecaster_id: str) -> list[Prediction]:
        rows = self.conn.execute(
            f"SELECT {_COLUMNS} FROM predictions WHERE forecaster_id = ?",
            [forecaster_id],
        ).fetchall()
        return [self._row_to_prediction(r) for r in rows]

    def list_due_for_validation(self, now: datetime | None = None) -> list[Prediction]:
        """PENDING predictions whose target date has arrived."""
        today = (now or utcnow()).date()
        rows = self.conn.execute(
            f"SELECT {_COLUMNS} FROM predictions "
            "WHERE outcome = 'PENDING' AND target_date IS NOT NULL AND target_date <= ? "
            "ORDER BY target_date",
            [today],
        ).fetchall()
        return [self._row_to_prediction(r) for r in rows]

    # ------------------------------------------------------------------
    # Outcome transitions
    # ------------------------------------------------------------------

    def record_outcome(
        self, prediction_id: str, outcome: Outcome, *, evaluation: dict | None = None,
    ) -> bool:
        """PENDING → terminal.  Returns False (no write) for terminal rows."""
        outcome = Outcome(outcome)
        if not outcome.is_terminal:
            return False
        current = self.get(prediction_id)
        if current is None or current.outcome.is_terminal:
            return False
        metadata = dict(current.metadata)
        if evaluation:
            metadata["evaluation"] = evaluation
        self.conn.execute(
            "UPDATE predictions SET outcome = ?, validated_at = ?, metadata = ? "
            "WHERE id = ? AND outcome = 'PENDING'",
            [outcome.value, to_db_ts(utcnow()), json.dumps(metadata, default=str), prediction_id],
        )
        return True

    def override_outcome(
        self, prediction_id: str, outcome: Outcome, *, reason: str = "",
    ) -> Prediction | None:
        """Admin override: may change a terminal outcome.  The previous value
        is kept in ``metadata.overrides``."""
        current = self.get(prediction_id)
        if current is None:
            return None
        outcome = Outcome(outcome)
        metadata = dict(current.metadata)
        metadata.setdefault("overrides", []).append({
            "from": current.outcome.value,
            "to": outcome.value,
            "reason": reason,
            "at": utcnow().isoformat(),
        })
        validated_at = None if outcome is Outcome.PENDING else to_db_ts(utcnow())
        self.conn.execute(
            "UPDATE predictions SET outcome = ?, validated_at = ?, metadata = ? WHERE id = ?",
            [outcome.value, validated_at, json.dumps(metadata, default=str), prediction_id],
        )
        logger.info(
            "[Predictions] Admin override %s: %s → %s",
            prediction_id, current.outcome.value, outcome.value,
        )
        return self.get(prediction_id)

    def update_fields(self, prediction_id: str, **fields: object) -> Prediction | None:
        """Admin manual edit of descriptive fields (not the outcome)."""
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            msg = f"Fields not editable: {sorted(unknown)}"
            raise ValueError(msg)
        current = self.get(prediction_id)
        if current is None:
            return None
        merged = current.model_copy(update=fields)
        # Round-trip through validation to coerce enums/dates
        merged = Prediction.model_validate(merged.model_dump())
        self.conn.execute(
            "UPDATE predictions SET asset_symbol = ?, asset_type = ?, prediction_text = ?, "
            "direction = ?, confidence = ?, baseline_price = ?, target_price = ?, "
            "target_date = ? WHERE id = ?",
            [
                merged.asset_symbol,
                merged.asset_type.value,
                merged.prediction_text,
                merged.direction.value,
                merged.confidence,
                merged.baseline_price,
                merged.target_price,
                merged.target_date,
                prediction_id,
            ],
        )
        return self.get(prediction_id)

    # ------------------------------------------------------------------
    # Processed-content ledger: idempotency key (channel_id, external_id)
    # ------------------------------------------------------------------

    def is_processed(self, channel_id: str, external_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM processed_content WHERE channel_id = ? AND external_id = ?",
            [channel_id, external_id],
        ).fetchone()
        return row is not None

    def mark_processed(
        self,
        channel_id: str,
        external_id: str,
        *,
        job_id: str | None,
        source_url: str,
        predictions_created: int,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO processed_content
                (channel_id, external_id, job_id, source_url, predictions_created, processed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            [channel_id, external_id, job_id, source_url, predictions_created, to_db_ts(utcnow())],
        )

    @staticmethod
    def _row_to_prediction(row: tuple) -> Prediction:
        target_date = row[9]
        if isinstance(target_date, datetime):
            target_date = target_date.date()
        return Prediction(
            id=row[0],
            forecaster_id=row[1],
            asset_symbol=row[2],
            asset_type=AssetType(row[3]),
            prediction_text=row[4],
            direction=Direction(row[5]),
            confidence=row[6],
            baseline_price=row[7],
            target_price=row[8],
            target_date=target_date if isinstance(target_date, date) else None,
            created_at=from_db_ts(row[10]) or utcnow(),
            outcome=Outcome(row[11]),
            validated_at=from_db_ts(row[12]),
            metadata=json.loads(row[13] or "{}"),
        )
