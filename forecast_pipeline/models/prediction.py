"""Prediction models — raw LLM output, canonical candidates, stored records.

Three layers:
  - RawPrediction:       permissive schema for whatever the LLM returned
  - PredictionCandidate: canonicalized, typed, ready to persist
  - Prediction:          the persisted record with outcome + provenance
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Direction(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class AssetType(str, Enum):
    CRYPTO = "CRYPTO"
    STOCK = "STOCK"
    INDEX = "INDEX"
    COMMODITY = "COMMODITY"
    FOREX = "FOREX"
    UNKNOWN = "UNKNOWN"


class Outcome(str, Enum):
    PENDING = "PENDING"
    CORRECT = "CORRECT"
    INCORRECT = "INCORRECT"
    PARTIALLY_CORRECT = "PARTIALLY_CORRECT"

    @property
    def is_terminal(self) -> bool:
        return self is not Outcome.PENDING


_NUMBER_RE = re.compile(r"(-?\d+(?:\.\d+)?)\s*([kmbt])?\b", re.IGNORECASE)
_MULTIPLIERS = {"k": 1e3, "m": 1e6, "b": 1e9, "t": 1e12}


def _parse_number(v: object) -> float | None:
    """Parse ``150000``, ``"$150,000"``, ``"150k"``, ``"80%"`` into a float."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    text = str(v).strip().replace(",", "").replace("$", "")
    if text.lower() in ("", "null", "none", "n/a", "na", "unknown"):
        return None
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    value = float(match.group(1))
    suffix = (match.group(2) or "").lower()
    return value * _MULTIPLIERS.get(suffix, 1.0)


class RawPrediction(BaseModel):
    """One prediction exactly as the model emitted it, loosely typed.

    Accepts both the flat shape requested by the prompt and the nested
    ``{asset: {...}, prediction: {...}, context: {...}}`` shape some
    models fall back to.
    """

    model_config = ConfigDict(extra="ignore")

    asset_symbol: str | None = None
    asset_name: str | None = None
    asset_type: str | None = None
    direction: str | None = None
    confidence: float | None = None
    target_price: float | None = None
    target_date: str | None = None
    timeframe: str | None = None
    prediction_text: str | None = None
    quote: str | None = None
    reasoning: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_nested(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        flat = dict(data)
        asset = flat.pop("asset", None)
        if isinstance(asset, dict):
            flat.setdefault("asset_symbol", asset.get("symbol"))
            flat.setdefault("asset_name", asset.get("fullName") or asset.get("name"))
            flat.setdefault("asset_type", asset.get("type"))
        elif isinstance(asset, str):
            flat.setdefault("asset_symbol", asset)
        pred = flat.pop("prediction", None)
        if isinstance(pred, dict):
            flat.setdefault("prediction_text", pred.get("text"))
            for key in ("direction", "confidence", "timeframe"):
                flat.setdefault(key, pred.get(key))
            flat.setdefault("target_price", pred.get("targetPrice"))
            flat.setdefault("target_date", pred.get("targetDate"))
        elif isinstance(pred, str):
            flat.setdefault("prediction_text", pred)
        context = flat.pop("context", None)
        if isinstance(context, dict):
            flat.setdefault("quote", context.get("exactQuote"))
            flat.setdefault("reasoning", context.get("reasoning"))
        # Common aliases
        for alias, field in (
            ("symbol", "asset_symbol"),
            ("ticker", "asset_symbol"),
            ("text", "prediction_text"),
            ("targetPrice", "target_price"),
            ("targetDate", "target_date"),
            ("exact_quote", "quote"),
        ):
            if alias in flat and flat.get(field) is None:
                flat[field] = flat[alias]
        return flat

    @field_validator("confidence", "target_price", mode="before")
    @classmethod
    def _coerce_number(cls, v: object) -> float | None:
        """LLMs send numbers as ``"$150,000"``, ``"150k"`` or ``"80%"``."""
        return _parse_number(v)

    @field_validator(
        "asset_symbol", "asset_name", "asset_type", "direction", "target_date",
        "timeframe", "prediction_text", "quote", "reasoning",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, v: object) -> str | None:
        if v is None:
            return None
        text = str(v).strip()
        if text.lower() in ("", "null", "none", "n/a"):
            return None
        return text


class PredictionCandidate(BaseModel):
    """Canonicalized extraction output, not yet persisted."""

    asset_symbol: str | None = None
    asset_type: AssetType = AssetType.UNKNOWN
    prediction_text: str
    direction: Direction = Direction.NEUTRAL
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    target_price: float | None = None
    target_date: date | None = None
    timeframe: str | None = None
    quote: str | None = None
    reasoning: str | None = None
    quality_score: int = 0
    quality_grade: str = "F"

    def dedup_key(self) -> tuple:
        # without a symbol the sentence is the only thing telling two apart
        text = None if self.asset_symbol else " ".join(self.prediction_text.lower().split())
        return (self.asset_symbol, text, self.direction, self.target_price, self.target_date)


class Prediction(BaseModel):
    """A persisted prediction.  ``outcome`` only ever leaves PENDING once
    through the validator; admin overrides go through a separate path."""

    id: str
    forecaster_id: str
    asset_symbol: str
    asset_type: AssetType = AssetType.UNKNOWN
    prediction_text: str
    direction: Direction = Direction.NEUTRAL
    confidence: float = Field(ge=0.0, le=1.0)
    baseline_price: float | None = None
    target_price: float | None = None
    target_date: date | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: Outcome = Outcome.PENDING
    validated_at: datetime | None = None
    metadata: dict = Field(default_factory=dict)

    @property
    def source(self) -> dict:
        return self.metadata.get("source", {})
