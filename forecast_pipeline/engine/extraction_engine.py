"""Extraction Engine — LLM-backed structured prediction extraction.

Pipeline for one NormalizedDocument:
  1. Split long text into sentence-aligned, overlapping chunks
  2. Per chunk: prompt the LLM, parse the JSON payload, retry with a
     rescue prompt on malformed output (bounded; exhaustion raises
     ExtractionFailed for the document)
  3. Canonicalize every raw prediction: symbol aliases, asset type,
     direction synonyms, 0-100 → [0,1] confidence, target-date parsing
  4. Drop duplicates (same symbol/direction/target), keep the most confident

Plausibility is NOT judged here: a $0 target or a confidence of 1.0 is
stored verbatim for downstream review.
"""

from __future__ import annotations

import calendar
import json
import re
from collections.abc import Callable
from datetime import date, datetime

import httpx
from pydantic import ValidationError

from forecast_pipeline.config import settings
from forecast_pipeline.engine.asset_catalog import canonicalize_symbol, detect_asset_type
from forecast_pipeline.errors import ExtractionFailed
from forecast_pipeline.models.content import NormalizedDocument
from forecast_pipeline.models.prediction import (
    Direction,
    PredictionCandidate,
    RawPrediction,
)
from forecast_pipeline.services.llm_service import LLMService
from forecast_pipeline.utils.logger import logger

_PROMPT_FILE = "prediction_extraction.md"

_SCHEMA_EXAMPLE = {
    "predictions": [
        {
            "asset_symbol": "BTC",
            "asset_name": "Bitcoin",
            "direction": "bullish",
            "confidence": 80,
            "target_price": 150000,
            "target_date": "2025-12-31",
            "timeframe": "by the end of 2025",
            "prediction_text": "Bitcoin will reach $150,000 by the end of 2025.",
            "quote": "I believe Bitcoin will reach $150,000 by the end of 2025",
            "reasoning": "ETF inflows and the halving supply shock.",
        }
    ]
}

_BULLISH = {
    "bullish", "bull", "long", "up", "buy", "strong buy", "higher", "rise",
    "rising", "increase", "moon", "positive", "outperform",
}
_BEARISH = {
    "bearish", "bear", "short", "down", "sell", "strong sell", "lower",
    "fall", "falling", "decrease", "crash", "dump", "negative", "underperform",
}


# ── Canonicalization helpers ──────────────────────────────────────────


def normalize_confidence(value: float | None) -> float:
    """Map either scale onto [0,1]: >1 is read as 0-100, absent is 0.5.

    Exactly 1 is ambiguous (1% or certainty).  It is read on the 0-1
    scale: the prompt asks for 0-100, and a model answering 1% there
    would rarely state the prediction at all.
    """
    if value is None:
        return 0.5
    if value > 1:
        value = value / 100.0
    return min(1.0, max(0.0, value))


def normalize_direction(value: str | None) -> Direction:
    key = (value or "").strip().lower()
    if key in _BULLISH:
        return Direction.BULLISH
    if key in _BEARISH:
        return Direction.BEARISH
    return Direction.NEUTRAL


_MONTHS = {
    name.lower(): idx
    for idx, name in enumerate(calendar.month_name)
    if name
} | {
    name.lower(): idx
    for idx, name in enumerate(calendar.month_abbr)
    if name
}
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{1,2})$")
_QUARTER_RE = re.compile(r"\bq([1-4])\s*[-/ ]?\s*(\d{4})\b|\b(\d{4})\s*[-/ ]?\s*q([1-4])\b")
_HALF_RE = re.compile(r"\bh([12])\s*(\d{4})\b")
_MONTH_YEAR_RE = re.compile(r"\b([a-z]{3,9})\.?\s+(?:of\s+)?(\d{4})\b")
_YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2}|21\d{2})\b")
_END_OF_YEAR_RE = re.compile(r"\b(end of (the )?year|year[- ]end|eoy)\b")


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def parse_target_date(value: object, *, today: date | None = None) -> date | None:
    """Best-effort parse of an LLM-supplied target date.

    ISO dates pass through; ``2025-06`` → month end; ``Q4 2025`` → quarter
    end; ``H1 2026`` → half end; ``March 2026`` → month end; a bare year or
    "end of 2025" → Dec 31; "end of year" → Dec 31 of ``today``.
    Anything else is absent.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip().lower()
    if not text or text in ("null", "none", "n/a", "unknown"):
        return None

    m = _ISO_DATE_RE.match(text)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return None
    m = _YEAR_MONTH_RE.match(text)
    if m and 1 <= int(m.group(2)) <= 12:
        return _month_end(int(m.group(1)), int(m.group(2)))
    m = _QUARTER_RE.search(text)
    if m:
        quarter = int(m.group(1) or m.group(4))
        year = int(m.group(2) or m.group(3))
        return _month_end(year, quarter * 3)
    m = _HALF_RE.search(text)
    if m:
        return _month_end(int(m.group(2)), 6 if m.group(1) == "1" else 12)
    for m in _MONTH_YEAR_RE.finditer(text):
        month = _MONTHS.get(m.group(1))
        if month:
            return _month_end(int(m.group(2)), month)
    m = _YEAR_RE.search(text)
    if m:
        return date(int(m.group(1)), 12, 31)
    if _END_OF_YEAR_RE.search(text):
        return date((today or date.today()).year, 12, 31)
    return None


def score_quality(candidate: PredictionCandidate) -> tuple[int, str]:
    """0-100 completeness/commitment score and its letter grade."""
    score = candidate.confidence * 40
    if candidate.target_price is not None:
        score += 20
    if candidate.target_date is not None:
        score += 20
    if candidate.quote:
        score += 10
    if candidate.reasoning:
        score += 10
    value = int(round(score))
    for threshold, grade in ((80, "A"), (65, "B"), (50, "C"), (35, "D")):
        if value >= threshold:
            return value, grade
    return value, "F"


def dedupe_candidates(candidates: list[PredictionCandidate]) -> list[PredictionCandidate]:
    """Collapse identical (symbol, direction, target) predictions, keeping
    the most confident one.  Symbol-less predictions also compare their
    text.  First-seen order is preserved."""
    best: dict[tuple, PredictionCandidate] = {}
    for cand in candidates:
        key = cand.dedup_key()
        current = best.get(key)
        if current is None or cand.confidence > current.confidence:
            best[key] = cand
    return list(best.values())


def correct_direction(
    direction: Direction,
    target_price: float | None,
    baseline_price: float | None,
    band_pct: float,
) -> tuple[Direction, dict | None]:
    """Recompute direction from target vs. baseline price.

    Within ``band_pct`` percent → NEUTRAL.  Returns the (possibly new)
    direction and a correction record when it changed.
    """
    if target_price is None or not baseline_price or baseline_price <= 0:
        return direction, None
    pct = (target_price - baseline_price) / baseline_price * 100
    if abs(pct) <= band_pct:
        computed = Direction.NEUTRAL
    elif pct > 0:
        computed = Direction.BULLISH
    else:
        computed = Direction.BEARISH
    if computed == direction:
        return direction, None
    return computed, {
        "original": direction.value,
        "corrected": computed.value,
        "changePct": round(pct, 4),
        "reason": (
            f"target {target_price:g} is {pct:+.2f}% from baseline "
            f"{baseline_price:g} (neutral band ±{band_pct:g}%)"
        ),
    }


_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


def chunk_text(text: str, chunk_chars: int, overlap_chars: int) -> list[str]:
    """Split ``text`` into sentence-aligned chunks of at most ~chunk_chars.

    Consecutive chunks share up to ``overlap_chars`` of trailing sentences
    so a prediction straddling a boundary is seen whole at least once.
    """
    if len(text) <= chunk_chars:
        return [text]

    pieces: list[str] = []
    for sentence in _SENTENCE_RE.split(text):
        if not sentence:
            continue
        if len(sentence) <= chunk_chars:
            pieces.append(sentence)
        else:
            pieces.extend(
                sentence[i : i + chunk_chars]
                for i in range(0, len(sentence), chunk_chars)
            )

    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for piece in pieces:
        if current and size + len(piece) + 1 > chunk_chars:
            chunks.append(" ".join(current))
            tail: list[str] = []
            tail_size = 0
            for prev in reversed(current):
                if tail_size + len(prev) + 1 > overlap_chars:
                    break
                tail.insert(0, prev)
                tail_size += len(prev) + 1
            current, size = tail, tail_size
        current.append(piece)
        size += len(piece) + 1
    if current:
        chunks.append(" ".join(current))
    return chunks


def parse_predictions_payload(raw: str) -> list[dict]:
    """Extract the list of prediction dicts from an LLM response.

    Accepts ``{"predictions": [...]}``, a bare array, or a single
    prediction object.  Raises ValueError when the output is not usable.
    """
    cleaned = LLMService.clean_json_response(raw)
    data = json.loads(cleaned)
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    if not isinstance(data, dict):
        msg = f"expected object or array, got {type(data).__name__}"
        raise ValueError(msg)
    for key in ("predictions", "results", "items", "data"):
        if isinstance(data.get(key), list):
            return [d for d in data[key] if isinstance(d, dict)]
    if not data:
        return []
    if any(k in data for k in ("asset_symbol", "asset", "symbol", "prediction_text", "prediction")):
        return [data]
    msg = f"unexpected keys {sorted(data)[:8]}"
    raise ValueError(msg)


# ── Engine ────────────────────────────────────────────────────────────


class ExtractionEngine:
    """Turns a NormalizedDocument into canonical PredictionCandidates."""

    def __init__(
        self,
        llm: LLMService | None = None,
        *,
        max_attempts: int | None = None,
        chunk_chars: int | None = None,
        overlap_chars: int | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.llm = llm or LLMService()
        self.max_attempts = max(1, max_attempts or settings.EXTRACTION_MAX_ATTEMPTS)
        self.chunk_chars = chunk_chars or settings.EXTRACTION_CHUNK_CHARS
        self.overlap_chars = (
            overlap_chars if overlap_chars is not None
            else settings.EXTRACTION_CHUNK_OVERLAP_CHARS
        )
        self._today = today
        self._prompt_template: str | None = None

    @property
    def model_name(self) -> str:
        return str(getattr(self.llm, "model", "unknown"))

    async def extract(
        self, document: NormalizedDocument, forecaster_id: str | None = None,
    ) -> list[PredictionCandidate]:
        """Return zero or more canonical candidates for ``document``.

        Raises ExtractionFailed when any chunk stays malformed after the
        bounded number of attempts.
        """
        text = document.text.strip()
        item = document.item
        if not text:
            logger.info("[Extraction] Empty document %s, nothing to extract", item.external_id)
            return []

        today = self._today()
        system = self._build_system_prompt(today)
        chunks = chunk_text(text, self.chunk_chars, self.overlap_chars)
        logger.info(
            "[Extraction] %s (%s) for forecaster=%s: %d chars in %d chunk(s)",
            item.external_id, item.source_type.source_name, forecaster_id,
            len(text), len(chunks),
        )

        candidates: list[PredictionCandidate] = []
        for idx, chunk in enumerate(chunks):
            user = self._build_user_message(document, chunk, idx, len(chunks))
            raws = await self._extract_chunk(system, user, item.external_id)
            for raw in raws:
                cand = self.canonicalize(raw, today=today)
                if cand is not None:
                    candidates.append(cand)

        unique = dedupe_candidates(candidates)
        logger.info(
            "[Extraction] %s → %d candidate(s) (%d before dedup)",
            item.external_id, len(unique), len(candidates),
        )
        return unique

    async def _extract_chunk(
        self, system: str, user: str, item_id: str,
    ) -> list[RawPrediction]:
        """Bounded attempt loop: transport errors and malformed payloads
        both consume an attempt."""
        prompt = user
        last_error = "no attempts made"
        for attempt in range(1, self.max_attempts + 1):
            try:
                raw = await self.llm.chat(system=system, user=prompt)
            except (httpx.HTTPError, ValueError) as exc:
                last_error = f"LLM request failed: {exc}"
                logger.warning(
                    "[Extraction] Attempt %d/%d for %s: %s",
                    attempt, self.max_attempts, item_id, last_error,
                )
                continue

            try:
                items = parse_predictions_payload(raw)
            except ValueError as exc:
                last_error = f"malformed LLM response: {exc}"
                logger.warning(
                    "[Extraction] Attempt %d/%d for %s: %s (preview: %s)",
                    attempt, self.max_attempts, item_id, last_error, (raw or "")[:200],
                )
                prompt = self._build_rescue_prompt(raw, user)
                continue

            parsed: list[RawPrediction] = []
            for entry in items:
                try:
                    parsed.append(RawPrediction.model_validate(entry))
                except ValidationError as exc:
                    logger.debug("[Extraction] Dropping unparseable entry: %s", exc)
            return parsed

        raise ExtractionFailed(
            f"Extraction failed after {self.max_attempts} attempts: {last_error}",
            item_id=item_id,
        )

    def canonicalize(
        self, raw: RawPrediction, *, today: date | None = None,
    ) -> PredictionCandidate | None:
        """Typed candidate from a raw prediction, or None when it carries
        neither a prediction sentence nor an asset symbol."""
        symbol = canonicalize_symbol(raw.asset_symbol, raw.asset_name)
        text = raw.prediction_text or raw.quote
        if not text and not symbol:
            return None

        direction = normalize_direction(raw.direction)
        if not text:
            text = f"{symbol} {direction.value.lower()}"
            if raw.target_price is not None:
                text += f" with a target of {raw.target_price:g}"
            if raw.timeframe:
                text += f" ({raw.timeframe})"

        target_date = parse_target_date(raw.target_date, today=today)
        if target_date is None and raw.timeframe:
            target_date = parse_target_date(raw.timeframe, today=today)

        cand = PredictionCandidate(
            asset_symbol=symbol,
            asset_type=detect_asset_type(symbol),
            prediction_text=text,
            direction=direction,
            confidence=normalize_confidence(raw.confidence),
            target_price=raw.target_price,
            target_date=target_date,
            timeframe=raw.timeframe,
            quote=raw.quote,
            reasoning=raw.reasoning,
        )
        cand.quality_score, cand.quality_grade = score_quality(cand)
        return cand

    # ------------------------------------------------------------------
    # Prompt building
    # ------------------------------------------------------------------

    def _build_system_prompt(self, today: date) -> str:
        if self._prompt_template is None:
            path = settings.PROMPTS_DIR / _PROMPT_FILE
            self._prompt_template = path.read_text(encoding="utf-8")
        return (
            self._prompt_template
            .replace("{today}", today.isoformat())
            .replace("{schema_json}", json.dumps(_SCHEMA_EXAMPLE, indent=2))
        )

    @staticmethod
    def _build_user_message(
        document: NormalizedDocument, chunk: str, index: int, total: int,
    ) -> str:
        item = document.item
        published = item.published_at.isoformat() if item.published_at else "Unknown"
        header = [
            f"SOURCE: {item.source_type.source_name}",
            f"URL: {item.url}",
            f"TITLE: {item.title or 'Untitled'}",
            f"CHANNEL: {item.channel_name or 'Unknown'}",
            f"PUBLISHED: {published}",
        ]
        if item.description:
            header.append(f"DESCRIPTION: {item.description[:2000]}")
        if total > 1:
            header.append(
                f"PART {index + 1} OF {total} (extract only predictions in this part)"
            )
        return "\n".join(header) + "\n\nTEXT:\n" + chunk

    @staticmethod
    def _build_rescue_prompt(bad_raw: str, user: str) -> str:
        """Retry prompt that shows the model what it got wrong."""
        preview = (bad_raw or "").strip()[:800]
        return (
            "Your previous response was not valid JSON in the required shape.\n"
            'You MUST respond with ONLY a JSON object: {"predictions": [ ... ]} '
            "using the fields described in the instructions.\n\n"
            f"Your bad response (truncated):\n{preview}\n\n"
            "Do NOT include markdown, commentary, or text outside the JSON.\n\n"
            f"Extract the predictions again from:\n\n{user}"
        )
