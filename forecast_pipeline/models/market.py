"""Market data snapshot used to grade predictions."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class MarketSnapshot(BaseModel):
    """Observed prices for one asset over an evaluation window."""

    symbol: str
    start_price: float | None = None  # first close in the window
    current_price: float | None = None  # last close in the window
    high: float | None = None
    low: float | None = None
    as_of: datetime | None = None
