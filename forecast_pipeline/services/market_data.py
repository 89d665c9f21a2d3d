"""Market data via yfinance — baseline prices and evaluation snapshots.

yfinance is blocking, so every call runs in a worker thread.  Symbols are
mapped to Yahoo tickers first: crypto → ``BTC-USD``, forex → ``EURUSD=X``,
plus a few index/commodity aliases (``SPX`` → ``^GSPC``, ``GOLD`` → ``GC=F``).
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pandas as pd
import yfinance as yf

from forecast_pipeline.models.market import MarketSnapshot
from forecast_pipeline.models.prediction import AssetType
from forecast_pipeline.utils.logger import logger
from forecast_pipeline.utils.retry import retry_on_rate_limit

_YAHOO_ALIASES = {
    "SPX": "^GSPC", "NDX": "^NDX", "DJI": "^DJI", "RUT": "^RUT", "VIX": "^VIX",
    "DXY": "DX-Y.NYB", "FTSE": "^FTSE", "DAX": "^GDAXI", "N225": "^N225",
    "GOLD": "GC=F", "XAU": "GC=F", "SILVER": "SI=F", "XAG": "SI=F",
    "OIL": "CL=F", "WTI": "CL=F", "BRENT": "BZ=F", "NATGAS": "NG=F",
    "COPPER": "HG=F",
}


def yahoo_ticker(symbol: str, asset_type: AssetType = AssetType.UNKNOWN) -> str:
    upper = symbol.strip().upper()
    if upper in _YAHOO_ALIASES:
        return _YAHOO_ALIASES[upper]
    if asset_type == AssetType.CRYPTO and not upper.endswith("-USD"):
        return f"{upper}-USD"
    if asset_type == AssetType.FOREX and not upper.endswith("=X"):
        return f"{upper}=X"
    if asset_type == AssetType.STOCK:
        return upper.replace(".", "-")  # BRK.B → BRK-B
    return upper


class MarketDataService:
    """Async facade over yfinance used by persistence and the validator."""

    async def get_price(
        self, symbol: str, asset_type: AssetType = AssetType.UNKNOWN,
    ) -> float | None:
        """Latest price, or None when Yahoo has nothing for the symbol."""
        ticker = yahoo_ticker(symbol, asset_type)
        try:
            return await self._last_price(ticker)
        except Exception as exc:  # yfinance surfaces many error types
            logger.warning("[MarketData] Price fetch failed for %s: %s", ticker, exc)
            return None

    async def get_snapshot(
        self,
        symbol: str,
        asset_type: AssetType,
        start: datetime,
        end: datetime,
    ) -> MarketSnapshot | None:
        """Daily OHLC summary between ``start`` and ``end`` (inclusive)."""
        ticker = yahoo_ticker(symbol, asset_type)
        start_day = start.date()
        end_day = max(end.date(), start_day) + timedelta(days=1)
        try:
            df = await self._history(ticker, start_day.isoformat(), end_day.isoformat())
        except Exception as exc:  # yfinance surfaces many error types
            logger.warning("[MarketData] History fetch failed for %s: %s", ticker, exc)
            return None
        return self.snapshot_from_history(symbol, df)

    @staticmethod
    def snapshot_from_history(symbol: str, df: pd.DataFrame | None) -> MarketSnapshot | None:
        if df is None or df.empty or "Close" not in df:
            return None
        closes = df["Close"].dropna()
        if closes.empty:
            return None
        highs = df["High"].dropna() if "High" in df else closes
        lows = df["Low"].dropna() if "Low" in df else closes
        as_of = closes.index[-1]
        return MarketSnapshot(
            symbol=symbol,
            start_price=float(closes.iloc[0]),
            current_price=float(closes.iloc[-1]),
            high=float(highs.max()) if not highs.empty else None,
            low=float(lows.min()) if not lows.empty else None,
            as_of=as_of.to_pydatetime() if isinstance(as_of, pd.Timestamp) else None,
        )

    # ------------------------------------------------------------------
    # Blocking yfinance calls, pushed to threads
    # ------------------------------------------------------------------

    @retry_on_rate_limit(max_retries=3, base_delay=2.0)
    async def _last_price(self, ticker: str) -> float | None:
        return await asyncio.to_thread(self._fetch_last_price, ticker)

    @retry_on_rate_limit(max_retries=3, base_delay=2.0)
    async def _history(self, ticker: str, start: str, end: str) -> pd.DataFrame:
        return await asyncio.to_thread(
            lambda: yf.Ticker(ticker).history(start=start, end=end, interval="1d")
        )

    @staticmethod
    def _fetch_last_price(ticker: str) -> float | None:
        t = yf.Ticker(ticker)
        price = getattr(t.fast_info, "last_price", None)
        if price is None or pd.isna(price):
            hist = t.history(period="5d")
            if hist.empty:
                return None
            price = hist["Close"].dropna().iloc[-1]
        return float(price)
