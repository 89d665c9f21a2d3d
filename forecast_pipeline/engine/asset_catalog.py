"""Known-asset whitelist and symbol canonicalization.

Symbols outside the whitelist are still accepted by the extraction engine,
just typed ``UNKNOWN`` so a reviewer can look at them.
"""

from __future__ import annotations

import re

from forecast_pipeline.models.prediction import AssetType

CRYPTO_SYMBOLS = frozenset({
    "BTC", "ETH", "BNB", "ADA", "SOL", "XRP", "DOT", "DOGE", "AVAX", "MATIC",
    "LINK", "UNI", "LTC", "BCH", "ATOM", "FIL", "TRX", "ETC", "XLM", "VET",
    "ICP", "ALGO", "MANA", "SAND", "AXS", "SHIB", "CRO", "NEAR", "APE", "TON",
    "SUI", "PEPE", "ARB", "OP", "HBAR", "KAS", "INJ", "RNDR", "TAO", "XMR",
})

STOCK_SYMBOLS = frozenset({
    "AAPL", "MSFT", "GOOGL", "GOOG", "AMZN", "TSLA", "META", "NVDA", "BRK.A",
    "BRK.B", "UNH", "JNJ", "JPM", "V", "PG", "HD", "MA", "PYPL", "DIS", "ADBE",
    "NFLX", "CRM", "INTC", "VZ", "KO", "PFE", "T", "CSCO", "XOM", "ABT", "TMO",
    "ACN", "CVX", "WMT", "MRK", "COST", "DHR", "LLY", "AVGO", "ORCL", "LIN",
    "NKE", "NEE", "UPS", "AMD", "PLTR", "COIN", "MSTR", "MARA", "RIOT", "HOOD",
    # ETFs are graded like stocks
    "SPY", "QQQ", "IWM", "EFA", "VTI", "VEA", "VWO", "TLT", "HYG", "LQD",
    "XLF", "XLE", "XLK", "XLI", "XLU", "XLV", "XLY", "XLP", "XLB", "XLRE",
    "VOO", "VXUS", "BND", "ARKK", "IBIT", "GBTC", "FBTC", "SMH",
})

INDEX_SYMBOLS = frozenset({
    "SPX", "NDX", "DJI", "RUT", "VIX", "DXY", "FTSE", "DAX", "N225",
    "^GSPC", "^DJI", "^IXIC", "^RUT", "^VIX", "^NDX",
})

COMMODITY_SYMBOLS = frozenset({
    "GOLD", "SILVER", "OIL", "WTI", "BRENT", "NATGAS", "COPPER", "XAU", "XAG",
    "GC=F", "SI=F", "CL=F", "NG=F", "HG=F", "GLD", "SLV", "USO", "UNG",
})

FOREX_SYMBOLS = frozenset({
    "EURUSD", "GBPUSD", "USDJPY", "USDCHF", "AUDUSD", "USDCAD", "NZDUSD",
    "EURGBP", "EURJPY", "GBPJPY", "USDCNY", "USDINR",
})

# Common names, slang and transcription typos → canonical symbol
ALIASES: dict[str, str] = {
    "bitcoin": "BTC", "bitcoins": "BTC", "bitcon": "BTC", "big coin": "BTC",
    "xbt": "BTC", "wbtc": "BTC",
    "ethereum": "ETH", "etherium": "ETH", "ether": "ETH", "steth": "ETH",
    "weth": "ETH",
    "solana": "SOL", "cardano": "ADA", "ripple": "XRP", "dogecoin": "DOGE",
    "polygon": "MATIC", "chainlink": "LINK", "litecoin": "LTC",
    "polkadot": "DOT", "avalanche": "AVAX", "shiba inu": "SHIB",
    "microstrategy": "MSTR", "strategy": "MSTR", "coinbase": "COIN",
    "tesla": "TSLA", "apple": "AAPL", "nvidia": "NVDA", "microsoft": "MSFT",
    "amazon": "AMZN", "google": "GOOGL", "alphabet": "GOOGL", "netflix": "NFLX",
    "palantir": "PLTR", "marathon": "MARA",
    "s&p 500": "SPX", "s&p500": "SPX", "s&p": "SPX", "sp500": "SPX",
    "nasdaq": "NDX", "nasdaq 100": "NDX", "dow": "DJI", "dow jones": "DJI",
    "russell 2000": "RUT", "dollar index": "DXY",
    "gold": "GOLD", "silver": "SILVER", "crude": "OIL", "crude oil": "OIL",
    "natural gas": "NATGAS",
}

_QUOTE_CURRENCIES = ("USDT", "USDC", "USD", "BUSD", "EUR")
_PAIR_SEP_RE = re.compile(r"[/\-_:]")


def canonicalize_symbol(raw: str | None, name: str | None = None) -> str | None:
    """Return the canonical upper-case symbol for ``raw`` (or ``name``).

    Handles ``$BTC``, ``#btc``, ``BTC/USD``, ``BTC-USD``, ``BTCUSDT``,
    common names ("Bitcoin") and wrapped tokens ("WBTC").
    """
    for candidate in (raw, name):
        if not candidate:
            continue
        text = candidate.strip().lstrip("$#").strip()
        if not text:
            continue

        alias = ALIASES.get(text.lower())
        if alias:
            return alias

        upper = text.upper()
        if upper in _ALL_KNOWN:
            return upper

        # Trading pairs: BTC/USD, ETH-USDT; keep FX pairs as one symbol
        parts = [p for p in _PAIR_SEP_RE.split(upper) if p]
        if len(parts) == 2 and parts[1] in _QUOTE_CURRENCIES:
            joined = parts[0] + parts[1]
            if joined in FOREX_SYMBOLS:
                return joined
            return ALIASES.get(parts[0].lower(), parts[0])
        for quote in _QUOTE_CURRENCIES:
            if upper.endswith(quote) and len(upper) > len(quote) + 1:
                base = upper[: -len(quote)]
                if base in CRYPTO_SYMBOLS:
                    return base
        if upper.endswith("=X") and upper[:-2] in FOREX_SYMBOLS:
            return upper[:-2]

        if re.fullmatch(r"\^?[A-Z0-9.=]{1,12}", upper):
            return upper
    return None


def detect_asset_type(symbol: str | None) -> AssetType:
    if not symbol:
        return AssetType.UNKNOWN
    upper = symbol.upper()
    if upper in CRYPTO_SYMBOLS:
        return AssetType.CRYPTO
    if upper in STOCK_SYMBOLS:
        return AssetType.STOCK
    if upper in INDEX_SYMBOLS:
        return AssetType.INDEX
    if upper in COMMODITY_SYMBOLS:
        return AssetType.COMMODITY
    if upper in FOREX_SYMBOLS:
        return AssetType.FOREX
    return AssetType.UNKNOWN


_ALL_KNOWN = (
    CRYPTO_SYMBOLS | STOCK_SYMBOLS | INDEX_SYMBOLS | COMMODITY_SYMBOLS | FOREX_SYMBOLS
)
