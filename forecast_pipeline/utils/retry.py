"""Retry decorator — exponential backoff for rate-limited async calls."""

from __future__ import annotations

import asyncio
from functools import wraps
from typing import Any, Callable, TypeVar

from forecast_pipeline.utils.logger import logger

F = TypeVar("F", bound=Callable[..., Any])


def is_rate_limit_error(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None)
    if status == 429:
        return True
    text = str(exc).lower()
    return "429" in text or "too many requests" in text or "rate limit" in text


def retry_on_rate_limit(
    max_retries: int = 3,
    base_delay: float = 2.0,
    *,
    should_retry: Callable[[BaseException], bool] = is_rate_limit_error,
):
    """Retry an async callable while ``should_retry(exc)`` holds.

    Delay doubles each attempt: base, 2×base, 4×base...  Exceptions that
    don't qualify propagate immediately; the last one propagates once the
    retries are spent.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if attempt >= max_retries or not should_retry(exc):
                        raise
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        "Rate-limited on %s (attempt %d/%d), retrying in %.1fs",
                        func.__name__, attempt + 1, max_retries, delay,
                    )
                    await asyncio.sleep(delay)
            return None  # unreachable: the loop either returns or raises

        return wrapper  # type: ignore[return-value]

    return decorator
