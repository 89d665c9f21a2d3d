"""Content Collector — channel-scoped retrieval with keyword-filter policy.

``collect(channel, since)`` is an async generator: each call fetches the
channel's recent items from its source once, then yields them oldest
first.  Calls are independent and side-effect free, so two calls with the
same ``since`` over unchanged upstream content yield the same items.

Policy:
  - primary channel  → every item published since ``since`` is kept
  - secondary channel → kept only if some effective keyword (configured
    keywords ∪ forecaster name) is a case-insensitive substring of the
    title or description

Deduplication against already-processed items is NOT done here; the
orchestrator checks the (channel_id, external_id) idempotency key.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from forecast_pipeline.collectors.content_source import ContentSource
from forecast_pipeline.config import settings
from forecast_pipeline.engine.channel_registry import resolve_effective_keywords
from forecast_pipeline.errors import SourceUnavailable
from forecast_pipeline.models.channel import Channel, ChannelType
from forecast_pipeline.models.content import ContentItem
from forecast_pipeline.utils.logger import logger

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class CollectionStats:
    """Per-call counters, filled in by ``collect`` when the caller passes one."""

    candidates: int = 0
    retained: int = 0
    filtered: int = 0


def matches_keywords(item: ContentItem, keywords: Iterable[str]) -> bool:
    """Partial-word, case-insensitive match over title + description."""
    haystack = f"{item.title} {item.description}".lower()
    return any(kw and kw.lower() in haystack for kw in keywords)


class ContentCollector:
    """Routes channels to their ContentSource and applies the keyword policy."""

    def __init__(
        self,
        sources: Iterable[ContentSource],
        *,
        max_items_primary: int | None = None,
        max_items_secondary: int | None = None,
    ) -> None:
        self._sources: dict[ChannelType, ContentSource] = {
            s.source_type: s for s in sources
        }
        self.max_items_primary = max_items_primary or settings.SOURCE_MAX_ITEMS_PRIMARY
        self.max_items_secondary = max_items_secondary or settings.SOURCE_MAX_ITEMS_SECONDARY

    def source_for(self, channel_type: ChannelType) -> ContentSource:
        source = self._sources.get(channel_type)
        if source is None:
            raise SourceUnavailable(f"No content source registered for {channel_type.value}")
        return source

    async def collect(
        self,
        channel: Channel,
        since: datetime | None,
        *,
        forecaster_name: str = "",
        stats: CollectionStats | None = None,
    ) -> AsyncIterator[ContentItem]:
        """Yield the channel's items published since ``since``, oldest first.

        Items with no publish time are kept (their age can't be checked)
        and come first.  Raises SourceUnavailable on the first iteration
        if the source cannot be reached.
        """
        source = self.source_for(channel.type)
        keywords = resolve_effective_keywords(channel, forecaster_name)
        limit = self.max_items_primary if channel.is_primary else self.max_items_secondary

        candidates = await source.list_recent(channel, since, limit)

        retained: list[ContentItem] = []
        filtered = 0
        for item in candidates:
            if since is not None and item.published_at is not None and item.published_at < since:
                filtered += 1
                continue
            if keywords and not matches_keywords(item, keywords):
                logger.debug(
                    "[Collector] %s: '%s' matches none of %s",
                    channel.external_id, item.title[:80], sorted(keywords),
                )
                filtered += 1
                continue
            if item.channel_id is None:
                item = item.model_copy(update={"channel_id": channel.id})
            retained.append(item)

        retained.sort(key=lambda i: i.published_at or _EPOCH)
        if stats is not None:
            stats.candidates = len(candidates)
            stats.retained = len(retained)
            stats.filtered = filtered
        logger.info(
            "[Collector] %s %s (%s): %d candidate(s), %d retained, %d filtered",
            channel.type.value, channel.external_id,
            "primary" if channel.is_primary else "secondary",
            len(candidates), len(retained), filtered,
        )
        for item in retained:
            yield item
