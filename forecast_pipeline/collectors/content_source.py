"""Abstract content source — the only seam to third-party video/social APIs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from forecast_pipeline.models.channel import Channel, ChannelType
from forecast_pipeline.models.content import ContentItem


class ContentSource(ABC):
    """One external platform.

    Implementations raise SourceUnavailable for network, auth and
    rate-limit problems; the orchestrator decides whether to retry.
    """

    source_type: ChannelType

    @abstractmethod
    async def list_recent(
        self, channel: Channel, since: datetime | None, limit: int,
    ) -> list[ContentItem]:
        """Up to ``limit`` items from ``channel``, newest uploads first is fine;
        ordering is the collector's job."""

    @abstractmethod
    async def fetch_item(self, url: str) -> ContentItem:
        """Resolve a single content URL into a ContentItem."""

    @abstractmethod
    def handles(self, url: str) -> bool:
        """Whether ``url`` points at this platform; checked before a single
        extraction calls ``fetch_item``."""
