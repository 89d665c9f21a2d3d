"""Content items pulled from sources and their normalized text form."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from forecast_pipeline.models.channel import ChannelType


class MediaType(str, Enum):
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    TEXT = "TEXT"
    IMAGE = "IMAGE"


class ContentItem(BaseModel):
    """A video or post as returned by a content source.

    Ephemeral: only ``source_type``/``url``/``external_id`` survive as
    provenance on the predictions extracted from it.
    """

    external_id: str
    source_type: ChannelType
    media_type: MediaType
    url: str
    channel_id: str | None = None
    channel_name: str = ""
    title: str = ""
    description: str = ""
    text: str = ""  # post body, or a transcript the source already had
    published_at: datetime | None = None
    duration_seconds: int | None = None


class NormalizedDocument(BaseModel):
    """Uniform text representation handed to the extraction engine."""

    item: ContentItem
    text: str
    language: str = "en"
    # Seconds for audio/video, characters for text-native posts
    duration_or_length: int = 0
    transcript_source: str = "post"
