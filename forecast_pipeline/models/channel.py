"""Forecaster and channel configuration models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ChannelType(str, Enum):
    YOUTUBE = "YOUTUBE"
    TWITTER = "TWITTER"

    @property
    def source_name(self) -> str:
        """Lower-case name used in ``metadata.source.type`` and job sources."""
        return self.value.lower()

    @classmethod
    def from_source(cls, value: str) -> ChannelType:
        """Accept ``youtube``/``YOUTUBE``/``x``/``twitter`` style names."""
        key = (value or "").strip().upper()
        if key == "X":
            key = "TWITTER"
        try:
            return cls(key)
        except ValueError:
            msg = f"Unsupported source type: {value!r}"
            raise ValueError(msg) from None


class Forecaster(BaseModel):
    """A tracked person whose published content is mined for predictions."""

    id: str
    name: str
    slug: str
    is_verified: bool = False
    expertise: list[str] = Field(default_factory=list)
    social_links: dict[str, str] = Field(default_factory=dict)
    metrics: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Channel(BaseModel):
    """One content source owned by a forecaster.

    Primary channels are ingested in full.  Secondary channels are only
    ingested when an item matches the effective keyword set.
    """

    id: str
    forecaster_id: str
    type: ChannelType
    external_id: str
    url: str = ""
    is_primary: bool = False
    enabled: bool = True
    keywords: list[str] = Field(default_factory=list)

    @field_validator("keywords", mode="before")
    @classmethod
    def _dedupe_keywords(cls, v: object) -> list[str]:
        """Ordered set semantics: strip blanks, drop case-insensitive repeats."""
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        seen: set[str] = set()
        out: list[str] = []
        for kw in v:  # type: ignore[union-attr]
            text = str(kw).strip()
            if text and text.lower() not in seen:
                seen.add(text.lower())
                out.append(text)
        return out
