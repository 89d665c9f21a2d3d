"""Channel Registry rules — keyword policy, config validation, URL parsing.

Pure functions over Channel models; persistence lives in
services/channel_store.py, which calls ``validate_channel_config`` before
every write.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from forecast_pipeline.errors import InvalidChannelConfig
from forecast_pipeline.models.channel import Channel, ChannelType


def resolve_effective_keywords(channel: Channel, forecaster_name: str) -> set[str]:
    """Lower-cased keyword set used to filter a channel's content.

    Primary channels return the empty set, meaning "collect everything".
    Secondary channels always include the forecaster's name.
    """
    if channel.is_primary:
        return set()
    keywords = {kw.strip().lower() for kw in channel.keywords if kw.strip()}
    name = (forecaster_name or "").strip().lower()
    if name:
        keywords.add(name)
    return keywords


def validate_channel_config(
    channel: Channel,
    forecaster_name: str,
    existing: Iterable[Channel] = (),
) -> None:
    """Raise InvalidChannelConfig if ``channel`` may not be written.

    Rules:
      - a primary channel carries no keyword list
      - a secondary channel needs a non-empty effective keyword set
      - at most one enabled primary per (forecaster, type); a second one
        is rejected, never silently demoting the first
    """
    if channel.is_primary and channel.keywords:
        raise InvalidChannelConfig(
            "Primary channels collect everything and cannot carry keywords",
            channel_id=channel.id,
        )
    if not channel.is_primary and not resolve_effective_keywords(channel, forecaster_name):
        raise InvalidChannelConfig(
            "Secondary channel needs at least one keyword or a forecaster name",
            channel_id=channel.id,
        )
    if channel.is_primary and channel.enabled:
        for other in existing:
            if (
                other.id != channel.id
                and other.forecaster_id == channel.forecaster_id
                and other.type == channel.type
                and other.is_primary
                and other.enabled
            ):
                raise InvalidChannelConfig(
                    f"Forecaster {channel.forecaster_id} already has an enabled "
                    f"primary {channel.type.value} channel ({other.id}); "
                    "demote it first",
                    channel_id=channel.id,
                )


# ── URL parsing ───────────────────────────────────────────────────────

_YOUTUBE_PATTERNS = (
    re.compile(r"youtube\.com/channel/(UC[\w-]{10,})", re.IGNORECASE),
    re.compile(r"youtube\.com/(@[\w.\-]+)", re.IGNORECASE),
    re.compile(r"youtube\.com/c/([\w.\-]+)", re.IGNORECASE),
    re.compile(r"youtube\.com/user/([\w.\-]+)", re.IGNORECASE),
)
_TWITTER_RE = re.compile(r"(?:twitter|x)\.com/@?([A-Za-z0-9_]{1,15})(?:[/?#]|$)", re.IGNORECASE)
_TWITTER_RESERVED = {"home", "explore", "search", "i", "intent", "share", "hashtag"}


def parse_channel_url(url: str) -> tuple[ChannelType, str, str] | None:
    """Return ``(type, external_id, canonical_url)`` for a channel URL.

    YouTube ids keep their form (``UC…`` id, ``@handle``, custom name);
    X/Twitter ids are the username.
    """
    text = (url or "").strip()
    for pattern in _YOUTUBE_PATTERNS:
        m = pattern.search(text)
        if m:
            ident = m.group(1)
            if ident.startswith(("UC", "@")):
                canonical = (
                    f"https://www.youtube.com/channel/{ident}"
                    if ident.startswith("UC")
                    else f"https://www.youtube.com/{ident}"
                )
            elif "/user/" in text.lower():
                canonical = f"https://www.youtube.com/user/{ident}"
            else:
                canonical = f"https://www.youtube.com/c/{ident}"
            return ChannelType.YOUTUBE, ident, canonical
    m = _TWITTER_RE.search(text)
    if m and m.group(1).lower() not in _TWITTER_RESERVED:
        username = m.group(1)
        return ChannelType.TWITTER, username, f"https://x.com/{username}"
    return None
