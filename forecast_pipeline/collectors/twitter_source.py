"""X/Twitter content source via the RapidAPI Twitter endpoints (httpx)."""

from __future__ import annotations

import re
from datetime import datetime, timezone

import httpx

from forecast_pipeline.collectors.content_source import ContentSource
from forecast_pipeline.config import settings
from forecast_pipeline.errors import SourceUnavailable, UnsupportedMedia
from forecast_pipeline.models.channel import Channel, ChannelType
from forecast_pipeline.models.content import ContentItem, MediaType
from forecast_pipeline.utils.logger import logger

_STATUS_RE = re.compile(r"(?:twitter|x)\.com/(?:[\w]+|i(?:/web)?)/status(?:es)?/(\d+)", re.IGNORECASE)


def parse_tweet_time(value: object) -> datetime | None:
    """ISO-8601 (``2025-01-02T03:04:05.000Z``) or legacy
    ``Wed Oct 10 20:19:24 +0000 2018``."""
    if not value:
        return None
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).astimezone(timezone.utc)
    except ValueError:
        pass
    try:
        return datetime.strptime(text, "%a %b %d %H:%M:%S %z %Y").astimezone(timezone.utc)
    except ValueError:
        return None


class TwitterSource(ContentSource):
    source_type = ChannelType.TWITTER

    def __init__(
        self,
        *,
        api_key: str | None = None,
        host: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.RAPIDAPI_KEY
        self.host = host or settings.TWITTER_API_HOST
        self.base_url = f"https://{self.host}/api/v2"
        self._client = client
        self.timeout = timeout

    def handles(self, url: str) -> bool:
        return bool(re.search(r"(?:^|[/.])(?:twitter|x)\.com/", url or "", re.IGNORECASE))

    async def list_recent(
        self, channel: Channel, since: datetime | None, limit: int,
    ) -> list[ContentItem]:
        username = channel.external_id.lstrip("@")
        user = await self._get(f"/users/by/username/{username}", channel_id=channel.id)
        user_id = (user.get("data") or {}).get("id")
        if not user_id:
            raise SourceUnavailable(f"Twitter user not found: {username}", channel_id=channel.id)

        payload = await self._get(
            f"/users/{user_id}/tweets", params={"max_results": limit}, channel_id=channel.id,
        )
        items = [
            self._to_item(tweet, channel=channel, username=username)
            for tweet in payload.get("data") or []
            if isinstance(tweet, dict) and tweet.get("id")
        ]
        logger.info("[Twitter] @%s: %d post(s) listed", username, len(items))
        return items

    async def fetch_item(self, url: str) -> ContentItem:
        m = _STATUS_RE.search(url or "")
        if not m:
            raise UnsupportedMedia(f"Not an X/Twitter status URL: {url}", item_id=url)
        payload = await self._get(f"/tweets/{m.group(1)}")
        tweet = payload.get("data")
        if not isinstance(tweet, dict):
            raise SourceUnavailable(f"Tweet not found: {m.group(1)}", item_id=m.group(1))
        tweet.setdefault("id", m.group(1))
        return self._to_item(tweet)

    # ------------------------------------------------------------------

    async def _get(
        self, path: str, *, params: dict | None = None, channel_id: str | None = None,
    ) -> dict:
        if not self.api_key:
            raise SourceUnavailable("RapidAPI key not configured", channel_id=channel_id)
        headers = {"X-RapidAPI-Key": self.api_key, "X-RapidAPI-Host": self.host}
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                resp = await self._client.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Twitter API unreachable: {exc}", channel_id=channel_id) from exc

        if resp.status_code >= 400:
            raise SourceUnavailable(
                f"Twitter API error {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
                channel_id=channel_id,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise SourceUnavailable(
                "Twitter API returned invalid JSON", channel_id=channel_id,
            ) from exc

    @staticmethod
    def _to_item(
        tweet: dict, *, channel: Channel | None = None, username: str = "",
    ) -> ContentItem:
        tweet_id = str(tweet["id"])
        text = tweet.get("full_text") or tweet.get("text") or ""
        media_type = MediaType.TEXT if text.strip() else MediaType.IMAGE
        return ContentItem(
            external_id=tweet_id,
            source_type=ChannelType.TWITTER,
            media_type=media_type,
            url=(
                f"https://x.com/{username}/status/{tweet_id}"
                if username else f"https://x.com/i/status/{tweet_id}"
            ),
            channel_id=channel.id if channel else None,
            channel_name=f"@{username}" if username else "X",
            title=text[:100],
            description=text,
            text=text,
            published_at=parse_tweet_time(tweet.get("created_at")),
        )
