"""YouTube content source — channel uploads and single videos via yt-dlp.

yt-dlp runs as a subprocess (``--dump-json --no-download``) in a worker
thread; each output line is one video's metadata.  Transcripts are not
fetched here: that is the Transcoder's job.
"""

from __future__ import annotations

import asyncio
import json
import re
import subprocess
from datetime import datetime, timezone

from forecast_pipeline.collectors.content_source import ContentSource
from forecast_pipeline.errors import SourceUnavailable, UnsupportedMedia
from forecast_pipeline.models.channel import Channel, ChannelType
from forecast_pipeline.models.content import ContentItem, MediaType
from forecast_pipeline.utils.logger import logger

_VIDEO_ID_RE = re.compile(
    r"(?:youtube\.com/(?:watch\?(?:.*&)?v=|shorts/|live/|embed/)|youtu\.be/)([\w-]{11})"
)


def extract_video_id(url: str) -> str | None:
    m = _VIDEO_ID_RE.search(url or "")
    return m.group(1) if m else None


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


class YouTubeSource(ContentSource):
    source_type = ChannelType.YOUTUBE

    def __init__(self, *, timeout: int = 180) -> None:
        self.timeout = timeout

    def handles(self, url: str) -> bool:
        return bool(re.search(r"(youtube\.com|youtu\.be)/", url or "", re.IGNORECASE))

    # ──────────────────────────────────────────────────────────────
    # Main API
    # ──────────────────────────────────────────────────────────────

    async def list_recent(
        self, channel: Channel, since: datetime | None, limit: int,
    ) -> list[ContentItem]:
        cmd = [
            "yt-dlp",
            "--dump-json",
            "--no-download",
            "--no-warnings",
            "--ignore-errors",
            "--playlist-end", str(limit),
        ]
        if since is not None:
            cmd += ["--dateafter", since.astimezone(timezone.utc).strftime("%Y%m%d")]
        cmd.append(self.channel_videos_url(channel))

        logger.debug("[YouTube] Listing %s (limit=%d)", channel.external_id, limit)
        stdout = await asyncio.to_thread(self._run_yt_dlp, cmd, channel.id)
        items = self._parse_yt_dlp_output(stdout, channel)
        logger.info("[YouTube] %s: %d video(s) listed", channel.external_id, len(items))
        return items

    async def fetch_item(self, url: str) -> ContentItem:
        video_id = extract_video_id(url)
        if not video_id:
            raise UnsupportedMedia(f"Not a YouTube video URL: {url}", item_id=url)
        cmd = ["yt-dlp", "--dump-json", "--no-download", "--no-warnings", watch_url(video_id)]
        stdout = await asyncio.to_thread(self._run_yt_dlp, cmd, None)
        items = self._parse_yt_dlp_output(stdout)
        if not items:
            raise SourceUnavailable(f"yt-dlp returned no metadata for {video_id}", item_id=video_id)
        return items[0]

    @staticmethod
    def channel_videos_url(channel: Channel) -> str:
        if channel.url:
            base = channel.url.rstrip("/")
        elif channel.external_id.startswith("UC"):
            base = f"https://www.youtube.com/channel/{channel.external_id}"
        elif channel.external_id.startswith("@"):
            base = f"https://www.youtube.com/{channel.external_id}"
        else:
            base = f"https://www.youtube.com/c/{channel.external_id}"
        if not re.search(r"/(videos|streams|shorts)$", base):
            base += "/videos"
        return base

    # ──────────────────────────────────────────────────────────────
    # yt-dlp plumbing
    # ──────────────────────────────────────────────────────────────

    def _run_yt_dlp(self, cmd: list[str], channel_id: str | None) -> str:
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise SourceUnavailable(
                "yt-dlp not found — install it: pip install yt-dlp",
                channel_id=channel_id,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise SourceUnavailable(
                f"yt-dlp timed out after {self.timeout}s", channel_id=channel_id,
            ) from exc

        if result.returncode != 0 and not result.stdout.strip():
            stderr = (result.stderr or "").strip()
            raise SourceUnavailable(
                f"yt-dlp failed (exit {result.returncode}): {stderr[-300:]}",
                channel_id=channel_id,
            )
        return result.stdout

    @staticmethod
    def _parse_yt_dlp_output(stdout: str, channel: Channel | None = None) -> list[ContentItem]:
        """Parse yt-dlp JSON output lines into ContentItems."""
        items: list[ContentItem] = []
        for line in (stdout or "").strip().split("\n"):
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            vid_id = data.get("id")
            if not vid_id:
                continue

            pub_date = None
            ts = data.get("timestamp") or data.get("release_timestamp")
            if ts:
                pub_date = datetime.fromtimestamp(int(ts), tz=timezone.utc)
            elif data.get("upload_date"):
                try:
                    pub_date = datetime.strptime(data["upload_date"], "%Y%m%d").replace(
                        tzinfo=timezone.utc
                    )
                except ValueError:
                    pub_date = None

            items.append(
                ContentItem(
                    external_id=vid_id,
                    source_type=ChannelType.YOUTUBE,
                    media_type=MediaType.VIDEO,
                    url=data.get("webpage_url") or watch_url(vid_id),
                    channel_id=channel.id if channel else None,
                    channel_name=data.get("channel") or data.get("uploader") or "",
                    title=data.get("title") or "",
                    description=data.get("description") or "",
                    published_at=pub_date,
                    duration_seconds=int(data.get("duration") or 0) or None,
                )
            )
        return items
