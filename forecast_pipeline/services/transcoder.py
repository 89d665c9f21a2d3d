"""Transcoder/Normalizer — every ContentItem becomes plain text.

Text-native posts are normalized in place (NFKC, HTML entities,
zero-width characters, whitespace).

Videos go through a three-tier chain, first usable result wins:
  1. youtube-transcript-api captions (pure Python, fast)
  2. yt-dlp --write-auto-subs WebVTT captions
  3. yt-dlp audio extraction → Whisper speech-to-text

The whole chain runs under a bounded per-item timeout; running past it
raises TranscriptionFailed, which the orchestrator counts and skips.
"""

from __future__ import annotations

import asyncio
import html
import re
import subprocess
import tempfile
import unicodedata
from pathlib import Path

from youtube_transcript_api import YouTubeTranscriptApi

from forecast_pipeline.collectors.youtube_source import extract_video_id
from forecast_pipeline.config import settings
from forecast_pipeline.errors import TranscriptionFailed, UnsupportedMedia
from forecast_pipeline.models.content import ContentItem, MediaType, NormalizedDocument
from forecast_pipeline.services.speech_to_text import WhisperClient
from forecast_pipeline.utils.logger import logger

MIN_TRANSCRIPT_CHARS = 50

_ZERO_WIDTH_RE = re.compile("[​‌‍⁠﻿]")


def normalize_text(text: str) -> str:
    text = unicodedata.normalize("NFKC", html.unescape(text or ""))
    text = _ZERO_WIDTH_RE.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


class Transcoder:
    def __init__(
        self,
        speech_to_text: WhisperClient | None = None,
        *,
        timeout_secs: float | None = None,
        subprocess_timeout: int = 120,
    ) -> None:
        self.speech_to_text = speech_to_text or WhisperClient()
        self.timeout_secs = timeout_secs or settings.TRANSCRIPTION_TIMEOUT_SECS
        self.subprocess_timeout = subprocess_timeout

    async def normalize(self, item: ContentItem) -> NormalizedDocument:
        """Return the item's text as a NormalizedDocument.

        Raises UnsupportedMedia for media with no text path and
        TranscriptionFailed when no tier yields a usable transcript.
        """
        if item.media_type == MediaType.TEXT:
            text = normalize_text(item.text or item.description)
            if not text:
                raise UnsupportedMedia("Post has no text content", item_id=item.external_id)
            return NormalizedDocument(
                item=item, text=text, duration_or_length=len(text), transcript_source="post",
            )

        if item.media_type not in (MediaType.VIDEO, MediaType.AUDIO):
            raise UnsupportedMedia(
                f"Cannot normalize {item.media_type.value} content",
                item_id=item.external_id,
            )

        try:
            text, source = await asyncio.wait_for(
                self._transcribe(item), timeout=self.timeout_secs,
            )
        except asyncio.TimeoutError as exc:
            raise TranscriptionFailed(
                f"Transcription exceeded {self.timeout_secs:.0f}s",
                item_id=item.external_id,
            ) from exc

        return NormalizedDocument(
            item=item,
            text=text,
            duration_or_length=item.duration_seconds or 0,
            transcript_source=source,
        )

    async def _transcribe(self, item: ContentItem) -> tuple[str, str]:
        if item.text and len(item.text.strip()) >= MIN_TRANSCRIPT_CHARS:
            return normalize_text(item.text), "inline"

        video_id = extract_video_id(item.url)
        if video_id:
            # Tier 1: Library-first
            transcript = await asyncio.to_thread(self._get_transcript_library, video_id)
            if transcript:
                return normalize_text(transcript), "captions"

            # Tier 2: yt-dlp subtitle extraction fallback
            logger.info(
                "[Transcoder] Library transcript failed for %s, trying yt-dlp subtitles",
                video_id,
            )
            transcript = await asyncio.to_thread(self._get_transcript_ytdlp, video_id)
            if transcript:
                return normalize_text(transcript), "auto_subs"

        # Tier 3: audio → Whisper
        if not self.speech_to_text.available:
            raise TranscriptionFailed(
                "No captions available and speech-to-text is not configured",
                item_id=item.external_id,
            )
        transcript = await self._get_transcript_whisper(item)
        if len(transcript) < MIN_TRANSCRIPT_CHARS:
            raise TranscriptionFailed(
                f"Speech-to-text produced only {len(transcript)} chars",
                item_id=item.external_id,
            )
        return normalize_text(transcript), "whisper"

    # ──────────────────────────────────────────────────────────────
    # Tiers
    # ──────────────────────────────────────────────────────────────

    def _get_transcript_library(self, video_id: str) -> str:
        """Tier 1: youtube-transcript-api v1.x (instance + ``.fetch``)."""
        try:
            transcript = YouTubeTranscriptApi().fetch(video_id)
            full_text = " ".join(snippet.text for snippet in transcript)
        except Exception as e:  # the library raises a wide family of errors
            logger.debug("[Transcoder] Library transcript failed for %s: %s", video_id, e)
            return ""
        full_text = full_text.replace("\n", " ").strip()
        if len(full_text) < MIN_TRANSCRIPT_CHARS:
            logger.debug(
                "[Transcoder] Transcript too short for %s (%d chars)", video_id, len(full_text),
            )
            return ""
        logger.info("[Transcoder] Library transcript OK for %s (%d chars)", video_id, len(full_text))
        return full_text

    def _get_transcript_ytdlp(self, video_id: str) -> str:
        """Tier 2: auto-generated subtitles via yt-dlp (age-gated videos,
        disabled manual captions)."""
        url = f"https://www.youtube.com/watch?v={video_id}"
        with tempfile.TemporaryDirectory() as tmpdir:
            try:
                subprocess.run(
                    [
                        "yt-dlp",
                        "--skip-download",
                        "--write-auto-subs",
                        "--sub-lang", "en",
                        "--sub-format", "vtt",
                        "--output", str(Path(tmpdir) / "subs"),
                        url,
                    ],
                    capture_output=True,
                    text=True,
                    timeout=self.subprocess_timeout,
                )
            except FileNotFoundError:
                logger.warning("[Transcoder] yt-dlp not found for subtitle extraction")
                return ""
            except subprocess.TimeoutExpired:
                logger.warning("[Transcoder] yt-dlp subtitles timed out for %s", video_id)
                return ""

            sub_files = list(Path(tmpdir).glob("*.vtt"))
            if not sub_files:
                logger.debug("[Transcoder] yt-dlp found no subtitles for %s", video_id)
                return ""
            transcript = self._parse_vtt(sub_files[0].read_text(encoding="utf-8"))

        if len(transcript) < MIN_TRANSCRIPT_CHARS:
            return ""
        logger.info("[Transcoder] yt-dlp subtitles OK for %s (%d chars)", video_id, len(transcript))
        return transcript

    async def _get_transcript_whisper(self, item: ContentItem) -> str:
        """Tier 3: extract mp3 audio with yt-dlp, send it to Whisper."""
        with tempfile.TemporaryDirectory() as tmpdir:
            audio = await asyncio.to_thread(self._download_audio, item.url, Path(tmpdir))
            if audio is None:
                raise TranscriptionFailed(
                    "Audio extraction failed", item_id=item.external_id,
                )
            return await self.speech_to_text.transcribe(audio)

    def _download_audio(self, url: str, dest: Path) -> Path | None:
        try:
            subprocess.run(
                [
                    "yt-dlp",
                    "-x",
                    "--audio-format", "mp3",
                    "--audio-quality", "9",
                    "--no-playlist",
                    "--output", str(dest / "audio.%(ext)s"),
                    url,
                ],
                capture_output=True,
                text=True,
                timeout=self.timeout_secs,
            )
        except FileNotFoundError:
            logger.warning("[Transcoder] yt-dlp not found for audio extraction")
            return None
        except subprocess.TimeoutExpired:
            logger.warning("[Transcoder] Audio extraction timed out for %s", url)
            return None
        files = sorted(dest.glob("audio.*"))
        return files[0] if files else None

    @staticmethod
    def _parse_vtt(vtt_content: str) -> str:
        """WebVTT → plain text, without timestamps or repeated lines.

        YouTube auto-captions repeat text across overlapping cues; each
        distinct line is kept once, in order.
        """
        text_parts: list[str] = []
        seen_lines: set[str] = set()

        for raw_line in vtt_content.split("\n"):
            line = raw_line.strip()
            if (
                not line
                or line.startswith(("WEBVTT", "Kind:", "Language:", "NOTE"))
                or "-->" in line
                or line.isdigit()
            ):
                continue
            clean = re.sub(r"<[^>]+>", "", line).strip()
            if clean and clean not in seen_lines:
                seen_lines.add(clean)
                text_parts.append(clean)

        return " ".join(text_parts)
