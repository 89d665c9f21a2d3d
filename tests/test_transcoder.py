"""Unit tests for the Transcoder.

Tests text normalization, media-type routing, the three-tier
transcript chain, the per-item timeout and VTT parsing.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from fakes import make_item
from forecast_pipeline.errors import TranscriptionFailed, UnsupportedMedia
from forecast_pipeline.models.channel import ChannelType
from forecast_pipeline.models.content import ContentItem, MediaType
from forecast_pipeline.services.speech_to_text import WhisperClient
from forecast_pipeline.services.transcoder import Transcoder, normalize_text

LONG_TRANSCRIPT = "Bitcoin is going to one hundred and fifty thousand dollars by the end of next year."


def _video(url: str = "https://www.youtube.com/watch?v=dQw4w9WgXcQ", text: str = "") -> ContentItem:
    return ContentItem(
        external_id="dQw4w9WgXcQ",
        source_type=ChannelType.YOUTUBE,
        media_type=MediaType.VIDEO,
        url=url,
        title="Market update",
        text=text,
        duration_seconds=600,
    )


def _transcoder(api_key: str = "") -> Transcoder:
    return Transcoder(WhisperClient(api_key=api_key), timeout_secs=5)


class TestNormalizeText:
    def test_collapses_whitespace(self) -> None:
        assert normalize_text("  BTC \n\n to   the\tmoon ") == "BTC to the moon"

    def test_unescapes_html_and_strips_zero_width(self) -> None:
        assert normalize_text("S&amp;P​ 500") == "S&P 500"

    def test_nfkc(self) -> None:
        assert normalize_text("ＢＴＣ") == "BTC"

    def test_none_safe(self) -> None:
        assert normalize_text(None) == ""


class TestMediaRouting:
    @pytest.mark.asyncio()
    async def test_text_post(self) -> None:
        item = make_item("1", "BTC &amp; ETH   are   pumping")
        doc = await _transcoder().normalize(item)
        assert doc.text == "BTC & ETH are pumping"
        assert doc.transcript_source == "post"
        assert doc.duration_or_length == len(doc.text)

    @pytest.mark.asyncio()
    async def test_empty_post_unsupported(self) -> None:
        item = make_item("1", "", text="   ")
        with pytest.raises(UnsupportedMedia):
            await _transcoder().normalize(item)

    @pytest.mark.asyncio()
    async def test_image_unsupported(self) -> None:
        item = make_item("1", "chart", media_type=MediaType.IMAGE)
        with pytest.raises(UnsupportedMedia, match="IMAGE"):
            await _transcoder().normalize(item)


class TestTranscriptTiers:
    @pytest.mark.asyncio()
    async def test_inline_text_used_first(self) -> None:
        transcoder = _transcoder()
        with patch.object(transcoder, "_get_transcript_library") as lib:
            doc = await transcoder.normalize(_video(text=LONG_TRANSCRIPT))
        lib.assert_not_called()
        assert doc.transcript_source == "inline"
        assert doc.duration_or_length == 600

    @pytest.mark.asyncio()
    async def test_library_captions(self) -> None:
        transcoder = _transcoder()
        with (
            patch.object(transcoder, "_get_transcript_library", return_value=LONG_TRANSCRIPT),
            patch.object(transcoder, "_get_transcript_ytdlp") as ytdlp,
        ):
            doc = await transcoder.normalize(_video())
        ytdlp.assert_not_called()
        assert doc.text == LONG_TRANSCRIPT
        assert doc.transcript_source == "captions"

    @pytest.mark.asyncio()
    async def test_falls_back_to_auto_subs(self) -> None:
        transcoder = _transcoder()
        with (
            patch.object(transcoder, "_get_transcript_library", return_value=""),
            patch.object(transcoder, "_get_transcript_ytdlp", return_value=LONG_TRANSCRIPT),
        ):
            doc = await transcoder.normalize(_video())
        assert doc.transcript_source == "auto_subs"

    @pytest.mark.asyncio()
    async def test_no_captions_and_no_whisper(self) -> None:
        transcoder = _transcoder(api_key="")
        with (
            patch.object(transcoder, "_get_transcript_library", return_value=""),
            patch.object(transcoder, "_get_transcript_ytdlp", return_value=""),
            pytest.raises(TranscriptionFailed, match="not configured"),
        ):
            await transcoder.normalize(_video())

    @pytest.mark.asyncio()
    async def test_whisper_tier(self) -> None:
        transcoder = _transcoder(api_key="sk-test")
        with (
            patch.object(transcoder, "_get_transcript_library", return_value=""),
            patch.object(transcoder, "_get_transcript_ytdlp", return_value=""),
            patch.object(
                transcoder, "_get_transcript_whisper", new=AsyncMock(return_value=LONG_TRANSCRIPT),
            ),
        ):
            doc = await transcoder.normalize(_video())
        assert doc.transcript_source == "whisper"

    @pytest.mark.asyncio()
    async def test_short_whisper_output_rejected(self) -> None:
        transcoder = _transcoder(api_key="sk-test")
        with (
            patch.object(transcoder, "_get_transcript_library", return_value=""),
            patch.object(transcoder, "_get_transcript_ytdlp", return_value=""),
            patch.object(transcoder, "_get_transcript_whisper", new=AsyncMock(return_value="uh")),
            pytest.raises(TranscriptionFailed, match="only 2 chars"),
        ):
            await transcoder.normalize(_video())

    @pytest.mark.asyncio()
    async def test_non_youtube_audio_goes_straight_to_whisper(self) -> None:
        transcoder = _transcoder(api_key="sk-test")
        item = _video(url="https://example.com/podcast.mp3").model_copy(
            update={"media_type": MediaType.AUDIO},
        )
        with (
            patch.object(transcoder, "_get_transcript_library") as lib,
            patch.object(
                transcoder, "_get_transcript_whisper", new=AsyncMock(return_value=LONG_TRANSCRIPT),
            ),
        ):
            doc = await transcoder.normalize(item)
        lib.assert_not_called()
        assert doc.transcript_source == "whisper"

    @pytest.mark.asyncio()
    async def test_timeout_becomes_transcription_failed(self) -> None:
        transcoder = Transcoder(WhisperClient(api_key=""), timeout_secs=0.05)

        async def _slow(item):
            await asyncio.sleep(1)
            return LONG_TRANSCRIPT, "captions"

        with (
            patch.object(transcoder, "_transcribe", new=_slow),
            pytest.raises(TranscriptionFailed, match="exceeded"),
        ):
            await transcoder.normalize(_video())


class TestVTTParsing:
    """Tests for the VTT subtitle parser."""

    def test_basic_vtt(self) -> None:
        vtt = """WEBVTT
Kind: captions
Language: en

00:00:00.000 --> 00:00:03.000
Hello everyone welcome to the show

00:00:03.000 --> 00:00:06.000
Today we are talking about BTC
"""
        result = Transcoder._parse_vtt(vtt)
        assert result == "Hello everyone welcome to the show Today we are talking about BTC"

    def test_dedup_overlapping_segments(self) -> None:
        """YouTube auto-captions often repeat text in overlapping segments."""
        vtt = """WEBVTT

00:00:00.000 --> 00:00:03.000
Hello world

00:00:01.000 --> 00:00:04.000
Hello world

00:00:03.000 --> 00:00:06.000
This is a test
"""
        result = Transcoder._parse_vtt(vtt)
        assert result.count("Hello world") == 1
        assert "This is a test" in result

    def test_strips_html_tags(self) -> None:
        vtt = """WEBVTT

00:00:00.000 --> 00:00:03.000
<c>Hello</c> <00:00:01.500>world</c>
"""
        result = Transcoder._parse_vtt(vtt)
        assert "<c>" not in result
        assert "Hello" in result
        assert "world" in result
