"""Unit tests for content-source parsing, market-data helpers and LLM
JSON cleanup.  No network: raw payloads are fed to the static parsers."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pandas as pd
import pytest

from forecast_pipeline.collectors.twitter_source import TwitterSource, parse_tweet_time
from forecast_pipeline.collectors.youtube_source import YouTubeSource, extract_video_id
from forecast_pipeline.errors import SourceUnavailable
from forecast_pipeline.models.channel import Channel, ChannelType
from forecast_pipeline.models.content import MediaType
from forecast_pipeline.models.prediction import AssetType
from forecast_pipeline.services.llm_service import LLMService
from forecast_pipeline.services.market_data import MarketDataService, yahoo_ticker


# ──────────────────────────────────────────────────────────────
# YouTube
# ──────────────────────────────────────────────────────────────


class TestExtractVideoId:
    @pytest.mark.parametrize(
        "url",
        [
            "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            "https://www.youtube.com/watch?feature=share&v=dQw4w9WgXcQ",
            "https://youtu.be/dQw4w9WgXcQ",
            "https://www.youtube.com/shorts/dQw4w9WgXcQ",
            "https://www.youtube.com/live/dQw4w9WgXcQ?si=abc",
        ],
    )
    def test_forms(self, url: str) -> None:
        assert extract_video_id(url) == "dQw4w9WgXcQ"

    def test_not_a_video(self) -> None:
        assert extract_video_id("https://www.youtube.com/@CryptoJane") is None
        assert extract_video_id(None) is None

    def test_handles(self) -> None:
        source = YouTubeSource()
        assert source.handles("https://youtu.be/dQw4w9WgXcQ")
        assert source.handles("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
        assert not source.handles("https://x.com/janedoe/status/1")


class TestYtDlpOutput:
    def test_parses_lines(self) -> None:
        channel = Channel(
            id="ch1", forecaster_id="f1", type=ChannelType.YOUTUBE,
            external_id="@jane", is_primary=True,
        )
        stdout = "\n".join([
            json.dumps({
                "id": "aaaaaaaaaaa",
                "title": "BTC to 150k?",
                "description": "My 2025 outlook",
                "timestamp": 1735689600,
                "duration": 754,
                "channel": "Jane Doe",
            }),
            "not json",
            json.dumps({"title": "no id"}),
            json.dumps({"id": "bbbbbbbbbbb", "upload_date": "20250102"}),
        ])

        items = YouTubeSource._parse_yt_dlp_output(stdout, channel)

        assert [i.external_id for i in items] == ["aaaaaaaaaaa", "bbbbbbbbbbb"]
        first, second = items
        assert first.media_type == MediaType.VIDEO
        assert first.url == "https://www.youtube.com/watch?v=aaaaaaaaaaa"
        assert first.channel_id == "ch1"
        assert first.channel_name == "Jane Doe"
        assert first.duration_seconds == 754
        assert first.published_at == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert second.published_at == datetime(2025, 1, 2, tzinfo=timezone.utc)

    def test_empty_output(self) -> None:
        assert YouTubeSource._parse_yt_dlp_output("") == []

    def test_channel_videos_url(self) -> None:
        def url_for(external_id: str, url: str = "") -> str:
            return YouTubeSource.channel_videos_url(Channel(
                id="c", forecaster_id="f", type=ChannelType.YOUTUBE,
                external_id=external_id, url=url,
            ))

        assert url_for("@jane") == "https://www.youtube.com/@jane/videos"
        assert url_for("UCabcdefghijklmnop") == (
            "https://www.youtube.com/channel/UCabcdefghijklmnop/videos"
        )
        assert url_for("x", "https://www.youtube.com/@jane/streams") == (
            "https://www.youtube.com/@jane/streams"
        )


# ──────────────────────────────────────────────────────────────
# X / Twitter
# ──────────────────────────────────────────────────────────────


class TestTwitter:
    def test_parse_tweet_time(self) -> None:
        expected = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert parse_tweet_time("2025-01-02T03:04:05.000Z") == expected
        assert parse_tweet_time("Thu Jan 02 03:04:05 +0000 2025") == expected
        assert parse_tweet_time("yesterday") is None
        assert parse_tweet_time(None) is None

    def test_handles(self) -> None:
        source = TwitterSource(api_key="")
        assert source.handles("https://x.com/janedoe/status/1")
        assert source.handles("https://twitter.com/janedoe/status/1")
        assert not source.handles("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
        assert not source.handles("https://netflix.com/title/1")

    def test_to_item(self) -> None:
        tweet = {
            "id": 123,
            "text": "Bitcoin to $150k by EOY",
            "created_at": "2025-01-02T03:04:05Z",
        }
        item = TwitterSource._to_item(tweet, username="janedoe")

        assert item.external_id == "123"
        assert item.media_type == MediaType.TEXT
        assert item.url == "https://x.com/janedoe/status/123"
        assert item.text == "Bitcoin to $150k by EOY"
        assert item.channel_name == "@janedoe"

    def test_media_only_tweet_is_image(self) -> None:
        item = TwitterSource._to_item({"id": "9", "text": "  "})
        assert item.media_type == MediaType.IMAGE
        assert item.url == "https://x.com/i/status/9"

    @pytest.mark.asyncio()
    async def test_unconfigured_key_is_source_unavailable(self) -> None:
        source = TwitterSource(api_key="")
        with pytest.raises(SourceUnavailable, match="not configured"):
            await source.fetch_item("https://x.com/janedoe/status/1")


# ──────────────────────────────────────────────────────────────
# Market data
# ──────────────────────────────────────────────────────────────


class TestYahooTicker:
    @pytest.mark.parametrize(
        ("symbol", "asset_type", "ticker"),
        [
            ("BTC", AssetType.CRYPTO, "BTC-USD"),
            ("EURUSD", AssetType.FOREX, "EURUSD=X"),
            ("BRK.B", AssetType.STOCK, "BRK-B"),
            ("SPX", AssetType.INDEX, "^GSPC"),
            ("GOLD", AssetType.COMMODITY, "GC=F"),
            ("ZZZQ", AssetType.UNKNOWN, "ZZZQ"),
        ],
    )
    def test_mapping(self, symbol: str, asset_type: AssetType, ticker: str) -> None:
        assert yahoo_ticker(symbol, asset_type) == ticker


class TestSnapshotFromHistory:
    def test_summarizes_window(self) -> None:
        index = pd.to_datetime(["2025-06-01", "2025-06-02", "2025-06-03"], utc=True)
        df = pd.DataFrame(
            {
                "Open": [70000, 71000, 74000],
                "High": [71500, 76000, 74500],
                "Low": [69000, 70500, 72000],
                "Close": [71000, 74000, 73000],
            },
            index=index,
        )

        snap = MarketDataService.snapshot_from_history("BTC", df)

        assert snap.start_price == 71000
        assert snap.current_price == 73000
        assert snap.high == 76000
        assert snap.low == 69000
        assert snap.as_of.date().isoformat() == "2025-06-03"

    def test_empty_history(self) -> None:
        assert MarketDataService.snapshot_from_history("BTC", pd.DataFrame()) is None
        assert MarketDataService.snapshot_from_history("BTC", None) is None


# ──────────────────────────────────────────────────────────────
# LLM JSON cleanup
# ──────────────────────────────────────────────────────────────


class TestCleanJsonResponse:
    def test_strips_fences(self) -> None:
        raw = '```json\n{"predictions": []}\n```'
        assert LLMService.clean_json_response(raw) == '{"predictions": []}'

    def test_first_complete_value_only(self) -> None:
        raw = 'Here you go: {"a": "x}"} and also {"b": 2}'
        assert LLMService.clean_json_response(raw) == '{"a": "x}"}'

    def test_truncated_value_returned_as_is(self) -> None:
        assert LLMService.clean_json_response('{"a": [1, 2') == '{"a": [1, 2'
