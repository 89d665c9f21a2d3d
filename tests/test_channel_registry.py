"""Tests for channel keyword policy, config validation, URL parsing and
the DuckDB-backed channel store.
"""

from __future__ import annotations

import pytest

from forecast_pipeline.engine.channel_registry import (
    parse_channel_url,
    resolve_effective_keywords,
    validate_channel_config,
)
from forecast_pipeline.errors import InvalidChannelConfig
from forecast_pipeline.models.channel import Channel, ChannelType


def _channel(**overrides) -> Channel:
    data = {
        "id": "ch1",
        "forecaster_id": "f1",
        "type": ChannelType.TWITTER,
        "external_id": "janedoe",
        "is_primary": False,
    }
    data.update(overrides)
    return Channel(**data)


# ──────────────────────────────────────────────────────────────
# Effective keywords
# ──────────────────────────────────────────────────────────────


class TestResolveEffectiveKeywords:
    def test_primary_has_no_filter(self) -> None:
        channel = _channel(is_primary=True)
        assert resolve_effective_keywords(channel, "Jane Doe") == set()

    def test_secondary_always_includes_forecaster_name(self) -> None:
        channel = _channel(keywords=["Bitcoin", "BTC"])
        assert resolve_effective_keywords(channel, "Jane Doe") == {"bitcoin", "btc", "jane doe"}

    def test_secondary_without_keywords_uses_name(self) -> None:
        assert resolve_effective_keywords(_channel(), "Jane Doe") == {"jane doe"}

    def test_name_already_in_keywords_is_not_duplicated(self) -> None:
        channel = _channel(keywords=["JANE DOE"])
        assert resolve_effective_keywords(channel, "jane doe") == {"jane doe"}


class TestChannelKeywordsField:
    def test_ordered_case_insensitive_set(self) -> None:
        channel = _channel(keywords=["btc", "Bitcoin", "BTC", "  ", "eth"])
        assert channel.keywords == ["btc", "Bitcoin", "eth"]


# ──────────────────────────────────────────────────────────────
# Validation rules
# ──────────────────────────────────────────────────────────────


class TestValidateChannelConfig:
    def test_primary_with_keywords_rejected(self) -> None:
        with pytest.raises(InvalidChannelConfig):
            validate_channel_config(_channel(is_primary=True, keywords=["btc"]), "Jane Doe")

    def test_secondary_with_empty_effective_set_rejected(self) -> None:
        with pytest.raises(InvalidChannelConfig):
            validate_channel_config(_channel(), "")

    def test_second_enabled_primary_rejected(self) -> None:
        existing = [_channel(id="old", is_primary=True)]
        with pytest.raises(InvalidChannelConfig, match="demote it first"):
            validate_channel_config(_channel(id="new", is_primary=True), "Jane Doe", existing)

    def test_primary_of_other_type_allowed(self) -> None:
        existing = [_channel(id="yt", type=ChannelType.YOUTUBE, is_primary=True)]
        validate_channel_config(_channel(id="x", is_primary=True), "Jane Doe", existing)

    def test_disabled_primary_does_not_block(self) -> None:
        existing = [_channel(id="old", is_primary=True, enabled=False)]
        validate_channel_config(_channel(id="new", is_primary=True), "Jane Doe", existing)


# ──────────────────────────────────────────────────────────────
# URL parsing
# ──────────────────────────────────────────────────────────────


class TestParseChannelUrl:
    @pytest.mark.parametrize(
        ("url", "external_id"),
        [
            ("https://www.youtube.com/channel/UCabcdefghijklmnop", "UCabcdefghijklmnop"),
            ("https://youtube.com/@CryptoJane", "@CryptoJane"),
            ("https://www.youtube.com/c/JaneDoeShow/videos", "JaneDoeShow"),
            ("https://www.youtube.com/user/janedoe", "janedoe"),
        ],
    )
    def test_youtube_forms(self, url: str, external_id: str) -> None:
        parsed = parse_channel_url(url)
        assert parsed is not None
        assert parsed[0] == ChannelType.YOUTUBE
        assert parsed[1] == external_id

    def test_twitter_and_x(self) -> None:
        assert parse_channel_url("https://x.com/janedoe") == (
            ChannelType.TWITTER, "janedoe", "https://x.com/janedoe",
        )
        assert parse_channel_url("https://twitter.com/janedoe/status/1")[1] == "janedoe"

    def test_unknown_url(self) -> None:
        assert parse_channel_url("https://example.com/janedoe") is None
        assert parse_channel_url("https://x.com/home") is None


# ──────────────────────────────────────────────────────────────
# Store
# ──────────────────────────────────────────────────────────────


class TestChannelStore:
    def test_add_and_list(self, forecasters, channels) -> None:
        jane = forecasters.create("Jane Doe")
        channels.add_channel(jane.id, ChannelType.YOUTUBE, "@jane", is_primary=True)
        channels.add_channel(jane.id, ChannelType.TWITTER, "janedoe", keywords=["btc", "BTC", "eth"])

        listed = channels.list_channels(forecaster_ids=[jane.id])
        assert len(listed) == 2
        secondary = next(c for c in listed if not c.is_primary)
        assert secondary.keywords == ["btc", "eth"]

    def test_unknown_forecaster_rejected(self, channels) -> None:
        with pytest.raises(InvalidChannelConfig, match="Unknown forecaster"):
            channels.add_channel("nope", ChannelType.TWITTER, "someone")

    def test_second_primary_rejected_not_demoted(self, forecasters, channels) -> None:
        jane = forecasters.create("Jane Doe")
        first = channels.add_channel(jane.id, ChannelType.TWITTER, "janedoe", is_primary=True)
        with pytest.raises(InvalidChannelConfig):
            channels.add_channel(jane.id, ChannelType.TWITTER, "janedoe2", is_primary=True)
        assert channels.get(first.id).is_primary is True

    def test_promote_is_explicit_two_step(self, forecasters, channels) -> None:
        jane = forecasters.create("Jane Doe")
        old = channels.add_channel(jane.id, ChannelType.TWITTER, "janedoe", is_primary=True)
        new = channels.add_channel(jane.id, ChannelType.TWITTER, "jane_alt", keywords=["btc"])

        promoted = channels.promote_to_primary(new.id)

        assert promoted.is_primary is True
        assert channels.get(new.id).keywords == []
        assert channels.get(old.id).is_primary is False

    def test_keyword_add_remove(self, forecasters, channels) -> None:
        jane = forecasters.create("Jane Doe")
        ch = channels.add_channel(jane.id, ChannelType.TWITTER, "janedoe", keywords=["btc"])
        channels.add_keyword(ch.id, "Ethereum")
        channels.add_keyword(ch.id, "BTC")
        assert channels.get(ch.id).keywords == ["btc", "Ethereum"]
        channels.remove_keyword(ch.id, "BTC")
        assert channels.get(ch.id).keywords == ["Ethereum"]

    def test_enabled_only_filter(self, forecasters, channels) -> None:
        jane = forecasters.create("Jane Doe")
        ch = channels.add_channel(jane.id, ChannelType.TWITTER, "janedoe", is_primary=True)
        channels.set_enabled(ch.id, False)
        assert channels.list_channels(enabled_only=True) == []
        assert len(channels.list_channels(channel_types=[ChannelType.TWITTER])) == 1
        assert channels.list_channels(channel_types=[ChannelType.YOUTUBE]) == []

    def test_forecaster_delete_cascades(self, forecasters, channels) -> None:
        jane = forecasters.create("Jane Doe")
        channels.add_channel(jane.id, ChannelType.TWITTER, "janedoe", keywords=["btc"])
        forecasters.delete(jane.id)
        assert forecasters.get(jane.id) is None
        assert channels.list_channels() == []
