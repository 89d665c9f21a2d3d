"""Tests for the Content Collector keyword policy, ordering and idempotence."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fakes import FakeSource, make_item
from forecast_pipeline.collectors.content_collector import (
    CollectionStats,
    ContentCollector,
    matches_keywords,
)
from forecast_pipeline.errors import SourceUnavailable
from forecast_pipeline.models.channel import Channel, ChannelType


def _channel(is_primary: bool, keywords: list[str] | None = None) -> Channel:
    return Channel(
        id="ch1",
        forecaster_id="f1",
        type=ChannelType.TWITTER,
        external_id="janedoe",
        is_primary=is_primary,
        keywords=keywords or [],
    )


async def _collect(collector: ContentCollector, channel: Channel, since, **kwargs) -> list:
    return [item async for item in collector.collect(channel, since, **kwargs)]


class TestMatchesKeywords:
    def test_partial_word_case_insensitive(self) -> None:
        item = make_item("1", "BITCOINERS are back")
        assert matches_keywords(item, {"bitcoin"})

    def test_matches_description(self) -> None:
        item = make_item("1", "Weekly update", description="Thoughts on btc")
        assert matches_keywords(item, {"btc"})

    def test_no_match(self) -> None:
        assert not matches_keywords(make_item("1", "Ethereum hits new highs"), {"btc"})


class TestCollect:
    @pytest.mark.asyncio()
    async def test_secondary_excludes_non_matching_item(self) -> None:
        """Scenario: keywords [bitcoin, btc] for Jane Doe; an Ethereum post is dropped."""
        source = FakeSource(items={"janedoe": [
            make_item("eth", "Ethereum hits new highs"),
            make_item("btc", "Why BTC goes higher"),
            make_item("name", "Jane Doe live stream"),
        ]})
        collector = ContentCollector([source])
        channel = _channel(False, ["bitcoin", "btc"])

        items = await _collect(collector, channel, None, forecaster_name="Jane Doe")

        ids = {i.external_id for i in items}
        assert "eth" not in ids
        assert ids == {"btc", "name"}

    @pytest.mark.asyncio()
    async def test_primary_keeps_everything(self) -> None:
        source = FakeSource(items={"janedoe": [
            make_item("a", "Ethereum hits new highs"),
            make_item("b", "Lunch pics"),
        ]})
        collector = ContentCollector([source])

        items = await _collect(collector, _channel(True), None, forecaster_name="Jane Doe")

        assert {i.external_id for i in items} == {"a", "b"}

    @pytest.mark.asyncio()
    async def test_oldest_first_and_undated_first(self) -> None:
        source = FakeSource(items={"janedoe": [
            make_item("new", "x", hours_ago=1),
            make_item("old", "x", hours_ago=10),
            make_item("undated", "x", hours_ago=None),
        ]})
        collector = ContentCollector([source])

        items = await _collect(collector, _channel(True), None)

        assert [i.external_id for i in items] == ["undated", "old", "new"]

    @pytest.mark.asyncio()
    async def test_since_filters_older_items(self) -> None:
        source = FakeSource(items={"janedoe": [
            make_item("recent", "x", hours_ago=1),
            make_item("stale", "x", hours_ago=72),
        ]})
        collector = ContentCollector([source])
        since = datetime.now(timezone.utc) - timedelta(days=1)
        stats = CollectionStats()

        items = await _collect(collector, _channel(True), since, stats=stats)

        assert [i.external_id for i in items] == ["recent"]
        assert (stats.candidates, stats.retained, stats.filtered) == (2, 1, 1)

    @pytest.mark.asyncio()
    async def test_items_tagged_with_channel(self) -> None:
        source = FakeSource(items={"janedoe": [make_item("a", "x")]})
        items = await _collect(ContentCollector([source]), _channel(True), None)
        assert items[0].channel_id == "ch1"

    @pytest.mark.asyncio()
    async def test_repeated_calls_yield_same_items(self) -> None:
        source = FakeSource(items={"janedoe": [
            make_item("a", "bitcoin to 100k", hours_ago=3),
            make_item("b", "cooking", hours_ago=2),
            make_item("c", "BTC dip", hours_ago=1),
        ]})
        collector = ContentCollector([source])
        channel = _channel(False, ["bitcoin", "btc"])
        since = datetime.now(timezone.utc) - timedelta(days=7)

        first = await _collect(collector, channel, since, forecaster_name="Jane Doe")
        second = await _collect(collector, channel, since, forecaster_name="Jane Doe")

        assert first == second
        assert [i.external_id for i in first] == ["a", "c"]

    @pytest.mark.asyncio()
    async def test_limit_depends_on_channel_role(self) -> None:
        source = FakeSource(items={"janedoe": [make_item(str(n), "btc") for n in range(30)]})
        collector = ContentCollector([source], max_items_primary=5, max_items_secondary=12)

        primary = await _collect(collector, _channel(True), None)
        secondary = await _collect(collector, _channel(False, ["btc"]), None)

        assert len(primary) == 5
        assert len(secondary) == 12

    @pytest.mark.asyncio()
    async def test_source_errors_surface(self) -> None:
        source = FakeSource(failing={"janedoe"})
        with pytest.raises(SourceUnavailable):
            await _collect(ContentCollector([source]), _channel(True), None)

    @pytest.mark.asyncio()
    async def test_unregistered_source_type(self) -> None:
        collector = ContentCollector([FakeSource(ChannelType.YOUTUBE)])
        with pytest.raises(SourceUnavailable, match="No content source"):
            await _collect(collector, _channel(True), None)
