"""DuckDB-backed forecaster and channel configuration stores.

Every channel write goes through ``validate_channel_config`` first, so an
invalid configuration is rejected here and never reaches the pipeline.
"""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Iterable

import duckdb

from forecast_pipeline.database import from_db_ts, to_db_ts, utcnow
from forecast_pipeline.engine.channel_registry import validate_channel_config
from forecast_pipeline.errors import InvalidChannelConfig
from forecast_pipeline.models.channel import Channel, ChannelType, Forecaster
from forecast_pipeline.utils.logger import logger


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


class ForecasterStore:
    """Forecaster identities and their computed metrics blob."""

    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self.conn = conn

    def create(
        self,
        name: str,
        *,
        slug: str | None = None,
        is_verified: bool = False,
        expertise: Iterable[str] = (),
        social_links: dict[str, str] | None = None,
        forecaster_id: str | None = None,
    ) -> Forecaster:
        forecaster = Forecaster(
            id=forecaster_id or uuid.uuid4().hex,
            name=name.strip(),
            slug=slug or slugify(name),
            is_verified=is_verified,
            expertise=list(expertise),
            social_links=social_links or {},
        )
        self.conn.execute(
            """
            INSERT INTO forecasters
                (id, name, slug, is_verified, expertise, social_links, metrics, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                forecaster.id,
                forecaster.name,
                forecaster.slug,
                forecaster.is_verified,
                json.dumps(forecaster.expertise),
                json.dumps(forecaster.social_links),
                json.dumps(forecaster.metrics),
                to_db_ts(forecaster.created_at),
            ],
        )
        logger.info("[Registry] Created forecaster %s (%s)", forecaster.name, forecaster.id)
        return forecaster

    def get(self, forecaster_id: str) -> Forecaster | None:
        row = self.conn.execute(
            "SELECT id, name, slug, is_verified, expertise, social_links, metrics, "
            "created_at FROM forecasters WHERE id = ?",
            [forecaster_id],
        ).fetchone()
        return self._row_to_forecaster(row) if row else None

    def list_all(self) -> list[Forecaster]:
        rows = self.conn.execute(
            "SELECT id, name, slug, is_verified, expertise, social_links, metrics, "
            "created_at FROM forecasters ORDER BY name"
        ).fetchall()
        return [self._row_to_forecaster(r) for r in rows]

    def update_metrics(self, forecaster_id: str, metrics: dict) -> None:
        self.conn.execute(
            "UPDATE forecasters SET metrics = ? WHERE id = ?",
            [json.dumps(metrics), forecaster_id],
        )

    def delete(self, forecaster_id: str) -> None:
        """Remove a forecaster together with its channels and keywords."""
        ChannelStore(self.conn).delete_channels_for_forecaster(forecaster_id)
        self.conn.execute("DELETE FROM forecasters WHERE id = ?", [forecaster_id])

    @staticmethod
    def _row_to_forecaster(row: tuple) -> Forecaster:
        return Forecaster(
            id=row[0],
            name=row[1],
            slug=row[2],
            is_verified=bool(row[3]),
            expertise=json.loads(row[4] or "[]"),
            social_links=json.loads(row[5] or "{}"),
            metrics=json.loads(row[6] or "{}"),
            created_at=from_db_ts(row[7]) or utcnow(),
        )


class ChannelStore:
    """Channel rows plus their ordered keyword sets."""

    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self.conn = conn

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_channel(
        self,
        forecaster_id: str,
        channel_type: ChannelType,
        external_id: str,
        *,
        url: str = "",
        is_primary: bool = False,
        enabled: bool = True,
        keywords: Iterable[str] = (),
        channel_id: str | None = None,
    ) -> Channel:
        channel = Channel(
            id=channel_id or uuid.uuid4().hex,
            forecaster_id=forecaster_id,
            type=channel_type,
            external_id=external_id.strip(),
            url=url,
            is_primary=is_primary,
            enabled=enabled,
            keywords=list(keywords),
        )
        self._validate(channel)
        self.conn.execute(
            """
            INSERT INTO channels
                (id, forecaster_id, type, external_id, url, is_primary, enabled, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                channel.id,
                channel.forecaster_id,
                channel.type.value,
                channel.external_id,
                channel.url,
                channel.is_primary,
                channel.enabled,
                to_db_ts(utcnow()),
            ],
        )
        self._write_keywords(channel.id, channel.keywords)
        logger.info(
            "[Registry] Added %s %s channel %s for forecaster %s",
            "primary" if channel.is_primary else "secondary",
            channel.type.value, channel.external_id, forecaster_id,
        )
        return channel

    def set_enabled(self, channel_id: str, enabled: bool) -> Channel:
        channel = self._require(channel_id)
        updated = channel.model_copy(update={"enabled": enabled})
        self._validate(updated)
        self.conn.execute(
            "UPDATE channels SET enabled = ? WHERE id = ?", [enabled, channel_id],
        )
        return updated

    def set_primary(self, channel_id: str, is_primary: bool) -> Channel:
        """Flip the primary flag.  Promotion is rejected while another
        enabled primary of the same type exists or keywords remain."""
        channel = self._require(channel_id)
        updated = channel.model_copy(update={"is_primary": is_primary})
        self._validate(updated)
        self.conn.execute(
            "UPDATE channels SET is_primary = ? WHERE id = ?", [is_primary, channel_id],
        )
        return updated

    def promote_to_primary(self, channel_id: str) -> Channel:
        """Explicit two-step swap: demote the current primary, then promote
        ``channel_id`` after clearing its keyword list."""
        channel = self._require(channel_id)
        for other in self.list_channels(
            forecaster_ids=[channel.forecaster_id], channel_types=[channel.type],
        ):
            if other.id != channel.id and other.is_primary:
                self.set_primary(other.id, False)
        self._write_keywords(channel.id, [])
        return self.set_primary(channel.id, True)

    def add_keyword(self, channel_id: str, keyword: str) -> Channel:
        channel = self._require(channel_id)
        updated = channel.model_copy(update={"keywords": [*channel.keywords, keyword]})
        # Re-run the field validator for ordered-set semantics
        updated = Channel.model_validate(updated.model_dump())
        self._validate(updated)
        self._write_keywords(channel_id, updated.keywords)
        return updated

    def remove_keyword(self, channel_id: str, keyword: str) -> Channel:
        channel = self._require(channel_id)
        remaining = [k for k in channel.keywords if k.lower() != keyword.strip().lower()]
        updated = channel.model_copy(update={"keywords": remaining})
        self._validate(updated)
        self._write_keywords(channel_id, remaining)
        return updated

    def delete_channel(self, channel_id: str) -> None:
        self.conn.execute("DELETE FROM channel_keywords WHERE channel_id = ?", [channel_id])
        self.conn.execute("DELETE FROM channels WHERE id = ?", [channel_id])

    def delete_channels_for_forecaster(self, forecaster_id: str) -> int:
        channels = self.list_channels(forecaster_ids=[forecaster_id])
        for channel in channels:
            self.delete_channel(channel.id)
        return len(channels)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, channel_id: str) -> Channel | None:
        rows = self._select("WHERE id = ?", [channel_id])
        return rows[0] if rows else None

    def list_channels(
        self,
        forecaster_ids: Iterable[str] | None = None,
        channel_types: Iterable[ChannelType] | None = None,
        *,
        enabled_only: bool = False,
    ) -> list[Channel]:
        clauses: list[str] = []
        params: list = []
        if forecaster_ids is not None:
            ids = list(forecaster_ids)
            if not ids:
                return []
            clauses.append(f"forecaster_id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)
        if channel_types is not None:
            types = [ChannelType(t).value for t in channel_types]
            if not types:
                return []
            clauses.append(f"type IN ({', '.join('?' for _ in types)})")
            params.extend(types)
        if enabled_only:
            clauses.append("enabled")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._select(where, params)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _select(self, where: str, params: list) -> list[Channel]:
        rows = self.conn.execute(
            "SELECT id, forecaster_id, type, external_id, url, is_primary, enabled "
            f"FROM channels {where} ORDER BY created_at, id",
            params,
        ).fetchall()
        if not rows:
            return []
        ids = [r[0] for r in rows]
        kw_rows = self.conn.execute(
            "SELECT channel_id, keyword FROM channel_keywords "
            f"WHERE channel_id IN ({', '.join('?' for _ in ids)}) "
            "ORDER BY channel_id, position",
            ids,
        ).fetchall()
        keywords: dict[str, list[str]] = {}
        for channel_id, keyword in kw_rows:
            keywords.setdefault(channel_id, []).append(keyword)
        return [
            Channel(
                id=r[0],
                forecaster_id=r[1],
                type=ChannelType(r[2]),
                external_id=r[3],
                url=r[4] or "",
                is_primary=bool(r[5]),
                enabled=bool(r[6]),
                keywords=keywords.get(r[0], []),
            )
            for r in rows
        ]

    def _require(self, channel_id: str) -> Channel:
        channel = self.get(channel_id)
        if channel is None:
            raise InvalidChannelConfig(f"Channel not found: {channel_id}", channel_id=channel_id)
        return channel

    def _validate(self, channel: Channel) -> None:
        row = self.conn.execute(
            "SELECT name FROM forecasters WHERE id = ?", [channel.forecaster_id],
        ).fetchone()
        if row is None:
            raise InvalidChannelConfig(
                f"Unknown forecaster: {channel.forecaster_id}", channel_id=channel.id,
            )
        existing = self.list_channels(
            forecaster_ids=[channel.forecaster_id], channel_types=[channel.type],
        )
        validate_channel_config(channel, row[0], existing)

    def _write_keywords(self, channel_id: str, keywords: list[str]) -> None:
        self.conn.execute("DELETE FROM channel_keywords WHERE channel_id = ?", [channel_id])
        for position, keyword in enumerate(keywords):
            self.conn.execute(
                "INSERT INTO channel_keywords (channel_id, keyword, position) VALUES (?, ?, ?)",
                [channel_id, keyword, position],
            )
