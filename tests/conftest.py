from __future__ import annotations

import duckdb
import pytest

from forecast_pipeline.config import settings
from forecast_pipeline.database import init_tables
from forecast_pipeline.services.channel_store import ChannelStore, ForecasterStore
from forecast_pipeline.services.job_store import JobStore
from forecast_pipeline.services.prediction_store import PredictionStore


@pytest.fixture(autouse=True, scope="session")
def use_test_db(tmp_path_factory):
    # Route the application's singleton connection to a temporary DuckDB file
    # so tests never touch (or lock) the live database
    temp_dir = tmp_path_factory.mktemp("test_db")
    settings.DB_PATH = temp_dir / "test_forecast_pipeline.duckdb"
    yield


@pytest.fixture
def conn():
    """Fresh in-memory DuckDB with the pipeline schema."""
    connection = duckdb.connect(":memory:")
    init_tables(connection)
    yield connection
    connection.close()


@pytest.fixture
def forecasters(conn) -> ForecasterStore:
    return ForecasterStore(conn)


@pytest.fixture
def channels(conn) -> ChannelStore:
    return ChannelStore(conn)


@pytest.fixture
def predictions(conn) -> PredictionStore:
    return PredictionStore(conn)


@pytest.fixture
def jobs(conn) -> JobStore:
    return JobStore(conn)

