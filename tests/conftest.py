"""Shared pytest fixtures for Floodgate tests."""

from pathlib import Path

import pytest

from floodgate.config import Settings, reset_settings
from floodgate.models import Source
from floodgate.store import RecordStore


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep the global settings singleton and config file out of tests."""
    monkeypatch.setattr("floodgate.config.CONFIG_FILE_PATH", tmp_path / "no-config.toml")
    monkeypatch.setenv("FLOODGATE_DB_PATH", str(tmp_path / "global.db"))
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with fast timeouts and no politeness delay."""
    return Settings(
        db_path=tmp_path / "floodgate.db",
        probe_timeout=2.0,
        fetch_timeout=2.0,
        source_delay_min_ms=0,
        source_delay_max_ms=0,
    )


@pytest.fixture
async def store(tmp_path: Path):
    """Provide a RecordStore that is properly closed after tests."""
    record_store = RecordStore(tmp_path / "floodgate.db")
    await record_store.connect()
    yield record_store
    await record_store.close()


@pytest.fixture
def parks_source() -> Source:
    """Sample JSON source."""
    return Source(
        slug="city-parks",
        name="City Parks",
        endpoint="https://data.example.test/parks.json",
        test_endpoint="https://data.example.test/health",
        fetch_config={"records_path": "data.results", "category": "RECREATION"},
        priority=1,
    )
