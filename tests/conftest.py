"""Shared pytest fixtures for riverforecast tests.

Test Tiers:
- unit: Fast tests against a temporary DuckDB file, no network (default)
- integration: Tests driving the HTTP client through httpx.MockTransport
- live: Real API tests, slow, requires network

Run live tests with: pytest -m live --run-live
"""

import asyncio
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from riverforecast.cache.database import CacheDatabase
from riverforecast.cache.fallback import FallbackFetcher
from riverforecast.cache.models import DataCategory, FlowUnit, RawPayload
from riverforecast.cache.service import CacheService
from riverforecast.exceptions import FetchError


def pytest_addoption(parser):
    """Add command line options for test configuration."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run live API tests (slow, requires network)",
    )


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: fast unit tests using fixtures")
    config.addinivalue_line("markers", "integration: tests with mocked HTTP transport")
    config.addinivalue_line("markers", "live: real API tests (slow, requires network)")


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is specified."""
    if config.getoption("--run-live"):
        return

    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2025, 6, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeFetcher:
    """In-memory upstream. Unknown keys fail with FetchError(404)."""

    def __init__(self):
        self.responses = {}
        self.calls = []
        self.delay = 0.0

    def set(self, category: DataCategory, reach_id: str, response) -> None:
        """Register a RawPayload, plain data, or an exception to raise."""
        self.responses[(category, reach_id)] = response

    async def fetch(self, category: DataCategory, reach_id: str) -> RawPayload:
        self.calls.append((category, reach_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.get((category, reach_id))
        if response is None:
            raise FetchError(f"{category.value}/{reach_id} not found", status_code=404)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, RawPayload):
            return response
        return RawPayload(response)


class FakeConnectivity:
    def __init__(self, online: bool = True):
        self.online = online
        self.checks = 0

    async def is_online(self) -> bool:
        self.checks += 1
        return self.online


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tmp_cache_dir():
    """Temporary directory holding the database and file blobs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(tmp_cache_dir, clock):
    """Create a CacheDatabase with temp database and fake clock."""
    database = CacheDatabase(tmp_cache_dir / "test.duckdb", clock=clock)
    yield database
    database.close()


@pytest.fixture
def service(db) -> CacheService:
    return CacheService(db)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def connectivity() -> FakeConnectivity:
    return FakeConnectivity(online=True)


@pytest.fixture
def fallback(service, fetcher, connectivity) -> FallbackFetcher:
    return FallbackFetcher(service, fetcher, connectivity, timeout=1.0)


@pytest.fixture
def sample_forecast() -> dict:
    """Trimmed short-range streamflow response."""
    return {
        "reach": {"id": "23021904", "name": "Provo River"},
        "shortRange": {
            "series": {
                "units": "ft3/s",
                "data": [
                    {"validTime": "2025-06-01T13:00:00Z", "flow": 412.0},
                    {"validTime": "2025-06-01T14:00:00Z", "flow": 418.5},
                ],
            }
        },
    }


@pytest.fixture
def sample_thresholds() -> dict[int, float]:
    """Return-period flows (cms) for a mid-size reach."""
    return {2: 141.6, 5: 226.5, 10: 283.2, 25: 354.0, 50: 410.6, 100: 467.2}


@pytest.fixture
def sample_return_period_payload(sample_thresholds) -> RawPayload:
    return RawPayload(
        {str(year): flow for year, flow in sample_thresholds.items()},
        unit=FlowUnit.CMS,
    )
