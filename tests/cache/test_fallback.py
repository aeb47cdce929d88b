"""Tests for the network-fallback orchestrator.

Uses a real DuckDB file with an in-memory fake upstream and a settable
connectivity probe.
"""

import asyncio
from datetime import timedelta

import pytest

from riverforecast.cache.fallback import FallbackFetcher, reach_info_key
from riverforecast.cache.models import (
    CacheSource,
    DataCategory,
    FlowUnit,
    ForecastClass,
    RawPayload,
    ReturnPeriods,
)
from riverforecast.exceptions import FetchError, NoDataAvailableError, StorageError


def run(coro):
    return asyncio.run(coro)


class TestFreshHit:
    """Fresh cache hits never touch the network."""

    def test_offline_fresh_hit(self, fallback, service, fetcher, connectivity, clock):
        """Reach cached 30 min ago, offline: served from cache, no fetch."""
        service.cache_forecast("R9", ForecastClass.SHORT, {"v": 1})
        clock.advance(minutes=30)
        connectivity.online = False

        result = run(fallback.get_forecast("R9", ForecastClass.SHORT))

        assert result.source == CacheSource.CACHE
        assert not result.degraded
        assert result.value == {"v": 1}
        assert fetcher.calls == []
        assert connectivity.checks == 0


class TestNetworkPath:
    """Miss or expiry while online fetches and writes through."""

    def test_cold_miss_online(self, fallback, service, fetcher, sample_forecast):
        fetcher.set(DataCategory.SHORT_RANGE, "R1", sample_forecast)

        result = run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert result.source == CacheSource.NETWORK
        assert result.value == sample_forecast
        cached = service.get_cached_forecast("R1", ForecastClass.SHORT)
        assert cached.payload == sample_forecast

    def test_second_call_hits_cache(self, fallback, fetcher, sample_forecast):
        fetcher.set(DataCategory.MEDIUM_RANGE, "R1", sample_forecast)

        run(fallback.get_forecast("R1", ForecastClass.MEDIUM))
        result = run(fallback.get_forecast("R1", ForecastClass.MEDIUM))

        assert result.source == CacheSource.CACHE
        assert len(fetcher.calls) == 1

    def test_expired_entry_is_refetched(self, fallback, service, fetcher, clock):
        service.cache_forecast("R1", ForecastClass.SHORT, {"v": "old"})
        clock.advance(hours=3)
        fetcher.set(DataCategory.SHORT_RANGE, "R1", {"v": "new"})

        result = run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert result.source == CacheSource.NETWORK
        assert result.value == {"v": "new"}
        assert result.stored_at == clock.now

    def test_successful_fetch_is_logged(self, fallback, service, fetcher):
        fetcher.set(DataCategory.LONG_RANGE, "R1", {"v": 1})
        run(fallback.get_forecast("R1", ForecastClass.LONG))

        rows = service.db.conn.execute(
            "SELECT source, reach_id, status FROM fetch_log"
        ).fetchall()
        assert rows == [("long_range", "R1", "success")]


class TestStaleFallback:
    """Offline or failed fetches degrade to stale data."""

    def test_offline_stale(self, fallback, service, fetcher, connectivity, clock):
        """Short-range stored 3h ago, offline: served stale without fetching."""
        service.cache_forecast("R123", ForecastClass.SHORT, {"v": 1})
        stored_at = clock.now
        clock.advance(hours=3)
        connectivity.online = False

        result = run(fallback.get_forecast("R123", ForecastClass.SHORT))

        assert result.source == CacheSource.STALE
        assert result.degraded
        assert result.value == {"v": 1}
        assert result.stored_at == stored_at
        assert fetcher.calls == []

    def test_fetch_failure_serves_stale(self, fallback, service, fetcher, clock):
        service.cache_forecast("R1", ForecastClass.SHORT, {"v": 1})
        clock.advance(hours=3)
        fetcher.set(DataCategory.SHORT_RANGE, "R1", FetchError("503", status_code=503))

        result = run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert result.degraded
        assert result.value == {"v": 1}
        row = service.db.conn.execute(
            "SELECT status, error_message FROM fetch_log"
        ).fetchone()
        assert row == ("error", "503")

    def test_unexpected_fetch_error_serves_stale(self, fallback, service, fetcher, clock):
        service.cache_forecast("R1", ForecastClass.SHORT, {"v": 1})
        clock.advance(hours=3)
        fetcher.set(DataCategory.SHORT_RANGE, "R1", ConnectionError("reset"))

        result = run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert result.source == CacheSource.STALE
        assert result.value == {"v": 1}
        status = service.db.conn.execute("SELECT status FROM fetch_log").fetchone()
        assert status == ("error",)

    def test_unexpected_fetch_error_without_cache(self, fallback, fetcher):
        fetcher.set(DataCategory.SHORT_RANGE, "R1", OSError("no route"))

        with pytest.raises(NoDataAvailableError) as exc_info:
            run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert isinstance(exc_info.value.cause, FetchError)
        assert isinstance(exc_info.value.cause.__cause__, OSError)

    def test_unserializable_forecast_serves_stale(self, fallback, service, fetcher, clock):
        service.cache_forecast("R1", ForecastClass.SHORT, {"v": 1})
        clock.advance(hours=3)
        fetcher.set(DataCategory.SHORT_RANGE, "R1", {"v": {1, 2}})

        result = run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert result.source == CacheSource.STALE
        assert service.get_cached_forecast("R1", ForecastClass.SHORT,
                                           ignore_expiry=True).payload == {"v": 1}

    def test_cancellation_propagates(self, fallback, fetcher):
        fetcher.set(DataCategory.SHORT_RANGE, "R1", {"v": 1})
        fetcher.delay = 1.0

        async def cancel_midway():
            task = asyncio.create_task(fallback.get_forecast("R1", ForecastClass.SHORT))
            await asyncio.sleep(0.01)
            task.cancel()
            await task

        with pytest.raises(asyncio.CancelledError):
            run(cancel_midway())

    def test_timeout_serves_stale(self, service, fetcher, connectivity, clock):
        service.cache_forecast("R1", ForecastClass.SHORT, {"v": 1})
        clock.advance(hours=3)
        fetcher.set(DataCategory.SHORT_RANGE, "R1", {"v": 2})
        fetcher.delay = 1.0
        fallback = FallbackFetcher(service, fetcher, connectivity, timeout=0.05)

        result = run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert result.degraded
        assert result.value == {"v": 1}

    def test_per_call_timeout_overrides_default(self, fallback, fetcher):
        fetcher.set(DataCategory.SHORT_RANGE, "R1", {"v": 2})
        fetcher.delay = 0.5

        with pytest.raises(NoDataAvailableError) as exc_info:
            run(fallback.get_forecast("R1", ForecastClass.SHORT, timeout=0.01))

        assert isinstance(exc_info.value.cause, FetchError)
        assert "Timed out" in str(exc_info.value.cause)

    def test_probe_exception_counts_as_offline(self, service, fetcher, clock):
        class BrokenProbe:
            async def is_online(self):
                raise OSError("no route")

        service.cache_forecast("R1", ForecastClass.SHORT, {"v": 1})
        clock.advance(hours=3)
        fallback = FallbackFetcher(service, fetcher, BrokenProbe())

        result = run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert result.degraded
        assert fetcher.calls == []


class TestNoData:
    """Nothing cached and no way to fetch."""

    def test_cold_miss_offline(self, fallback, connectivity):
        connectivity.online = False

        with pytest.raises(NoDataAvailableError) as exc_info:
            run(fallback.get_forecast("R1", ForecastClass.SHORT))

        error = exc_info.value
        assert error.category == DataCategory.SHORT_RANGE
        assert error.reach_id == "R1"
        assert error.cause is None
        assert "no network connection" in str(error)

    def test_cold_miss_fetch_failure(self, fallback, fetcher):
        fetcher.set(DataCategory.SHORT_RANGE, "R1", FetchError("500", status_code=500))

        with pytest.raises(NoDataAvailableError) as exc_info:
            run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert exc_info.value.cause.status_code == 500

    def test_malformed_forecast_is_fetch_failure(self, fallback, fetcher, service):
        fetcher.set(DataCategory.SHORT_RANGE, "R1", ["not", "an", "object"])

        with pytest.raises(NoDataAvailableError):
            run(fallback.get_forecast("R1", ForecastClass.SHORT))
        assert service.get_cached_forecast("R1", ForecastClass.SHORT) is None

    def test_storage_error_propagates(self, fallback, service, monkeypatch):
        def broken(*args, **kwargs):
            raise StorageError("disk gone")

        monkeypatch.setattr(service.db, "fetch_forecast", broken)

        with pytest.raises(StorageError):
            run(fallback.get_forecast("R1", ForecastClass.SHORT))


class TestReturnPeriods:
    """Tests for return-period lookups."""

    def test_fetch_and_cache(self, fallback, service, fetcher, sample_return_period_payload,
                             sample_thresholds):
        fetcher.set(DataCategory.RETURN_PERIOD, "R1", sample_return_period_payload)

        result = run(fallback.get_return_periods("R1"))

        assert result.source == CacheSource.NETWORK
        assert isinstance(result.value, ReturnPeriods)
        assert result.value.flows == sample_thresholds
        assert service.get_cached_return_periods("R1").unit == FlowUnit.CMS

    def test_missing_unit_stored_as_cms(self, fallback, service, fetcher):
        fetcher.set(DataCategory.RETURN_PERIOD, "R1", RawPayload({"return_period_2": 10.0}))

        run(fallback.get_return_periods("R1"))

        assert service.db.fetch_return_periods("R1")[1] == "cms"

    def test_fetched_unit_is_kept(self, fallback, service, fetcher):
        fetcher.set(
            DataCategory.RETURN_PERIOD, "R1", RawPayload({"2": 500.0}, unit=FlowUnit.CFS)
        )

        result = run(fallback.get_return_periods("R1"))

        assert result.value.unit == FlowUnit.CFS
        assert service.get_cached_return_periods("R1").unit == FlowUnit.CFS

    def test_force_refresh_skips_fresh_cache(self, fallback, service, fetcher,
                                             sample_thresholds):
        service.cache_return_periods("R1", sample_thresholds)
        fetcher.set(DataCategory.RETURN_PERIOD, "R1", RawPayload({"2": 1.0}))

        result = run(fallback.get_return_periods("R1", force_refresh=True))

        assert result.source == CacheSource.NETWORK
        assert result.value.flows == {2: 1.0}

    def test_force_refresh_failure_keeps_fresh_cache(self, fallback, service,
                                                     sample_thresholds):
        """A fresh entry served after a failed forced refresh is not degraded."""
        service.cache_return_periods("R1", sample_thresholds)

        result = run(fallback.get_return_periods("R1", force_refresh=True))

        assert result.source == CacheSource.CACHE
        assert result.value.flows == sample_thresholds

    def test_force_refresh_failure_serves_stale(self, fallback, service, clock,
                                                sample_thresholds):
        service.cache_return_periods("R1", sample_thresholds)
        clock.advance(days=8)

        result = run(fallback.get_return_periods("R1", force_refresh=True))

        assert result.degraded

    def test_invalid_thresholds_are_fetch_failure(self, fallback, fetcher):
        fetcher.set(DataCategory.RETURN_PERIOD, "R1", RawPayload({"2": "high"}))

        with pytest.raises(NoDataAvailableError) as exc_info:
            run(fallback.get_return_periods("R1"))
        assert "Invalid return period data" in str(exc_info.value.cause)


class TestReachInfo:
    """Tests for reach metadata through the generic cache."""

    def test_fetch_and_cache(self, fallback, service, fetcher):
        fetcher.set(DataCategory.REACH_INFO, "R1", {"name": "Provo River"})

        result = run(fallback.get_reach_info("R1"))

        assert result.source == CacheSource.NETWORK
        assert service.get(reach_info_key("R1")) == {"name": "Provo River"}

    def test_stale_reach_info(self, fallback, service, connectivity, clock):
        service.set(reach_info_key("R1"), {"name": "Provo River"}, ttl=timedelta(hours=1))
        clock.advance(days=2)
        connectivity.online = False

        result = run(fallback.get_reach_info("R1"))

        assert result.degraded
        assert result.value == {"name": "Provo River"}


class TestSingleFlight:
    """Tests for concurrent same-key requests."""

    def test_default_fetches_concurrently(self, fallback, fetcher):
        """Without single_flight each caller fetches (no coalescing)."""
        fetcher.set(DataCategory.SHORT_RANGE, "R1", {"v": 1})
        fetcher.delay = 0.05

        async def both():
            return await asyncio.gather(
                fallback.get_forecast("R1", ForecastClass.SHORT),
                fallback.get_forecast("R1", ForecastClass.SHORT),
            )

        results = run(both())

        assert len(fetcher.calls) == 2
        assert all(r.source == CacheSource.NETWORK for r in results)

    def test_single_flight_fetches_once(self, service, fetcher, connectivity):
        fetcher.set(DataCategory.SHORT_RANGE, "R1", {"v": 1})
        fetcher.delay = 0.05
        fallback = FallbackFetcher(service, fetcher, connectivity, single_flight=True)

        async def both():
            return await asyncio.gather(
                fallback.get_forecast("R1", ForecastClass.SHORT),
                fallback.get_forecast("R1", ForecastClass.SHORT),
            )

        first, second = run(both())

        assert len(fetcher.calls) == 1
        assert first.source == CacheSource.NETWORK
        assert second.source == CacheSource.CACHE
        assert fallback._locks == {}

    def test_single_flight_releases_lock_on_failure(self, service, fetcher, connectivity):
        fallback = FallbackFetcher(service, fetcher, connectivity, single_flight=True)

        with pytest.raises(NoDataAvailableError):
            run(fallback.get_forecast("R1", ForecastClass.SHORT))

        assert fallback._locks == {}
        assert fallback._lock_users == {}


class TestConstruction:
    def test_invalid_timeout(self, service, fetcher, connectivity):
        with pytest.raises(ValueError):
            FallbackFetcher(service, fetcher, connectivity, timeout=0)
