"""Repository facade wiring the cache layers together.

One ForecastRepository owns one CacheDatabase plus the collaborators built on
top of it. Construct it explicitly and close it when done:

    async with ForecastRepository() as repo:
        result = await repo.get_forecast("23021904")
        if result.degraded:
            print(f"Offline, showing data from {result.stored_at}")
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from riverforecast.cache.database import CacheDatabase
from riverforecast.cache.fallback import ConnectivityProbe, FallbackFetcher, ForecastFetcher
from riverforecast.cache.maintenance import CacheSweeper, SweepResult
from riverforecast.cache.models import CacheResult, FlowUnit, ForecastClass
from riverforecast.cache.service import CacheService
from riverforecast.config import CacheConfig

logger = logging.getLogger(__name__)


class ForecastRepository:
    """Cached access to forecasts, return periods and reach metadata.

    Attributes:
        config: Settings the repository was built from
        db: Persistent store
        service: Cache access layer
        sweeper: Eviction and size accounting
        fallback: Network-fallback orchestrator
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        fetcher: Optional[ForecastFetcher] = None,
        connectivity: Optional[ConnectivityProbe] = None,
        clock: Optional[Callable[[], datetime]] = None,
        single_flight: bool = False,
    ):
        """Initialize repository (no I/O until first use).

        Args:
            config: Settings. Defaults to CacheConfig.from_env().
            fetcher: Upstream fetch collaborator. Defaults to an HTTP client
                built from config.
            connectivity: Online probe. Defaults to an HTTP HEAD probe.
            clock: Naive-UTC clock for the store; injectable for tests
            single_flight: Serialize concurrent same-key fetches
        """
        self.config = config or CacheConfig.from_env()
        self.db = CacheDatabase(self.config.db_path, self.config.cache_dir, clock=clock)
        self.service = CacheService(self.db)
        self.sweeper = CacheSweeper(self.db)

        # Collaborators created here are closed by close()
        self._owned = []
        if fetcher is None:
            from riverforecast.api.client import ForecastApiClient
            fetcher = ForecastApiClient.from_config(self.config)
            self._owned.append(fetcher)
        if connectivity is None:
            from riverforecast.api.connectivity import HttpConnectivityProbe
            connectivity = HttpConnectivityProbe(self.config.connectivity_url)
            self._owned.append(connectivity)

        self.fallback = FallbackFetcher(
            self.service,
            fetcher,
            connectivity,
            timeout=self.config.fetch_timeout,
            single_flight=single_flight,
        )
        self._sweep_task: Optional[asyncio.Task] = None
        self._sweep_stop: Optional[asyncio.Event] = None

    # -------------------------------------------------------------------------
    # Data Access
    # -------------------------------------------------------------------------

    async def get_forecast(
        self,
        reach_id: str,
        forecast_class: ForecastClass = ForecastClass.SHORT,
        timeout: Optional[float] = None,
        force_refresh: bool = False,
    ) -> CacheResult:
        """Forecast payload for a reach; see FallbackFetcher.get_forecast."""
        return await self.fallback.get_forecast(
            reach_id, forecast_class, timeout=timeout, force_refresh=force_refresh
        )

    async def get_return_periods(
        self,
        reach_id: str,
        timeout: Optional[float] = None,
        force_refresh: bool = False,
    ) -> CacheResult:
        """ReturnPeriods for a reach; see FallbackFetcher.get_return_periods."""
        return await self.fallback.get_return_periods(
            reach_id, timeout=timeout, force_refresh=force_refresh
        )

    async def get_reach_info(
        self,
        reach_id: str,
        timeout: Optional[float] = None,
    ) -> CacheResult:
        return await self.fallback.get_reach_info(reach_id, timeout=timeout)

    async def flow_category(
        self,
        reach_id: str,
        flow: float,
        unit: FlowUnit = FlowUnit.CMS,
    ) -> str:
        """Classify a flow against the reach's return-period thresholds.

        Raises:
            NoDataAvailableError: If no thresholds are available
        """
        result = await self.get_return_periods(reach_id)
        return result.value.flow_category(flow, unit)

    async def exceeds_return_period(
        self,
        reach_id: str,
        flow: float,
        year: int,
        unit: FlowUnit = FlowUnit.CMS,
    ) -> bool:
        """True if ``flow`` reaches the ``year`` return-period threshold.

        Returns False when the gateway reported no threshold for that year.
        """
        result = await self.get_return_periods(reach_id)
        threshold = result.value.flow_for_year(year, unit)
        if threshold is None:
            return False
        return flow >= threshold

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def cleanup(self) -> SweepResult:
        """Delete expired data now."""
        return self.sweeper.sweep_expired()

    def clear_cache(self) -> int:
        """Delete all cached data. Returns number of rows deleted."""
        return self.sweeper.clear_all()

    def cache_size(self) -> int:
        """Approximate cache footprint in bytes."""
        return self.sweeper.total_size_bytes()

    def get_cache_stats(self) -> dict:
        return self.sweeper.get_stats()

    def start_background_sweep(self, interval: float) -> asyncio.Task:
        """Sweep expired data every ``interval`` seconds until close().

        Must be called from a running event loop.
        """
        if self._sweep_task is not None and not self._sweep_task.done():
            raise RuntimeError("Background sweep already running")
        self._sweep_stop = asyncio.Event()
        self._sweep_task = asyncio.create_task(
            self.sweeper.sweep_periodically(interval, self._sweep_stop)
        )
        return self._sweep_task

    async def stop_background_sweep(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_stop.set()
        await self._sweep_task
        self._sweep_task = None
        self._sweep_stop = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Stop background work, close owned HTTP clients and the store."""
        await self.stop_background_sweep()
        for collaborator in self._owned:
            await collaborator.aclose()
        self._owned = []
        self.db.close()

    async def __aenter__(self) -> "ForecastRepository":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
