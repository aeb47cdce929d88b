"""Network-fallback orchestration.

Every read goes through the same sequence:

    fresh cache hit           -> serve it
    miss or expired, offline  -> serve stale, or raise NoDataAvailableError
    miss or expired, online   -> fetch, write through, serve
    fetch failed or timed out -> serve stale, or raise NoDataAvailableError

Storage failures are never masked: a StorageError from the store propagates.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import Any, Callable, NamedTuple, Optional, Protocol

from riverforecast.cache.codec import normalize_thresholds
from riverforecast.cache.models import (
    CacheResult,
    CacheSource,
    DataCategory,
    FlowUnit,
    ForecastClass,
    RawPayload,
    ReturnPeriods,
)
from riverforecast.cache.service import CacheService
from riverforecast.cache.ttl import ttl_for
from riverforecast.config import DEFAULT_FETCH_TIMEOUT
from riverforecast.exceptions import FetchError, NoDataAvailableError

logger = logging.getLogger(__name__)


class ForecastFetcher(Protocol):
    """Upstream data source."""

    async def fetch(self, category: DataCategory, reach_id: str) -> RawPayload:
        """Fetch one document. Raises FetchError on any failure."""
        ...


class ConnectivityProbe(Protocol):
    async def is_online(self) -> bool:
        ...


class _Cached(NamedTuple):
    value: Any
    stored_at: datetime
    expired: bool


def reach_info_key(reach_id: str) -> str:
    """Generic-cache key holding reach metadata."""
    return f"reach:{reach_id}"


class FallbackFetcher:
    """Serve cached data, refreshing from the network when it is stale.

    Example:
        >>> fallback = FallbackFetcher(service, ForecastApiClient(), probe)
        >>> result = await fallback.get_forecast("23021904", ForecastClass.SHORT)
        >>> result.source, result.degraded
        (<CacheSource.NETWORK: 'network'>, False)
    """

    def __init__(
        self,
        service: CacheService,
        fetcher: ForecastFetcher,
        connectivity: ConnectivityProbe,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        single_flight: bool = False,
    ):
        """Initialize the orchestrator.

        Args:
            service: Cache access layer
            fetcher: Upstream fetch collaborator
            connectivity: Probe consulted before every remote fetch
            timeout: Default remote fetch timeout in seconds
            single_flight: Serialize concurrent requests for the same
                (category, reach) so only the first one hits the network
        """
        if timeout <= 0:
            raise ValueError(f"Invalid timeout: {timeout}. Must be > 0")
        self.service = service
        self.fetcher = fetcher
        self.connectivity = connectivity
        self.timeout = timeout
        self.single_flight = single_flight
        self._locks: dict[tuple[DataCategory, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[DataCategory, str], int] = {}

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def get_forecast(
        self,
        reach_id: str,
        forecast_class: ForecastClass,
        timeout: Optional[float] = None,
        force_refresh: bool = False,
    ) -> CacheResult:
        """Get a forecast document for a reach.

        Args:
            reach_id: Reach identifier
            forecast_class: Forecast horizon
            timeout: Remote fetch timeout in seconds (default: self.timeout)
            force_refresh: Skip the fresh-cache check. Stale data is still
                served if the fetch fails.

        Returns:
            CacheResult whose value is the forecast payload dict

        Raises:
            NoDataAvailableError: Nothing cached and the fetch was impossible
            StorageError: If the store is unreachable
        """
        return await self._resolve(
            DataCategory.for_forecast(forecast_class),
            reach_id,
            read=partial(self._read_forecast, reach_id, forecast_class),
            store=partial(self._store_forecast, reach_id, forecast_class),
            timeout=timeout,
            force_refresh=force_refresh,
        )

    async def get_return_periods(
        self,
        reach_id: str,
        timeout: Optional[float] = None,
        force_refresh: bool = False,
    ) -> CacheResult:
        """Get return-period thresholds for a reach.

        Args:
            reach_id: Reach identifier
            timeout: Remote fetch timeout in seconds (default: self.timeout)
            force_refresh: Skip the fresh-cache check. Stale data is still
                served if the fetch fails.

        Returns:
            CacheResult whose value is a ReturnPeriods
        """
        return await self._resolve(
            DataCategory.RETURN_PERIOD,
            reach_id,
            read=partial(self._read_return_periods, reach_id),
            store=partial(self._store_return_periods, reach_id),
            timeout=timeout,
            force_refresh=force_refresh,
        )

    async def get_reach_info(
        self,
        reach_id: str,
        timeout: Optional[float] = None,
        force_refresh: bool = False,
    ) -> CacheResult:
        """Get reach metadata (name, location, ...) through the generic cache."""
        return await self._resolve(
            DataCategory.REACH_INFO,
            reach_id,
            read=partial(self._read_reach_info, reach_id),
            store=partial(self._store_reach_info, reach_id),
            timeout=timeout,
            force_refresh=force_refresh,
        )

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _guard(self, category: DataCategory, reach_id: str):
        """Hold the per-key lock in single-flight mode, else do nothing.

        A key's lock is dropped once its last holder or waiter leaves.
        """
        if not self.single_flight:
            yield
            return
        key = (category, reach_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def _resolve(
        self,
        category: DataCategory,
        reach_id: str,
        read: Callable[[bool], Optional[_Cached]],
        store: Callable[[RawPayload], tuple[Any, datetime]],
        timeout: Optional[float],
        force_refresh: bool = False,
    ) -> CacheResult:
        async with self._guard(category, reach_id):
            if not force_refresh:
                cached = read(False)
                if cached is not None:
                    logger.debug(f"Cache HIT for {category.value} of {reach_id}")
                    return CacheResult(cached.value, CacheSource.CACHE, cached.stored_at)

            if not await self._check_connectivity():
                logger.info(f"Offline, looking for cached {category.value} of {reach_id}")
                return self._stale_or_fail(category, reach_id, read, cause=None)

            try:
                payload = await self._fetch_remote(category, reach_id, timeout)
                value, stored_at = store(payload)
            except FetchError as e:
                logger.error(f"Fetch of {category.value} for {reach_id} failed: {e}")
                return self._stale_or_fail(category, reach_id, read, cause=e)

            return CacheResult(value, CacheSource.NETWORK, stored_at)

    async def _check_connectivity(self) -> bool:
        try:
            return await self.connectivity.is_online()
        except Exception as e:
            logger.warning(f"Connectivity probe failed, assuming offline: {e}")
            return False

    async def _fetch_remote(
        self,
        category: DataCategory,
        reach_id: str,
        timeout: Optional[float],
    ) -> RawPayload:
        """Fetch one document, bounded by the timeout, and log the attempt.

        Raises:
            FetchError: On upstream failure or timeout
        """
        timeout = timeout if timeout is not None else self.timeout
        start_time = time.time()
        try:
            payload = await asyncio.wait_for(
                self.fetcher.fetch(category, reach_id), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            error = FetchError(f"Timed out after {timeout}s")
            self._log_attempt(category, reach_id, start_time, error)
            raise error from e
        except FetchError as e:
            self._log_attempt(category, reach_id, start_time, e)
            raise
        except Exception as e:
            # CancelledError is a BaseException and passes through
            error = FetchError(f"Unexpected fetch failure: {e!r}")
            self._log_attempt(category, reach_id, start_time, error)
            raise error from e

        self._log_attempt(category, reach_id, start_time)
        return payload

    def _log_attempt(
        self,
        category: DataCategory,
        reach_id: str,
        start_time: float,
        error: Optional[Exception] = None,
    ) -> None:
        self.service.log_fetch(
            source=category.value,
            reach_id=reach_id,
            status="error" if error else "success",
            duration_ms=int((time.time() - start_time) * 1000),
            error_message=str(error) if error else None,
        )

    def _stale_or_fail(
        self,
        category: DataCategory,
        reach_id: str,
        read: Callable[[bool], Optional[_Cached]],
        cause: Optional[FetchError],
    ) -> CacheResult:
        cached = read(True)
        if cached is None:
            raise NoDataAvailableError(category, reach_id, cause=cause)

        if not cached.expired:
            # Only reachable with force_refresh
            return CacheResult(cached.value, CacheSource.CACHE, cached.stored_at)

        logger.warning(
            f"Serving stale {category.value} for {reach_id} "
            f"(stored {cached.stored_at.isoformat()})"
        )
        return CacheResult(cached.value, CacheSource.STALE, cached.stored_at)

    # -------------------------------------------------------------------------
    # Per-category read/store
    # -------------------------------------------------------------------------

    def _read_forecast(
        self, reach_id: str, forecast_class: ForecastClass, ignore_expiry: bool
    ) -> Optional[_Cached]:
        record = self.service.get_cached_forecast(
            reach_id, forecast_class, ignore_expiry=ignore_expiry
        )
        if record is None:
            return None
        return _Cached(
            record.payload, record.stored_at, record.is_expired(self.service.db.now())
        )

    def _store_forecast(
        self, reach_id: str, forecast_class: ForecastClass, payload: RawPayload
    ) -> tuple[Any, datetime]:
        if not isinstance(payload.data, dict):
            raise FetchError(
                f"Unexpected forecast format: {type(payload.data).__name__}"
            )
        try:
            record = self.service.cache_forecast(reach_id, forecast_class, payload.data)
        except (TypeError, ValueError) as e:
            raise FetchError(f"Unserializable forecast: {e}") from e
        return record.payload, record.stored_at

    def _read_return_periods(
        self, reach_id: str, ignore_expiry: bool
    ) -> Optional[_Cached]:
        record = self.service.get_cached_return_periods(
            reach_id, ignore_expiry=ignore_expiry
        )
        if record is None:
            return None
        return _Cached(
            record.to_return_periods(),
            record.stored_at,
            record.is_expired(self.service.db.now()),
        )

    def _store_return_periods(
        self, reach_id: str, payload: RawPayload
    ) -> tuple[ReturnPeriods, datetime]:
        if not isinstance(payload.data, dict):
            raise FetchError(
                f"Unexpected return period format: {type(payload.data).__name__}"
            )
        try:
            thresholds = normalize_thresholds(payload.data)
        except ValueError as e:
            raise FetchError(f"Invalid return period data: {e}") from e
        if not thresholds:
            raise FetchError(f"No return periods found for reach {reach_id}")

        record = self.service.cache_return_periods(
            reach_id, thresholds, payload.unit or FlowUnit.CMS
        )
        return record.to_return_periods(), record.stored_at

    def _read_reach_info(self, reach_id: str, ignore_expiry: bool) -> Optional[_Cached]:
        entry = self.service.get_entry(
            reach_info_key(reach_id), ignore_expiry=ignore_expiry
        )
        if entry is None:
            return None
        return _Cached(
            entry.value, entry.created_at, entry.is_expired(self.service.db.now())
        )

    def _store_reach_info(self, reach_id: str, payload: RawPayload) -> tuple[Any, datetime]:
        try:
            self.service.set(
                reach_info_key(reach_id),
                payload.data,
                ttl=ttl_for(DataCategory.REACH_INFO),
            )
        except TypeError as e:
            raise FetchError(f"Unserializable reach info: {e}") from e
        return payload.data, self.service.db.now()
