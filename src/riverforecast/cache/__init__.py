"""Local data cache and network-fallback layer for riverforecast.

Provides persistent caching of streamflow forecasts, return-period thresholds
and reach metadata using DuckDB, serving stale data when the network or the
upstream API is unavailable.

Expired data can be swept via:
    python -m riverforecast.cache.maintenance

Bookmarked reaches can be pre-warmed via:
    python -m riverforecast.cache.refresh --reach 23021904
"""

from riverforecast.cache.database import CacheDatabase
from riverforecast.cache.fallback import FallbackFetcher
from riverforecast.cache.maintenance import CacheSweeper, SweepResult
from riverforecast.cache.models import (
    CacheEntry,
    CacheResult,
    CacheSource,
    DataCategory,
    FileCacheEntry,
    FlowUnit,
    ForecastCacheRecord,
    ForecastClass,
    RawPayload,
    ReturnPeriodCacheRecord,
    ReturnPeriods,
)
from riverforecast.cache.refresh import RefreshResult, get_cache_status, refresh_reaches
from riverforecast.cache.repository import ForecastRepository
from riverforecast.cache.service import CacheService

__all__ = [
    "CacheDatabase",
    "CacheEntry",
    "CacheResult",
    "CacheService",
    "CacheSource",
    "CacheSweeper",
    "DataCategory",
    "FallbackFetcher",
    "FileCacheEntry",
    "FlowUnit",
    "ForecastCacheRecord",
    "ForecastClass",
    "ForecastRepository",
    "RawPayload",
    "RefreshResult",
    "ReturnPeriodCacheRecord",
    "ReturnPeriods",
    "SweepResult",
    "get_cache_status",
    "refresh_reaches",
]
