"""TTL policy: how long each kind of cached data stays fresh.

Pure lookups, no I/O. Return periods have two independent policies:

- eviction TTL (7 days): after this the fallback layer refetches and the
  sweeper deletes the row
- advisory staleness (30 days): ReturnPeriods.is_stale(), for UI hints only
"""

from datetime import datetime, timedelta
from typing import Optional

from riverforecast.cache.models import ADVISORY_STALENESS, DataCategory, ForecastClass

SHORT_RANGE_TTL = timedelta(hours=2)
MEDIUM_RANGE_TTL = timedelta(hours=12)
LONG_RANGE_TTL = timedelta(hours=24)

RETURN_PERIOD_EVICTION_TTL = timedelta(days=7)
RETURN_PERIOD_STALENESS = ADVISORY_STALENESS

DEFAULT_TTL = timedelta(hours=24)
DEFAULT_FILE_TTL = timedelta(days=7)

# Fetch log rows are kept for debugging only
FETCH_LOG_RETENTION = timedelta(days=7)

FORECAST_TTLS = {
    ForecastClass.SHORT: SHORT_RANGE_TTL,
    ForecastClass.MEDIUM: MEDIUM_RANGE_TTL,
    ForecastClass.LONG: LONG_RANGE_TTL,
}


def forecast_ttl(forecast_class: ForecastClass) -> timedelta:
    """Freshness window for a forecast horizon."""
    return FORECAST_TTLS[forecast_class]


def ttl_for(category: DataCategory, override: Optional[timedelta] = None) -> timedelta:
    """Freshness window for a data category.

    Args:
        category: Data category being cached
        override: Caller-supplied TTL; only honoured for reach info, whose
            TTL is caller-defined

    Returns:
        TTL as a timedelta
    """
    forecast_class = category.forecast_class
    if forecast_class is not None:
        return forecast_ttl(forecast_class)
    if category == DataCategory.RETURN_PERIOD:
        return RETURN_PERIOD_EVICTION_TTL
    return override or DEFAULT_TTL


def is_return_period_stale(stored_at: datetime, now: datetime) -> bool:
    """Advisory check: are thresholds too old to trust?"""
    return now - stored_at > RETURN_PERIOD_STALENESS
