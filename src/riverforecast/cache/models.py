"""Data models for cache layer."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

# Standard return-period years published by the upstream API
RETURN_PERIOD_YEARS = (2, 5, 10, 25, 50, 100)

# Return periods rarely change; older than this is "too old to trust" in the UI
ADVISORY_STALENESS = timedelta(days=30)

# 1 m³/s expressed in ft³/s, and the reverse
CMS_TO_CFS = 35.3147
CFS_TO_CMS = 0.0283168


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (DuckDB TIMESTAMP semantics)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ForecastClass(Enum):
    """Forecast horizon bucket, each with its own TTL."""
    SHORT = "short_range"
    MEDIUM = "medium_range"
    LONG = "long_range"

    @property
    def display_name(self) -> str:
        """Human-friendly label."""
        if self == ForecastClass.SHORT:
            return "Hourly (3-Day)"
        elif self == ForecastClass.MEDIUM:
            return "9-Day"
        return "30-Day"


class DataCategory(Enum):
    """Kind of upstream data a cache lookup or fetch is about."""
    SHORT_RANGE = "short_range"
    MEDIUM_RANGE = "medium_range"
    LONG_RANGE = "long_range"
    RETURN_PERIOD = "return_period"
    REACH_INFO = "reach_info"

    @classmethod
    def for_forecast(cls, forecast_class: ForecastClass) -> "DataCategory":
        """Category matching a forecast horizon."""
        return cls(forecast_class.value)

    @property
    def forecast_class(self) -> Optional[ForecastClass]:
        """Forecast horizon for forecast categories, None otherwise."""
        try:
            return ForecastClass(self.value)
        except ValueError:
            return None


class FlowUnit(Enum):
    """Flow measurement unit."""
    CMS = "cms"  # cubic meters per second, what the API returns
    CFS = "cfs"  # cubic feet per second

    @classmethod
    def parse(cls, tag: Optional[str]) -> "FlowUnit":
        """Parse a persisted unit tag.

        Rows written before unit tagging carry no tag and are CMS. Tags in
        the older "FlowUnit.cms" form are accepted too.

        Raises:
            ValueError: If the tag is not a string or names no known unit
        """
        if tag is None:
            return cls.CMS
        if not isinstance(tag, str):
            raise ValueError(f"Unit tag must be a string, got {tag!r}")
        if not tag.strip():
            return cls.CMS
        name = tag.strip().lower()
        if name.startswith("flowunit."):
            name = name[len("flowunit."):]
        return cls(name)

    @property
    def display(self) -> str:
        return "m³/s" if self == FlowUnit.CMS else "ft³/s"

    def convert(self, value: float, to_unit: "FlowUnit") -> float:
        """Convert a flow value expressed in this unit to ``to_unit``."""
        if self == to_unit:
            return value
        if self == FlowUnit.CMS:
            return value * CMS_TO_CFS
        return value * CFS_TO_CMS


class CacheSource(Enum):
    """Where a served value came from."""
    CACHE = "cache"      # fresh cached value
    NETWORK = "network"  # just fetched and written through
    STALE = "stale"      # expired cache served after offline/fetch failure


@dataclass
class CacheEntry:
    """Generic key/value cache row."""

    key: str
    value: Any
    created_at: datetime
    expires_at: datetime
    metadata: Optional[dict] = None
    last_accessed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class FileCacheEntry:
    """File-backed cache row. The file at ``file_path`` is owned by the cache."""

    key: str
    file_path: Path
    size_bytes: int
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    mime_type: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class ForecastCacheRecord:
    """Cached forecast document for one (reach, forecast class) pair."""

    reach_id: str
    forecast_class: ForecastClass
    payload: dict
    stored_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def age(self, now: datetime) -> timedelta:
        return now - self.stored_at


@dataclass
class ReturnPeriodCacheRecord:
    """Cached return-period thresholds for one reach.

    ``expires_at`` follows the eviction TTL; advisory staleness is a separate
    check on ReturnPeriods.
    """

    reach_id: str
    thresholds: dict[int, float]
    unit: FlowUnit
    stored_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_return_periods(self) -> "ReturnPeriods":
        return ReturnPeriods(
            reach_id=self.reach_id,
            flows=dict(self.thresholds),
            unit=self.unit,
            retrieved_at=self.stored_at,
        )


@dataclass
class RawPayload:
    """What the upstream fetch collaborator hands back.

    Attributes:
        data: Opaque JSON-serializable document
        unit: Source flow unit, only meaningful for return-period data
    """

    data: Any
    unit: Optional[FlowUnit] = None


@dataclass
class CacheResult:
    """Value served by the fallback layer.

    ``degraded`` is True when the value is known to be stale and was served
    because a fresh fetch was impossible.
    """

    value: Any
    source: CacheSource
    stored_at: datetime

    @property
    def degraded(self) -> bool:
        return self.source == CacheSource.STALE


@dataclass
class ReturnPeriods:
    """Flow thresholds for the standard return-period years of one reach.

    Attributes:
        reach_id: Reach identifier
        flows: Year -> flow threshold, in ``unit``
        unit: Unit the flows are expressed in
        retrieved_at: When the thresholds were fetched
    """

    reach_id: str
    flows: dict[int, float]
    unit: FlowUnit = FlowUnit.CMS
    retrieved_at: datetime = field(default_factory=utcnow)

    def flow_for_year(self, year: int, unit: Optional[FlowUnit] = None) -> Optional[float]:
        """Threshold for ``year``, converted to ``unit`` if given."""
        value = self.flows.get(year)
        if value is None or unit is None:
            return value
        return self.unit.convert(value, unit)

    def converted(self, unit: FlowUnit) -> "ReturnPeriods":
        """Copy with every threshold expressed in ``unit``."""
        return ReturnPeriods(
            reach_id=self.reach_id,
            flows={year: self.unit.convert(v, unit) for year, v in self.flows.items()},
            unit=unit,
            retrieved_at=self.retrieved_at,
        )

    def flow_category(self, flow: float, unit: Optional[FlowUnit] = None) -> str:
        """Classify a flow against the thresholds.

        Args:
            flow: Flow value
            unit: Unit of ``flow``; defaults to the thresholds' unit
        """
        if unit is not None:
            flow = unit.convert(flow, self.unit)

        labels = ["Low", "Normal", "Moderate", "High", "Very High", "Extreme"]
        for year, label in zip(RETURN_PERIOD_YEARS, labels):
            if flow < self.flows.get(year, float("inf")):
                return label
        return "Catastrophic"

    def nearest_return_period(self, flow: float) -> Optional[int]:
        """Year whose threshold is closest to ``flow`` (same unit)."""
        closest = None
        min_diff = float("inf")
        for year in RETURN_PERIOD_YEARS:
            threshold = self.flows.get(year)
            if threshold is None:
                continue
            diff = abs(threshold - flow)
            if diff < min_diff:
                min_diff = diff
                closest = year
        return closest

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """Advisory staleness: True once older than 30 days."""
        now = now or utcnow()
        return now - self.retrieved_at > ADVISORY_STALENESS
