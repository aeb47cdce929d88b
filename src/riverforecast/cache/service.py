"""Cache access layer.

Typed get/set on top of CacheDatabase. Expiry is enforced on every read,
corrupt payloads are deleted and reported as misses, and last-accessed
bookkeeping is best-effort: its failures are logged, never raised.
"""

import logging
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from riverforecast.cache.codec import (
    Decoded,
    DecodeError,
    DecodeResult,
    decode,
    decode_object,
    decode_thresholds,
    encode,
    encode_optional,
    encode_thresholds,
)
from riverforecast.cache.database import CacheDatabase
from riverforecast.cache.models import (
    CacheEntry,
    FileCacheEntry,
    FlowUnit,
    ForecastCacheRecord,
    ForecastClass,
    ReturnPeriodCacheRecord,
    ReturnPeriods,
)
from riverforecast.cache.ttl import (
    DEFAULT_FILE_TTL,
    DEFAULT_TTL,
    RETURN_PERIOD_EVICTION_TTL,
    forecast_ttl,
)
from riverforecast.exceptions import FileMissingError, StorageError

logger = logging.getLogger(__name__)


def _require_positive(ttl: timedelta) -> None:
    if ttl <= timedelta(0):
        raise ValueError(f"Invalid TTL: {ttl}. Must be positive")


class CacheService:
    """High-level cache operations for any kind of cached data.

    Example:
        >>> service = CacheService(CacheDatabase())
        >>> service.set("reach:23021904", {"name": "Provo River"})
        >>> service.get("reach:23021904")
        {'name': 'Provo River'}
    """

    def __init__(self, db: CacheDatabase):
        """Initialize cache service.

        Args:
            db: CacheDatabase instance for persistence
        """
        self.db = db

    def _heal(
        self, result: DecodeResult, what: str, delete: Callable[[], Any]
    ) -> Optional[Decoded]:
        """Turn a DecodeError into delete-and-miss.

        Returns:
            The Decoded result, or None if the entry was corrupt and removed.
        """
        if isinstance(result, Decoded):
            return result
        self._drop_corrupt(what, result, delete)
        return None

    def _drop_corrupt(self, what: str, error: DecodeError, delete: Callable[[], Any]) -> None:
        logger.warning(f"Dropping corrupt cache entry {what}: {error.reason}")
        delete()

    def _best_effort(self, what: str, action: Callable[[], Any]) -> None:
        """Run non-critical bookkeeping; log failures instead of raising."""
        try:
            action()
        except StorageError as e:
            logger.warning(f"Best-effort {what} failed: {e}")

    # -------------------------------------------------------------------------
    # Generic Values
    # -------------------------------------------------------------------------

    def get(self, key: str, update_access_time: bool = True) -> Optional[Any]:
        """Get a live value from cache.

        Args:
            key: Cache key
            update_access_time: Bump last_accessed_at on a hit

        Returns:
            The cached value, or None on miss, expiry or corrupt payload
        """
        entry = self.get_entry(key, update_access_time=update_access_time)
        return entry.value if entry is not None else None

    def get_entry(
        self,
        key: str,
        update_access_time: bool = True,
        ignore_expiry: bool = False,
    ) -> Optional[CacheEntry]:
        """Get the full cache entry, including metadata.

        Args:
            key: Cache key
            update_access_time: Bump last_accessed_at on a hit
            ignore_expiry: Return expired rows too (stale fallback)
        """
        row = self.db.fetch_entry(key)
        if row is None:
            return None

        now = self.db.now()
        _, value_text, created_at, expires_at, metadata_text, last_accessed_at = row
        if now >= expires_at and not ignore_expiry:
            logger.debug(f"Cache EXPIRED for {key!r}")
            return None

        delete = partial(self.db.delete_entry, key)
        decoded_value = self._heal(decode(value_text), repr(key), delete)
        if decoded_value is None:
            return None
        metadata = None
        if metadata_text is not None:
            decoded_metadata = self._heal(decode_object(metadata_text), repr(key), delete)
            if decoded_metadata is None:
                return None
            metadata = decoded_metadata.value

        if update_access_time:
            self._best_effort(
                f"access-time update for {key!r}",
                partial(self.db.touch_entry, key, now),
            )
            last_accessed_at = now

        return CacheEntry(
            key=key,
            value=decoded_value.value,
            created_at=created_at,
            expires_at=expires_at,
            metadata=metadata,
            last_accessed_at=last_accessed_at,
        )

    def set(
        self,
        key: str,
        value: Any,
        ttl: timedelta = DEFAULT_TTL,
        metadata: Optional[dict] = None,
    ) -> None:
        """Set value in cache, replacing any existing entry.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Time to live, must be positive
            metadata: Optional JSON-serializable metadata

        Raises:
            ValueError: If ttl is not positive
            TypeError: If value or metadata cannot be serialized
            StorageError: If the store cannot be written
        """
        _require_positive(ttl)
        now = self.db.now()
        self.db.upsert_entry(
            key=key,
            value=encode(value),
            created_at=now,
            expires_at=now + ttl,
            metadata=encode_optional(metadata),
        )

    def exists(self, key: str) -> bool:
        """True iff a non-expired entry exists for key."""
        return self.db.entry_is_live(key, self.db.now())

    def remove(self, key: str) -> None:
        """Remove key from cache. No error if absent."""
        self.db.delete_entry(key)

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def set_file(
        self,
        key: str,
        data: bytes,
        ttl: timedelta = DEFAULT_FILE_TTL,
        mime_type: Optional[str] = None,
    ) -> FileCacheEntry:
        """Cache binary data in a file owned by the cache.

        The previous file for the same key is deleted once the new row is in
        place.

        Raises:
            ValueError: If ttl is not positive
            StorageError: If the file or row cannot be written
        """
        _require_positive(ttl)
        now = self.db.now()
        path = self.db.write_file(key, data)
        try:
            previous = self.db.upsert_file_entry(
                key=key,
                file_path=path,
                size_bytes=len(data),
                mime_type=mime_type,
                created_at=now,
                expires_at=now + ttl,
            )
        except StorageError:
            self._best_effort(
                f"removal of unreferenced file {path}",
                partial(self.db.delete_file, path),
            )
            raise

        if previous is not None:
            self._best_effort(
                f"removal of replaced file {previous}",
                partial(self.db.delete_file, previous),
            )

        logger.debug(f"Cached file for {key!r} ({len(data)} bytes) at {path}")
        return FileCacheEntry(
            key=key,
            file_path=path,
            size_bytes=len(data),
            created_at=now,
            expires_at=now + ttl,
            last_accessed_at=now,
            mime_type=mime_type,
        )

    def get_file_entry(self, key: str) -> Optional[FileCacheEntry]:
        """Live file entry metadata, without reading the file."""
        row = self.db.fetch_file_entry(key)
        if row is None:
            return None
        entry = FileCacheEntry(
            key=row[0],
            file_path=Path(row[1]),
            size_bytes=row[2],
            mime_type=row[3],
            created_at=row[4],
            expires_at=row[5],
            last_accessed_at=row[6],
        )
        if entry.is_expired(self.db.now()):
            return None
        return entry

    def get_file(self, key: str, update_access_time: bool = True) -> Optional[bytes]:
        """Get cached file contents.

        A row whose file has disappeared is deleted and reported as a miss.
        """
        entry = self.get_file_entry(key)
        if entry is None:
            return None

        try:
            data = self._read_owned_file(entry.file_path)
        except FileMissingError:
            logger.warning(f"Cached file for {key!r} is missing, dropping entry")
            self.db.delete_file_entry(key, entry.file_path)
            return None

        if update_access_time:
            now = self.db.now()
            self._best_effort(
                f"access-time update for file {key!r}",
                partial(self.db.touch_file_entry, key, now),
            )
        return data

    def _read_owned_file(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise FileMissingError(str(path)) from e
        except OSError as e:
            raise StorageError(f"Reading cache file {path} failed: {e}") from e

    def file_exists(self, key: str) -> bool:
        """True iff a non-expired file entry exists for key."""
        return self.db.file_entry_is_live(key, self.db.now())

    def remove_file(self, key: str) -> None:
        """Remove a file entry and its file. No error if absent."""
        row = self.db.fetch_file_entry(key)
        if row is None:
            return
        path = Path(row[1])
        self.db.delete_file(path)
        self.db.delete_file_entry(key, path)

    # -------------------------------------------------------------------------
    # Forecasts
    # -------------------------------------------------------------------------

    def cache_forecast(
        self,
        reach_id: str,
        forecast_class: ForecastClass,
        payload: dict,
    ) -> ForecastCacheRecord:
        """Store a forecast document, replacing any previous one for the pair."""
        now = self.db.now()
        self.db.upsert_forecast(reach_id, forecast_class.value, encode(payload), now)
        logger.info(f"Cached {forecast_class.value} forecast for reach {reach_id}")
        return ForecastCacheRecord(
            reach_id=reach_id,
            forecast_class=forecast_class,
            payload=payload,
            stored_at=now,
            expires_at=now + forecast_ttl(forecast_class),
        )

    def get_cached_forecast(
        self,
        reach_id: str,
        forecast_class: ForecastClass,
        ignore_expiry: bool = False,
    ) -> Optional[ForecastCacheRecord]:
        """Get cached forecast.

        Args:
            reach_id: Reach identifier
            forecast_class: Forecast horizon
            ignore_expiry: Return expired records too (stale fallback)

        Returns:
            ForecastCacheRecord if found (and fresh, unless ignore_expiry)
        """
        row = self.db.fetch_forecast(reach_id, forecast_class.value)
        if row is None:
            logger.debug(f"Cache MISS for {forecast_class.value} forecast of {reach_id}")
            return None

        payload_text, stored_at = row
        expires_at = stored_at + forecast_ttl(forecast_class)
        if self.db.now() >= expires_at and not ignore_expiry:
            logger.debug(f"Cache EXPIRED for {forecast_class.value} forecast of {reach_id}")
            return None

        payload = self._heal(
            decode_object(payload_text),
            f"{forecast_class.value}/{reach_id}",
            partial(self.db.delete_forecast, reach_id, forecast_class.value),
        )
        if payload is None:
            return None

        return ForecastCacheRecord(
            reach_id=reach_id,
            forecast_class=forecast_class,
            payload=payload.value,
            stored_at=stored_at,
            expires_at=expires_at,
        )

    def is_forecast_stale(self, reach_id: str, forecast_class: ForecastClass) -> bool:
        """True if no fresh forecast is cached for the pair."""
        return self.get_cached_forecast(reach_id, forecast_class) is None

    # -------------------------------------------------------------------------
    # Return Periods
    # -------------------------------------------------------------------------

    def cache_return_periods(
        self,
        reach_id: str,
        thresholds: Mapping[int, float],
        unit: FlowUnit = FlowUnit.CMS,
    ) -> ReturnPeriodCacheRecord:
        """Store return-period thresholds with their unit tag.

        Args:
            reach_id: Reach identifier
            thresholds: Year -> flow threshold
            unit: Unit of the thresholds (the API reports CMS)
        """
        now = self.db.now()
        self.db.upsert_return_periods(
            reach_id, encode_thresholds(thresholds), unit.value, now
        )
        logger.info(f"Cached return periods for reach {reach_id} ({unit.value})")
        return ReturnPeriodCacheRecord(
            reach_id=reach_id,
            thresholds={int(year): float(v) for year, v in thresholds.items()},
            unit=unit,
            stored_at=now,
            expires_at=now + RETURN_PERIOD_EVICTION_TTL,
        )

    def cache_return_period_model(self, periods: ReturnPeriods) -> ReturnPeriodCacheRecord:
        return self.cache_return_periods(periods.reach_id, periods.flows, periods.unit)

    def get_cached_return_periods(
        self,
        reach_id: str,
        ignore_expiry: bool = False,
    ) -> Optional[ReturnPeriodCacheRecord]:
        """Get cached return periods.

        Rows without a unit tag read back as CMS.
        """
        row = self.db.fetch_return_periods(reach_id)
        if row is None:
            return None

        payload_text, unit_tag, stored_at = row
        expires_at = stored_at + RETURN_PERIOD_EVICTION_TTL
        if self.db.now() >= expires_at and not ignore_expiry:
            return None

        what = f"return_period/{reach_id}"
        delete = partial(self.db.delete_return_periods, reach_id)
        decoded = self._heal(decode_thresholds(payload_text), what, delete)
        if decoded is None:
            return None
        thresholds, embedded_unit = decoded.value

        tag = unit_tag if unit_tag is not None else embedded_unit
        try:
            unit = FlowUnit.parse(tag)
        except ValueError:
            self._drop_corrupt(what, DecodeError(f"unknown unit tag {tag!r}"), delete)
            return None

        return ReturnPeriodCacheRecord(
            reach_id=reach_id,
            thresholds=thresholds,
            unit=unit,
            stored_at=stored_at,
            expires_at=expires_at,
        )

    # -------------------------------------------------------------------------
    # Fetch Log
    # -------------------------------------------------------------------------

    def log_fetch(
        self,
        source: str,
        reach_id: str,
        status: str,
        duration_ms: int,
        error_message: Optional[str] = None,
    ) -> None:
        """Record a remote fetch attempt (best-effort)."""
        self._best_effort(
            "fetch log write",
            partial(
                self.db.log_fetch,
                source=source,
                reach_id=reach_id,
                status=status,
                duration_ms=duration_ms,
                error_message=error_message[:500] if error_message else None,
            ),
        )
