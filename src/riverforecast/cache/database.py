"""DuckDB cache database for riverforecast."""

import logging
import re
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

import duckdb

from riverforecast.cache.models import utcnow
from riverforecast.config import DEFAULT_DB_PATH
from riverforecast.exceptions import StorageError

logger = logging.getLogger(__name__)

# SQL schema - DuckDB uses sequences for auto-increment
SCHEMA_SQL = """
CREATE SEQUENCE IF NOT EXISTS seq_fetch_log_id START 1;

-- Generic key/value cache
CREATE TABLE IF NOT EXISTS cache_entries (
    key VARCHAR PRIMARY KEY,
    value VARCHAR NOT NULL,
    created_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL,
    metadata VARCHAR,
    last_accessed_at TIMESTAMP
);

-- File cache, every row owns one file in the cache directory
CREATE TABLE IF NOT EXISTS file_cache (
    key VARCHAR PRIMARY KEY,
    file_path VARCHAR NOT NULL,
    size_bytes BIGINT NOT NULL,
    mime_type VARCHAR,
    created_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL,
    last_accessed_at TIMESTAMP NOT NULL
);

-- Forecast cache, one row per (reach, forecast class)
CREATE TABLE IF NOT EXISTS forecast_cache (
    reach_id VARCHAR NOT NULL,
    forecast_class VARCHAR NOT NULL,
    payload VARCHAR NOT NULL,
    stored_at TIMESTAMP NOT NULL,
    PRIMARY KEY (reach_id, forecast_class)
);

-- Return-period thresholds, NULL unit means legacy CMS
CREATE TABLE IF NOT EXISTS return_period_cache (
    reach_id VARCHAR PRIMARY KEY,
    payload VARCHAR NOT NULL,
    unit VARCHAR,
    stored_at TIMESTAMP NOT NULL
);

-- Fetch log for debugging/monitoring
CREATE TABLE IF NOT EXISTS fetch_log (
    id INTEGER DEFAULT nextval('seq_fetch_log_id') PRIMARY KEY,
    source VARCHAR NOT NULL,
    reach_id VARCHAR,
    timestamp TIMESTAMP NOT NULL,
    status VARCHAR NOT NULL,
    duration_ms INTEGER,
    error_message VARCHAR
);

CREATE INDEX IF NOT EXISTS idx_fetch_log_time ON fetch_log(timestamp);
"""

# Tables cleared by a full cache reset (fetch_log is history, not cache)
CACHE_TABLES = ("cache_entries", "file_cache", "forecast_cache", "return_period_cache")

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def schema_statements(sql: str = SCHEMA_SQL) -> list[str]:
    """Split schema SQL into statements, skipping ``--`` comment lines."""
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    statements = (statement.strip() for statement in "\n".join(lines).split(";"))
    return [statement for statement in statements if statement]


class CacheDatabase:
    """DuckDB cache database manager.

    Owns the backing tables and the cache directory. Nothing else writes to
    either. The connection and schema are created lazily on first use, and
    a single connection is shared so writes are serialized.

    Example:
        >>> db = CacheDatabase(Path("/tmp/rivr.duckdb"))
        >>> db.fetch_forecast("23021904", "short_range") is None
        True
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize database handle (no I/O until first use).

        Args:
            db_path: Path to DuckDB file. Created if it doesn't exist.
            cache_dir: Directory for cached files. Defaults to ``files/``
                next to the database.
            clock: Returns the current naive-UTC time; injectable for tests.
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.cache_dir = Path(cache_dir) if cache_dir else self.db_path.parent / "files"
        self._clock = clock or utcnow
        self._conn = None

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get database connection (lazy initialization with retry)."""
        if self._conn is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create {self.db_path.parent}: {e}") from e
            conn = self._connect_with_retry()
            try:
                self._init_schema(conn)
            except duckdb.Error as e:
                conn.close()
                raise StorageError(f"Schema initialization failed: {e}") from e
            self._conn = conn
        return self._conn

    def _connect_with_retry(self, max_retries: int = 3) -> duckdb.DuckDBPyConnection:
        """Connect to database with retry logic for lock handling."""
        for attempt in range(max_retries):
            try:
                return duckdb.connect(str(self.db_path))
            except duckdb.IOException as e:
                if "lock" in str(e).lower() and attempt < max_retries - 1:
                    wait_time = 0.5 * (2 ** attempt)  # Exponential backoff
                    logger.warning(f"Database locked, retrying in {wait_time}s...")
                    time.sleep(wait_time)
                else:
                    raise StorageError(f"Cannot open {self.db_path}: {e}") from e
            except duckdb.Error as e:
                raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        raise StorageError(f"Cannot open {self.db_path}")

    def _init_schema(self, conn: duckdb.DuckDBPyConnection) -> None:
        """Initialize database schema."""
        for statement in schema_statements():
            conn.execute(statement)
        logger.info(f"Cache database initialized at {self.db_path}")

    @contextmanager
    def _storage(self, operation: str) -> Iterator[None]:
        """Translate DuckDB errors into StorageError."""
        try:
            yield
        except duckdb.Error as e:
            raise StorageError(f"{operation} failed: {e}") from e

    def now(self) -> datetime:
        """Current time according to the store's clock."""
        return self._clock()

    def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -------------------------------------------------------------------------
    # Generic Cache Operations
    # -------------------------------------------------------------------------

    def upsert_entry(
        self,
        key: str,
        value: str,
        created_at: datetime,
        expires_at: datetime,
        metadata: Optional[str] = None,
    ) -> None:
        """Insert or replace a generic cache row in a single statement."""
        with self._storage(f"Storing cache entry {key!r}"):
            self.conn.execute(
                """
                INSERT INTO cache_entries
                (key, value, created_at, expires_at, metadata, last_accessed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (key)
                DO UPDATE SET
                    value = EXCLUDED.value,
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at,
                    metadata = EXCLUDED.metadata,
                    last_accessed_at = EXCLUDED.last_accessed_at
                """,
                [key, value, created_at, expires_at, metadata, created_at],
            )

    def fetch_entry(self, key: str) -> Optional[tuple]:
        """Raw row (key, value, created_at, expires_at, metadata, last_accessed_at)."""
        with self._storage(f"Reading cache entry {key!r}"):
            return self.conn.execute(
                """
                SELECT key, value, created_at, expires_at, metadata, last_accessed_at
                FROM cache_entries
                WHERE key = ?
                """,
                [key],
            ).fetchone()

    def entry_is_live(self, key: str, now: datetime) -> bool:
        with self._storage(f"Checking cache entry {key!r}"):
            count = self.conn.execute(
                "SELECT COUNT(*) FROM cache_entries WHERE key = ? AND expires_at > ?",
                [key, now],
            ).fetchone()[0]
        return count > 0

    def touch_entry(self, key: str, accessed_at: datetime) -> None:
        with self._storage(f"Touching cache entry {key!r}"):
            self.conn.execute(
                "UPDATE cache_entries SET last_accessed_at = ? WHERE key = ?",
                [accessed_at, key],
            )

    def delete_entry(self, key: str) -> None:
        with self._storage(f"Deleting cache entry {key!r}"):
            self.conn.execute("DELETE FROM cache_entries WHERE key = ?", [key])

    # -------------------------------------------------------------------------
    # File Cache Operations
    # -------------------------------------------------------------------------

    def write_file(self, key: str, data: bytes) -> Path:
        """Write bytes to a new, uniquely named file in the cache directory."""
        safe_key = _UNSAFE_FILENAME_CHARS.sub("_", key)[:64]
        path = self.cache_dir / f"{safe_key}-{uuid.uuid4().hex}"
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Writing cache file for {key!r} failed: {e}") from e
        return path

    def delete_file(self, path: Path) -> bool:
        """Delete an owned file. Already-missing files are skipped.

        Returns:
            True if a file was removed
        """
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Deleting cache file {path} failed: {e}") from e
        return True

    def upsert_file_entry(
        self,
        key: str,
        file_path: Path,
        size_bytes: int,
        mime_type: Optional[str],
        created_at: datetime,
        expires_at: datetime,
    ) -> Optional[Path]:
        """Insert or replace a file-cache row.

        Returns:
            Path of the file the replaced row pointed at, if any. The caller
            deletes it once the new row is committed.
        """
        with self._storage(f"Storing file entry {key!r}"):
            previous = self.conn.execute(
                "SELECT file_path FROM file_cache WHERE key = ?", [key]
            ).fetchone()
            self.conn.execute(
                """
                INSERT INTO file_cache
                (key, file_path, size_bytes, mime_type, created_at, expires_at, last_accessed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (key)
                DO UPDATE SET
                    file_path = EXCLUDED.file_path,
                    size_bytes = EXCLUDED.size_bytes,
                    mime_type = EXCLUDED.mime_type,
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at,
                    last_accessed_at = EXCLUDED.last_accessed_at
                """,
                [key, str(file_path), size_bytes, mime_type, created_at, expires_at, created_at],
            )

        if previous is None or Path(previous[0]) == file_path:
            return None
        return Path(previous[0])

    def fetch_file_entry(self, key: str) -> Optional[tuple]:
        """Raw row (key, file_path, size_bytes, mime_type, created_at, expires_at, last_accessed_at)."""
        with self._storage(f"Reading file entry {key!r}"):
            return self.conn.execute(
                """
                SELECT key, file_path, size_bytes, mime_type,
                       created_at, expires_at, last_accessed_at
                FROM file_cache
                WHERE key = ?
                """,
                [key],
            ).fetchone()

    def file_entry_is_live(self, key: str, now: datetime) -> bool:
        with self._storage(f"Checking file entry {key!r}"):
            count = self.conn.execute(
                "SELECT COUNT(*) FROM file_cache WHERE key = ? AND expires_at > ?",
                [key, now],
            ).fetchone()[0]
        return count > 0

    def touch_file_entry(self, key: str, accessed_at: datetime) -> None:
        with self._storage(f"Touching file entry {key!r}"):
            self.conn.execute(
                "UPDATE file_cache SET last_accessed_at = ? WHERE key = ?",
                [accessed_at, key],
            )

    def delete_file_entry(self, key: str, file_path: Optional[Path] = None) -> int:
        """Delete a file-cache row (not the file).

        Args:
            key: Entry key
            file_path: If given, only delete the row while it still points at
                this file, so a concurrent replacement survives.

        Returns:
            Number of rows deleted
        """
        with self._storage(f"Deleting file entry {key!r}"):
            if file_path is None:
                result = self.conn.execute("DELETE FROM file_cache WHERE key = ?", [key])
            else:
                result = self.conn.execute(
                    "DELETE FROM file_cache WHERE key = ? AND file_path = ?",
                    [key, str(file_path)],
                )
            return result.fetchone()[0]

    # -------------------------------------------------------------------------
    # Forecast Cache Operations
    # -------------------------------------------------------------------------

    def upsert_forecast(
        self,
        reach_id: str,
        forecast_class: str,
        payload: str,
        stored_at: datetime,
    ) -> None:
        """Store forecast in cache, replacing any row for the same pair."""
        with self._storage(f"Storing {forecast_class} forecast for {reach_id}"):
            self.conn.execute(
                """
                INSERT INTO forecast_cache (reach_id, forecast_class, payload, stored_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (reach_id, forecast_class)
                DO UPDATE SET
                    payload = EXCLUDED.payload,
                    stored_at = EXCLUDED.stored_at
                """,
                [reach_id, forecast_class, payload, stored_at],
            )

    def fetch_forecast(self, reach_id: str, forecast_class: str) -> Optional[tuple]:
        """Raw row (payload, stored_at) or None."""
        with self._storage(f"Reading {forecast_class} forecast for {reach_id}"):
            return self.conn.execute(
                """
                SELECT payload, stored_at
                FROM forecast_cache
                WHERE reach_id = ? AND forecast_class = ?
                """,
                [reach_id, forecast_class],
            ).fetchone()

    def delete_forecast(self, reach_id: str, forecast_class: str) -> None:
        with self._storage(f"Deleting {forecast_class} forecast for {reach_id}"):
            self.conn.execute(
                "DELETE FROM forecast_cache WHERE reach_id = ? AND forecast_class = ?",
                [reach_id, forecast_class],
            )

    # -------------------------------------------------------------------------
    # Return Period Cache Operations
    # -------------------------------------------------------------------------

    def upsert_return_periods(
        self,
        reach_id: str,
        payload: str,
        unit: str,
        stored_at: datetime,
    ) -> None:
        """Store return-period thresholds together with their unit tag."""
        with self._storage(f"Storing return periods for {reach_id}"):
            self.conn.execute(
                """
                INSERT INTO return_period_cache (reach_id, payload, unit, stored_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (reach_id)
                DO UPDATE SET
                    payload = EXCLUDED.payload,
                    unit = EXCLUDED.unit,
                    stored_at = EXCLUDED.stored_at
                """,
                [reach_id, payload, unit, stored_at],
            )

    def fetch_return_periods(self, reach_id: str) -> Optional[tuple]:
        """Raw row (payload, unit, stored_at) or None."""
        with self._storage(f"Reading return periods for {reach_id}"):
            return self.conn.execute(
                "SELECT payload, unit, stored_at FROM return_period_cache WHERE reach_id = ?",
                [reach_id],
            ).fetchone()

    def delete_return_periods(self, reach_id: str) -> None:
        with self._storage(f"Deleting return periods for {reach_id}"):
            self.conn.execute(
                "DELETE FROM return_period_cache WHERE reach_id = ?", [reach_id]
            )

    # -------------------------------------------------------------------------
    # Logging Operations
    # -------------------------------------------------------------------------

    def log_fetch(
        self,
        source: str,
        reach_id: str,
        status: str,
        duration_ms: int,
        error_message: Optional[str] = None,
    ) -> None:
        """Log a remote fetch attempt."""
        with self._storage("Writing fetch log"):
            self.conn.execute(
                """
                INSERT INTO fetch_log (source, reach_id, timestamp, status, duration_ms, error_message)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [source, reach_id, self.now(), status, duration_ms, error_message],
            )

    # -------------------------------------------------------------------------
    # Sweep Operations
    # -------------------------------------------------------------------------

    def delete_expired_entries(self, now: datetime) -> int:
        with self._storage("Sweeping cache entries"):
            return self.conn.execute(
                "DELETE FROM cache_entries WHERE expires_at <= ?", [now]
            ).fetchone()[0]

    def expired_file_entries(self, now: datetime) -> list[tuple[str, Path]]:
        """(key, file_path) of every expired file-cache row."""
        with self._storage("Listing expired file entries"):
            rows = self.conn.execute(
                "SELECT key, file_path FROM file_cache WHERE expires_at <= ?", [now]
            ).fetchall()
        return [(row[0], Path(row[1])) for row in rows]

    def delete_forecasts_stored_before(self, forecast_class: str, cutoff: datetime) -> int:
        with self._storage(f"Sweeping {forecast_class} forecasts"):
            return self.conn.execute(
                "DELETE FROM forecast_cache WHERE forecast_class = ? AND stored_at <= ?",
                [forecast_class, cutoff],
            ).fetchone()[0]

    def delete_return_periods_stored_before(self, cutoff: datetime) -> int:
        with self._storage("Sweeping return periods"):
            return self.conn.execute(
                "DELETE FROM return_period_cache WHERE stored_at <= ?", [cutoff]
            ).fetchone()[0]

    def delete_fetch_log_before(self, cutoff: datetime) -> int:
        with self._storage("Trimming fetch log"):
            return self.conn.execute(
                "DELETE FROM fetch_log WHERE timestamp < ?", [cutoff]
            ).fetchone()[0]

    def file_paths(self) -> list[Path]:
        """Every file path referenced by a file-cache row."""
        with self._storage("Listing file entries"):
            rows = self.conn.execute("SELECT file_path FROM file_cache").fetchall()
        return [Path(row[0]) for row in rows]

    def delete_all_rows(self) -> int:
        """Delete every row of every cache table.

        Returns:
            Number of rows deleted
        """
        deleted = 0
        with self._storage("Clearing cache tables"):
            for table in CACHE_TABLES:
                deleted += self.conn.execute(f"DELETE FROM {table}").fetchone()[0]
        return deleted

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def live_file_bytes(self, now: datetime) -> int:
        """Sum of size_bytes over non-expired file entries."""
        with self._storage("Summing file cache size"):
            return self.conn.execute(
                "SELECT COALESCE(SUM(size_bytes), 0) FROM file_cache WHERE expires_at > ?",
                [now],
            ).fetchone()[0]

    def storage_size_bytes(self) -> int:
        """Size of the DuckDB file and its write-ahead log on disk."""
        total = 0
        for path in (self.db_path, Path(f"{self.db_path}.wal")):
            if path.exists():
                total += path.stat().st_size
        return total

    def get_latest_fetch_time(self) -> Optional[datetime]:
        """Timestamp of the most recent successful fetch."""
        with self._storage("Reading fetch log"):
            result = self.conn.execute(
                "SELECT MAX(timestamp) FROM fetch_log WHERE status = 'success'"
            ).fetchone()
        return result[0] if result and result[0] else None

    def get_stats(self) -> dict:
        """Get cache statistics."""
        counts = {}
        with self._storage("Reading cache statistics"):
            for table in CACHE_TABLES + ("fetch_log",):
                counts[table] = self.conn.execute(
                    f"SELECT COUNT(*) FROM {table}"
                ).fetchone()[0]

        return {
            "entry_count": counts["cache_entries"],
            "file_count": counts["file_cache"],
            "forecast_count": counts["forecast_cache"],
            "return_period_count": counts["return_period_cache"],
            "fetch_log_count": counts["fetch_log"],
            "latest_fetch_time": self.get_latest_fetch_time(),
            "db_path": str(self.db_path),
            "cache_dir": str(self.cache_dir),
        }
