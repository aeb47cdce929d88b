"""Cache maintenance: TTL sweep, full clear and size accounting.

Sweeps are idempotent and safe to run at any time, including while the
application is serving requests from the same process.

Usage:
    python -m riverforecast.cache.maintenance            # Sweep expired data
    python -m riverforecast.cache.maintenance --clear    # Delete everything
    python -m riverforecast.cache.maintenance --status   # Show cache status
"""

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from riverforecast.cache.database import CacheDatabase
from riverforecast.cache.models import ForecastClass
from riverforecast.cache.ttl import (
    FETCH_LOG_RETENTION,
    RETURN_PERIOD_EVICTION_TTL,
    forecast_ttl,
)
from riverforecast.config import CacheConfig

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Rows and files removed by one sweep."""

    entries: int = 0
    files: int = 0
    forecasts: int = 0
    return_periods: int = 0
    fetch_log: int = 0
    orphan_files: int = 0
    duration_ms: int = 0

    @property
    def total(self) -> int:
        """Cache rows removed (fetch log and orphan files not included)."""
        return self.entries + self.files + self.forecasts + self.return_periods

    def __str__(self) -> str:
        return (
            f"Sweep complete: {self.total} expired rows removed "
            f"({self.entries} entries, {self.files} files, {self.forecasts} forecasts, "
            f"{self.return_periods} return periods), "
            f"{self.fetch_log} fetch log rows, {self.orphan_files} orphan files "
            f"({self.duration_ms}ms)"
        )


class CacheSweeper:
    """Eviction and housekeeping over a CacheDatabase."""

    def __init__(self, db: CacheDatabase):
        self.db = db

    def sweep_expired(self) -> SweepResult:
        """Delete every expired row of every kind.

        File entries lose their file first, then their row. Files in the
        cache directory that no row references are removed as well.
        """
        start_time = time.time()
        now = self.db.now()
        result = SweepResult()

        result.entries = self.db.delete_expired_entries(now)

        for key, path in self.db.expired_file_entries(now):
            self.db.delete_file(path)
            result.files += self.db.delete_file_entry(key, path)

        for forecast_class in ForecastClass:
            result.forecasts += self.db.delete_forecasts_stored_before(
                forecast_class.value, now - forecast_ttl(forecast_class)
            )

        result.return_periods = self.db.delete_return_periods_stored_before(
            now - RETURN_PERIOD_EVICTION_TTL
        )
        result.fetch_log = self.db.delete_fetch_log_before(now - FETCH_LOG_RETENTION)
        result.orphan_files = self._remove_orphan_files()

        result.duration_ms = int((time.time() - start_time) * 1000)
        if result.total or result.orphan_files:
            logger.info(str(result))
        else:
            logger.debug(str(result))
        return result

    def _remove_orphan_files(self) -> int:
        """Delete files in the cache directory that no row points at."""
        if not self.db.cache_dir.is_dir():
            return 0
        referenced = {path.resolve() for path in self.db.file_paths()}
        removed = 0
        for path in self.db.cache_dir.iterdir():
            if path.is_file() and path.resolve() not in referenced:
                if self.db.delete_file(path):
                    logger.debug(f"Removed orphan cache file {path.name}")
                    removed += 1
        return removed

    def clear_all(self) -> int:
        """Delete all cached rows of every kind and every owned file.

        The fetch log is kept.

        Returns:
            Number of cache rows deleted
        """
        files_removed = 0
        for path in self.db.file_paths():
            if self.db.delete_file(path):
                files_removed += 1

        deleted = self.db.delete_all_rows()
        files_removed += self._remove_orphan_files()
        logger.info(f"Cleared cache: {deleted} rows, {files_removed} files")
        return deleted

    def total_size_bytes(self) -> int:
        """Approximate on-disk footprint: live file blobs plus the database."""
        return self.db.live_file_bytes(self.db.now()) + self.db.storage_size_bytes()

    def get_stats(self) -> dict:
        """Row counts per table, total size and locations."""
        stats = self.db.get_stats()
        stats["total_size_bytes"] = self.total_size_bytes()
        return stats

    async def sweep_periodically(self, interval: float, stop_event: asyncio.Event) -> None:
        """Sweep every ``interval`` seconds until ``stop_event`` is set.

        Sweep failures are logged and the loop keeps going.
        """
        if interval <= 0:
            raise ValueError(f"Invalid sweep interval: {interval}. Must be > 0")

        logger.info(f"Starting periodic cache sweep every {interval}s")
        while not stop_event.is_set():
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error(f"Periodic sweep failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Periodic cache sweep stopped")


def _format_bytes(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def print_status(stats: dict) -> None:
    """Print cache statistics in human-readable format."""
    print()
    print("=" * 60)
    print("River Forecast Cache Status")
    print("=" * 60)
    print(f"Database: {stats['db_path']}")
    print(f"File directory: {stats['cache_dir']}")
    print(f"Total size: {_format_bytes(stats['total_size_bytes'])}")
    print()
    print(f"Generic entries: {stats['entry_count']}")
    print(f"File entries: {stats['file_count']}")
    print(f"Forecast records: {stats['forecast_count']}")
    print(f"Return period records: {stats['return_period_count']}")
    print(f"Fetch log rows: {stats['fetch_log_count']}")

    if stats["latest_fetch_time"]:
        print(f"Latest successful fetch: {stats['latest_fetch_time']}")

    print("=" * 60)


def main():
    """CLI entry point for cache maintenance."""
    parser = argparse.ArgumentParser(
        description="Sweep, clear or inspect the river forecast cache",
        epilog="""
Examples:
  python -m riverforecast.cache.maintenance           # Sweep expired data
  python -m riverforecast.cache.maintenance --status  # Show status

Cron setup (sweep every 6 hours):
  0 */6 * * * cd /path/to/riverforecast && python -m riverforecast.cache.maintenance
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--sweep",
        action="store_true",
        help="Delete expired data (default)",
    )
    action.add_argument(
        "--clear",
        action="store_true",
        help="Delete all cached data",
    )
    action.add_argument(
        "--status",
        action="store_true",
        help="Show current cache status",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Database path (default: $RIVERFORECAST_DB_PATH or data/cache/)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress output except errors",
    )

    args = parser.parse_args()

    if args.quiet:
        level = logging.ERROR
    elif args.verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    config = CacheConfig.from_env(db_path=args.db)
    db = CacheDatabase(config.db_path, config.cache_dir)
    sweeper = CacheSweeper(db)

    try:
        if args.status:
            print_status(sweeper.get_stats())
        elif args.clear:
            deleted = sweeper.clear_all()
            if not args.quiet:
                print(f"Cleared {deleted} cached rows")
        else:
            result = sweeper.sweep_expired()
            if not args.quiet:
                print(result)
        return 0

    except Exception as e:
        logger.error(f"Maintenance failed: {e}")
        return 1

    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
