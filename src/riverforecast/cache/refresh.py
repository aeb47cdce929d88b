"""Background refresh for cache pre-warming.

Refreshes forecasts and return periods for a list of bookmarked reaches so
they are available offline. Run periodically via cron:

    # Every 2 hours, matching the short-range forecast TTL
    0 */2 * * * python -m riverforecast.cache.refresh --reach 23021904

Usage:
    python -m riverforecast.cache.refresh --reach 23021904 --reach 15039097
    python -m riverforecast.cache.refresh --reach 23021904 --force
    python -m riverforecast.cache.refresh --reach 23021904 --status
"""

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Iterable, Optional

from riverforecast.cache.fallback import FallbackFetcher
from riverforecast.cache.models import CacheResult, CacheSource, ForecastClass
from riverforecast.cache.repository import ForecastRepository
from riverforecast.cache.service import CacheService
from riverforecast.cache.ttl import is_return_period_stale
from riverforecast.config import CacheConfig
from riverforecast.exceptions import RiverForecastError

logger = logging.getLogger(__name__)

# Pause between reaches so a long bookmark list doesn't hammer the API
DEFAULT_DELAY_SECONDS = 0.5


@dataclass
class RefreshResult:
    """Result of a refresh operation."""

    total: int
    success: int
    failed: int
    skipped: int
    duration_ms: int

    @property
    def success_rate(self) -> float:
        """Percentage of successful refreshes."""
        if self.total == 0:
            return 0.0
        return (self.success / self.total) * 100

    def __str__(self) -> str:
        return (
            f"Refresh complete: {self.success}/{self.total} successful, "
            f"{self.failed} failed, {self.skipped} skipped "
            f"({self.duration_ms}ms)"
        )


async def refresh_reaches(
    fallback: FallbackFetcher,
    reach_ids: Iterable[str],
    forecast_classes: Optional[list[ForecastClass]] = None,
    include_return_periods: bool = True,
    force: bool = False,
    delay_seconds: float = 0.0,
) -> RefreshResult:
    """Refresh cached data for bookmarked reaches.

    Fresh cache entries are skipped unless ``force`` is set. A refresh that
    could only serve stale data counts as failed.

    Args:
        fallback: Orchestrator used for every lookup
        reach_ids: Reaches to refresh
        forecast_classes: Horizons to refresh. Defaults to all three.
        include_return_periods: Refresh return-period thresholds too
        force: Fetch even if the cache is fresh
        delay_seconds: Pause between reaches (rate limiting)

    Returns:
        RefreshResult with counts of successful/failed/skipped lookups
    """
    if forecast_classes is None:
        forecast_classes = list(ForecastClass)
    reach_ids = list(reach_ids)
    start_time = time.time()

    success = 0
    failed = 0
    skipped = 0

    per_reach = len(forecast_classes) + (1 if include_return_periods else 0)
    total = len(reach_ids) * per_reach
    logger.info(f"Starting refresh for {len(reach_ids)} reaches ({total} lookups)...")

    for i, reach_id in enumerate(reach_ids, 1):
        if i > 1 and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

        lookups = [
            (
                forecast_class.value,
                partial(
                    fallback.get_forecast, reach_id, forecast_class, force_refresh=force
                ),
            )
            for forecast_class in forecast_classes
        ]
        if include_return_periods:
            lookups.append(
                ("return_period", partial(fallback.get_return_periods, reach_id, force_refresh=force))
            )

        for label, lookup in lookups:
            try:
                result: CacheResult = await lookup()
            except RiverForecastError as e:
                logger.error(f"[{i}/{len(reach_ids)}] {reach_id} {label}: failed - {e}")
                failed += 1
                continue

            if result.source == CacheSource.NETWORK:
                logger.info(f"[{i}/{len(reach_ids)}] {reach_id} {label}: refreshed")
                success += 1
            elif result.source == CacheSource.CACHE:
                logger.debug(f"[{i}/{len(reach_ids)}] {reach_id} {label}: cache fresh")
                skipped += 1
            else:
                logger.warning(
                    f"[{i}/{len(reach_ids)}] {reach_id} {label}: "
                    f"stale data kept (stored {result.stored_at})"
                )
                failed += 1

    duration_ms = int((time.time() - start_time) * 1000)

    result = RefreshResult(
        total=total,
        success=success,
        failed=failed,
        skipped=skipped,
        duration_ms=duration_ms,
    )

    logger.info(str(result))
    return result


def get_cache_status(service: CacheService, reach_ids: Iterable[str]) -> dict:
    """Get current cache status for the given reaches.

    Args:
        service: Cache access layer
        reach_ids: Reaches to report on

    Returns:
        Dict with cache statistics and per-reach status
    """
    stats = service.db.get_stats()
    now = service.db.now()

    reach_status = []
    for reach_id in reach_ids:
        forecasts = {
            forecast_class.value: not service.is_forecast_stale(reach_id, forecast_class)
            for forecast_class in ForecastClass
        }
        record = service.get_cached_return_periods(reach_id, ignore_expiry=True)
        reach_status.append({
            "reach_id": reach_id,
            "forecasts": forecasts,
            "return_periods_cached": record is not None,
            "return_periods_fresh": record is not None and not record.is_expired(now),
            "return_periods_outdated": (
                record is not None and is_return_period_stale(record.stored_at, now)
            ),
        })

    return {
        "db_path": stats["db_path"],
        "total_reaches": len(reach_status),
        "forecast_count": stats["forecast_count"],
        "return_period_count": stats["return_period_count"],
        "latest_fetch_time": stats["latest_fetch_time"],
        "reaches": reach_status,
    }


def print_status(status: dict) -> None:
    """Print cache status in human-readable format."""
    print()
    print("=" * 60)
    print("River Forecast Cache Status")
    print("=" * 60)
    print(f"Database: {status['db_path']}")
    print(f"Bookmarked reaches: {status['total_reaches']}")
    print(f"Total forecast records: {status['forecast_count']}")
    print(f"Total return period records: {status['return_period_count']}")

    if status["latest_fetch_time"]:
        print(f"Latest successful fetch: {status['latest_fetch_time']}")

    print()
    print("Reach Status:")
    print("-" * 60)

    for reach in status["reaches"]:
        forecasts = " ".join(
            f"{name.split('_')[0]}:{'OK' if fresh else 'STALE'}"
            for name, fresh in reach["forecasts"].items()
        )
        if not reach["return_periods_cached"]:
            rp_status = "MISSING"
        elif reach["return_periods_outdated"]:
            rp_status = "OLD"
        elif not reach["return_periods_fresh"]:
            rp_status = "STALE"
        else:
            rp_status = "OK"

        print(f"  {reach['reach_id']:<12} {forecasts} RP:{rp_status}")

    print("=" * 60)


async def _run(args: argparse.Namespace) -> int:
    config = CacheConfig.from_env(db_path=args.db)
    async with ForecastRepository(config) as repo:
        if args.status:
            print_status(get_cache_status(repo.service, args.reach))
            return 0

        result = await refresh_reaches(
            repo.fallback,
            args.reach,
            include_return_periods=not args.no_return_periods,
            force=args.force,
            delay_seconds=args.delay,
        )
        return 1 if result.failed > 0 else 0


def main():
    """CLI entry point for background refresh."""
    parser = argparse.ArgumentParser(
        description="Pre-warm the river forecast cache for bookmarked reaches",
        epilog="""
Examples:
  python -m riverforecast.cache.refresh --reach 23021904           # Refresh one reach
  python -m riverforecast.cache.refresh --reach 23021904 --status  # Show status

Cron setup (refresh every 2 hours):
  0 */2 * * * cd /path/to/riverforecast && python -m riverforecast.cache.refresh --reach 23021904 >> /var/log/riverforecast-refresh.log 2>&1
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--reach",
        action="append",
        required=True,
        metavar="REACH_ID",
        help="Reach to refresh (repeatable)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Force refresh even if cache is fresh",
    )
    parser.add_argument(
        "--no-return-periods",
        action="store_true",
        help="Skip return-period thresholds",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=DEFAULT_DELAY_SECONDS,
        help=f"Seconds to wait between reaches (default: {DEFAULT_DELAY_SECONDS})",
    )
    parser.add_argument(
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

    # Configure logging
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

    try:
        return asyncio.run(_run(args))
    except Exception as e:
        logger.error(f"Refresh failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
