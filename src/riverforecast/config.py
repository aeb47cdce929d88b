"""Runtime configuration for riverforecast.

Values come from environment variables with project-relative defaults:

    RIVERFORECAST_DB_PATH        DuckDB file (default data/cache/riverforecast.duckdb)
    RIVERFORECAST_CACHE_DIR      Directory for cached file blobs
    API_BASE_URL                 Forecast API base URL
    RETURN_PERIOD_API            Return-period gateway URL
    API_KEY                      Key sent to the return-period gateway
    RIVERFORECAST_FETCH_TIMEOUT  Remote fetch timeout in seconds
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

# Project root is 3 levels up from this file (src/riverforecast/config.py)
_PROJECT_ROOT = Path(__file__).parent.parent.parent

DEFAULT_DB_PATH = _PROJECT_ROOT / "data" / "cache" / "riverforecast.duckdb"
DEFAULT_CACHE_DIR = _PROJECT_ROOT / "data" / "cache" / "files"

DEFAULT_API_BASE_URL = "https://api.water.noaa.gov/nwps/v1"
DEFAULT_RETURN_PERIOD_URL = "https://nwm-api-updt-9f6idmxh.uc.gateway.dev/return-period"
DEFAULT_CONNECTIVITY_URL = "https://api.water.noaa.gov"

# Remote fetch timeout in seconds
DEFAULT_FETCH_TIMEOUT = 30.0


@dataclass
class CacheConfig:
    """Settings for the cache store and upstream API.

    Attributes:
        db_path: DuckDB file holding all cache tables
        cache_dir: Directory owned by the file cache
        api_base_url: Base URL of the forecast API
        return_period_url: Return-period gateway endpoint
        api_key: Key for the return-period gateway (may be empty)
        fetch_timeout: Remote fetch timeout in seconds
        connectivity_url: URL probed to decide whether we are online
    """

    db_path: Path = DEFAULT_DB_PATH
    cache_dir: Path = DEFAULT_CACHE_DIR
    api_base_url: str = DEFAULT_API_BASE_URL
    return_period_url: str = DEFAULT_RETURN_PERIOD_URL
    api_key: str = field(default="", repr=False)
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    connectivity_url: str = DEFAULT_CONNECTIVITY_URL

    @classmethod
    def from_env(cls, db_path: Optional[Path] = None) -> "CacheConfig":
        """Build config from environment variables.

        Args:
            db_path: Explicit DuckDB path, overrides RIVERFORECAST_DB_PATH

        Raises:
            ValueError: If RIVERFORECAST_FETCH_TIMEOUT is not a positive number
        """
        env_db = os.environ.get("RIVERFORECAST_DB_PATH")
        env_dir = os.environ.get("RIVERFORECAST_CACHE_DIR")

        resolved_db = db_path or (Path(env_db) if env_db else DEFAULT_DB_PATH)
        # Blobs live next to the database unless placed explicitly
        cache_dir = Path(env_dir) if env_dir else resolved_db.parent / "files"

        timeout = float(
            os.environ.get("RIVERFORECAST_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT)
        )
        if timeout <= 0:
            raise ValueError(f"Invalid fetch timeout: {timeout}. Must be > 0")

        return cls(
            db_path=resolved_db,
            cache_dir=cache_dir,
            api_base_url=os.environ.get("API_BASE_URL", DEFAULT_API_BASE_URL),
            return_period_url=os.environ.get(
                "RETURN_PERIOD_API", DEFAULT_RETURN_PERIOD_URL
            ),
            api_key=os.environ.get("API_KEY", ""),
            fetch_timeout=timeout,
        )
