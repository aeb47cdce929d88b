"""Async client for the streamflow forecast API and return-period gateway.

Endpoints:
    {base_url}/reaches/{id}/streamflow?series=short_range   Forecasts
    {base_url}/reaches/{id}                                 Reach metadata
    {return_period_url}?comids={id}&key={api_key}           Return periods

Every failure (transport error, non-200 status, malformed body) surfaces as
FetchError so the fallback layer can serve stale cache instead.
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from riverforecast.api.schemas import ReturnPeriodResponse
from riverforecast.cache.models import DataCategory, FlowUnit, RawPayload
from riverforecast.config import (
    DEFAULT_API_BASE_URL,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_RETURN_PERIOD_URL,
    CacheConfig,
)
from riverforecast.exceptions import FetchError

logger = logging.getLogger(__name__)


class ForecastApiClient:
    """Fetch forecasts, reach metadata and return periods over HTTP.

    Example:
        >>> async with ForecastApiClient() as client:
        ...     payload = await client.fetch(DataCategory.SHORT_RANGE, "23021904")
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        return_period_url: str = DEFAULT_RETURN_PERIOD_URL,
        api_key: str = "",
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize client.

        Args:
            base_url: Forecast API base URL
            return_period_url: Return-period gateway endpoint
            api_key: Key for the return-period gateway
            timeout: Per-request timeout in seconds
            client: Shared httpx client; created (and owned) if not given
        """
        self.base_url = base_url.rstrip("/")
        self.return_period_url = return_period_url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @classmethod
    def from_config(cls, config: CacheConfig) -> "ForecastApiClient":
        return cls(
            base_url=config.api_base_url,
            return_period_url=config.return_period_url,
            api_key=config.api_key,
            timeout=config.fetch_timeout,
        )

    async def fetch(self, category: DataCategory, reach_id: str) -> RawPayload:
        """Fetch one document for a reach.

        Raises:
            FetchError: On transport failure, non-200 status or bad format
        """
        if category == DataCategory.RETURN_PERIOD:
            return await self._fetch_return_periods(reach_id)

        if category == DataCategory.REACH_INFO:
            data = await self._get_json(f"{self.base_url}/reaches/{reach_id}")
            return RawPayload(data)

        data = await self._get_json(
            f"{self.base_url}/reaches/{reach_id}/streamflow",
            params={"series": category.value},
        )
        if not isinstance(data, dict):
            raise FetchError(f"Unexpected forecast format for reach {reach_id}")
        return RawPayload(data)

    async def _fetch_return_periods(self, reach_id: str) -> RawPayload:
        data = await self._get_json(
            self.return_period_url,
            params={"comids": reach_id, "key": self.api_key},
        )
        # The gateway answers with a list, one element per requested comid
        if isinstance(data, list):
            if not data:
                raise FetchError(f"No return periods found for reach {reach_id}")
            data = data[0]

        try:
            response = ReturnPeriodResponse.model_validate(data)
        except ValidationError as e:
            raise FetchError(f"Invalid return period data for reach {reach_id}: {e}") from e

        thresholds = response.thresholds()
        if not thresholds:
            raise FetchError(f"No return periods found for reach {reach_id}")
        return RawPayload(
            {str(year): flow for year, flow in thresholds.items()},
            unit=FlowUnit.CMS,
        )

    async def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise FetchError(f"Request to {url} timed out") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Request to {url} failed: {e}") from e

        if response.status_code != 200:
            raise FetchError(
                f"Request to {url} returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise FetchError(
                f"Invalid JSON from {url}: {e}", status_code=response.status_code
            ) from e

    async def aclose(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ForecastApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
