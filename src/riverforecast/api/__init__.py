"""Upstream API collaborators for riverforecast.

This module provides:

- ForecastApiClient: async httpx client for forecasts, reach metadata and
  return periods
- ReturnPeriodResponse: Response schema for the return-period gateway
- HttpConnectivityProbe / StaticConnectivity: online checks for the
  fallback layer
"""

from riverforecast.api.client import ForecastApiClient
from riverforecast.api.connectivity import HttpConnectivityProbe, StaticConnectivity
from riverforecast.api.schemas import ReturnPeriodResponse

__all__ = [
    "ForecastApiClient",
    "HttpConnectivityProbe",
    "ReturnPeriodResponse",
    "StaticConnectivity",
]
