"""Connectivity probes consulted before every remote fetch."""

import logging
from typing import Optional

import httpx

from riverforecast.config import DEFAULT_CONNECTIVITY_URL

logger = logging.getLogger(__name__)

# Seconds to wait for the probe request
DEFAULT_PROBE_TIMEOUT = 5.0


class StaticConnectivity:
    """Fixed answer; for tests and forced offline mode."""

    def __init__(self, online: bool = True):
        self.online = online

    async def is_online(self) -> bool:
        return self.online


class HttpConnectivityProbe:
    """Online iff a HEAD request to ``url`` gets any HTTP response.

    An error status still proves the network is reachable; only transport
    failures (DNS, connect, timeout) count as offline.
    """

    def __init__(
        self,
        url: str = DEFAULT_CONNECTIVITY_URL,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def is_online(self) -> bool:
        try:
            await self._client.head(self.url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Connectivity probe to {self.url} failed: {e}")
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
