"""
Connectivity checks for the generation service

The GenerationClient asks a ConnectivityChecker before every request; when
offline it fails fast with OfflineError and no network attempt is made.

Implementations:
- HttpConnectivityProbe: HEAD request to the generation host (aiohttp),
  result cached for a few seconds
- StaticConnectivity: fixed state (forced offline mode, tests)
"""

import asyncio
import logging
import time
from typing import Optional, Protocol

import aiohttp

logger = logging.getLogger(__name__)


class ConnectivityChecker(Protocol):
    async def is_online(self) -> bool:
        ...


class StaticConnectivity:
    """Connectivity that is whatever it was set to"""

    def __init__(self, online: bool = True):
        self.online = online
        self.checks = 0

    async def is_online(self) -> bool:
        self.checks += 1
        return self.online


class HttpConnectivityProbe:
    """
    Probe a URL with a HEAD request.

    Any HTTP response (even 4xx) means the host is reachable. Results are
    cached for `cache_seconds` so bursts of requests share one probe.
    """

    def __init__(
        self,
        url: Optional[str],
        timeout_seconds: float = 3.0,
        cache_seconds: float = 5.0,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.cache_seconds = cache_seconds
        self._last_result: Optional[bool] = None
        self._last_checked: float = 0.0
        self._lock = asyncio.Lock()

    async def is_online(self) -> bool:
        if not self.url:
            # Nothing to probe; let the generator call decide
            return True

        async with self._lock:
            now = time.monotonic()
            if self._last_result is not None and now - self._last_checked < self.cache_seconds:
                return self._last_result

            online = await self._probe()
            if online != self._last_result and self._last_result is not None:
                logger.warning(f"🌐 Connectivity changed: {'online' if online else 'OFFLINE'}")
            self._last_result = online
            self._last_checked = now
            return online

    async def _probe(self) -> bool:
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.head(self.url, allow_redirects=True) as response:
                    logger.debug(f"Connectivity probe {self.url} -> {response.status}")
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.info(f"Connectivity probe failed for {self.url}: {e}")
            return False
