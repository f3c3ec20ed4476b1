"""
IP Geolocation

Best-effort enrichment of healthy peers with ipinfo.io data. Lookups are
cached per IP; failures are logged and never propagate to the scanner.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import aiohttp
import cachetools

IPINFO_API_URL = "https://ipinfo.io"

# Fields kept from an ipinfo.io response
GEO_FIELDS = ('hostname', 'city', 'region', 'country', 'loc', 'org', 'timezone')


@dataclass
class GeoConfig:
    """Configuration for GeoLocator."""
    token: Optional[str] = None
    request_timeout: float = 10.0
    cache_size: int = 5000
    cache_age: float = 7 * 24 * 60 * 60


class GeoLocator:
    """
    ipinfo.io client with a TTL result cache.

    Usage:
        geo = GeoLocator(GeoConfig(token="..."))
        await geo.start()
        info = await geo.lookup("1.2.3.4")
        await geo.stop()
    """

    def __init__(self, config: Optional[GeoConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or GeoConfig()
        self._logger = logging.getLogger("GeoLocator")
        self._session: Optional[aiohttp.ClientSession] = None
        self._cache = cachetools.TTLCache(
            maxsize=self.config.cache_size, ttl=self.config.cache_age, timer=clock
        )

    @property
    def enabled(self) -> bool:
        return bool(self.config.token)

    async def start(self) -> None:
        if not self.enabled:
            self._logger.warning("missing IPINFOTOKEN; IP info will not be available")
            return
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def lookup(self, ip: str) -> Optional[Dict[str, str]]:
        """Location info for `ip`, or None when disabled or on error."""
        if not self.enabled:
            return None

        cached = self._cache.get(ip)
        if cached is not None:
            return cached

        if self._session is None:
            await self.start()

        try:
            async with self._session.get(
                f"{IPINFO_API_URL}/{ip}",
                params={"token": self.config.token},
                headers={"Accept": "application/json"},
            ) as response:
                if response.status != 200:
                    self._logger.warning(f"ipinfo lookup for {ip} failed: {response.status}")
                    return None
                data = await response.json()
        except (aiohttp.ClientError, ValueError) as e:
            self._logger.warning(f"ipinfo lookup for {ip} error: {e}")
            return None
        except asyncio.TimeoutError:
            self._logger.warning(f"ipinfo lookup for {ip} timed out")
            return None

        if not isinstance(data, dict) or data.get('error') or data.get('bogon'):
            return None

        info = {k: str(data[k]) for k in GEO_FIELDS if data.get(k)}
        self._cache[ip] = info
        return info
