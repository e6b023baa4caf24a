"""Public proxy list for the proxied direct-fetch tier.

The list is downloaded from PROXY_LIST_URL on first use and reused for
PROXY_LIST_TTL seconds.
"""

import asyncio
import logging
import time

from stealthfetch.config import Settings, settings as default_settings
from stealthfetch.core.exceptions import ProxyError
from stealthfetch.services.http_fetch import HttpFetcher, decode_body
from stealthfetch.services.proxy import Proxy, parse_proxy_list

logger = logging.getLogger(__name__)


class ProxyList:
    def __init__(self, http: HttpFetcher, config: Settings | None = None, clock=time.monotonic):
        self._http = http
        self._settings = config or default_settings
        self._clock = clock
        self._proxies: list[Proxy] | None = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        if self._proxies is None:
            return False
        return self._clock() - self._loaded_at < self._settings.PROXY_LIST_TTL

    async def get(self) -> list[Proxy]:
        if self._fresh():
            return self._proxies
        async with self._lock:
            if not self._fresh():
                self._proxies = await self._load()
                self._loaded_at = self._clock()
        return self._proxies

    async def _load(self) -> list[Proxy]:
        url = self._settings.PROXY_LIST_URL
        response = await self._http.fetch_mirror(
            url, self._settings.PROXY_LIST_REQUEST_TIMEOUT, expect="any"
        )
        if response.status_code >= 400:
            raise ProxyError(f"Proxy list {url} returned HTTP {response.status_code}", url=url)
        proxies = parse_proxy_list(decode_body(response.body, response.content_type))
        logger.info(f"Loaded {len(proxies)} proxies from {url}")
        return proxies
