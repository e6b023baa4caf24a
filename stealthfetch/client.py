"""The ``fetch_html`` contract.

Everything else in the package sits behind this: callers hand over a URL and
get back the rendered HTML (or raw body) or a typed FetchError.
"""

import asyncio
import logging
import time
from typing import Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, Field

from stealthfetch.config import Settings, settings as default_settings
from stealthfetch.core import metrics
from stealthfetch.core.exceptions import FetchError, FetchTimeoutError, InvalidURLError
from stealthfetch.core.fetch_context import bind_fetch_id
from stealthfetch.core.redis import ResilientRedis
from stealthfetch.services.browser_pool import BrowserPool
from stealthfetch.services.fallback import (
    DirectFetchStrategy,
    FallbackChain,
    FetchResult,
    FetchStrategy,
    MirrorStrategy,
    ProxyListStrategy,
    RelayStrategy,
)
from stealthfetch.services.http_fetch import HttpFetcher
from stealthfetch.services.navigator import ResilientNavigator
from stealthfetch.services.proxy_list import ProxyList
from stealthfetch.services.scrape_cache import ScrapeCache
from stealthfetch.services.stealth import StealthProfileProvider
from stealthfetch.services.tabs import TabManager

logger = logging.getLogger(__name__)

# Share of the caller's remaining time handed to the fallback chain, so its
# own AggregateFetchError arrives before the caller's deadline
_CHAIN_BUDGET_FRACTION = 0.95


class FetchOptions(BaseModel):
    timeout: float | None = Field(default=None, gt=0)  # seconds, whole call
    max_retries: int | None = Field(default=None, ge=1)
    use_cache: bool = True
    ttl: int | None = Field(default=None, ge=1)  # seconds
    expect: Literal["html", "json", "any"] = "html"
    variant: str | None = None  # cache-key tag, defaults to expect

    @property
    def cache_variant(self) -> str:
        return self.variant or self.expect


def _check_url(url: str):
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise InvalidURLError(f"Not an http(s) URL: {url!r}", url=url)


class StealthFetcher:
    """Wires provider, pool, tabs, navigator, chain and cache from one Settings."""

    def __init__(
        self,
        config: Settings | None = None,
        redis: ResilientRedis | None = None,
        launcher=None,
        http: HttpFetcher | None = None,
        strategies: list[FetchStrategy] | None = None,
    ):
        self.settings = config or default_settings
        s = self.settings
        self.provider = StealthProfileProvider(s)
        self.pool = BrowserPool(s, self.provider, launcher=launcher)
        self.tabs = TabManager(self.pool, s, self.provider)
        self.navigator = ResilientNavigator(self.tabs, s, self.provider)
        self.http = http or HttpFetcher(s)
        if strategies is None:
            strategies = [
                RelayStrategy(self.navigator, budget_share=s.RELAY_BUDGET_SHARE),
                DirectFetchStrategy(self.http),
            ]
            if s.PROXY_LIST_ENABLED and s.PROXY_LIST_URL:
                strategies.append(
                    ProxyListStrategy(
                        self.http,
                        ProxyList(self.http, s),
                        request_timeout=s.PROXY_LIST_REQUEST_TIMEOUT,
                        max_proxies=s.PROXY_LIST_MAX_PROXIES,
                    )
                )
            strategies.append(MirrorStrategy(self.http, s.MIRROR_HOSTS))
        self.chain = FallbackChain(strategies, s)
        self.cache = ScrapeCache(redis, s)

    async def start(self):
        """Launch the browser pool now instead of on first browser use."""
        await self.pool.start()

    async def shutdown(self):
        await self.pool.shutdown()
        await self.http.aclose()
        await self.cache.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    async def _fetch(self, url: str, options: FetchOptions, deadline: float) -> FetchResult:
        async def compute():
            budget = (deadline - time.monotonic()) * _CHAIN_BUDGET_FRACTION
            return await self.chain.fetch(
                url,
                expect=options.expect,
                timeout=max(budget, 0.001),
                max_attempts=options.max_retries,
            )

        if options.use_cache:
            return await self.cache.get_or_fetch(
                url, compute, ttl=options.ttl, variant=options.cache_variant
            )
        return await compute()

    async def fetch(self, url: str, options: FetchOptions | dict | None = None) -> FetchResult:
        """Fetch ``url`` through cache and fallback chain within one deadline.

        On expiry the in-flight work is cancelled (leases and permits are
        released by their scoped cleanup) and FetchTimeoutError is raised.
        """
        if options is None:
            options = FetchOptions()
        elif isinstance(options, dict):
            options = FetchOptions.model_validate(options)
        _check_url(url)
        timeout = options.timeout or self.settings.FETCH_TIMEOUT
        start = time.monotonic()

        with bind_fetch_id():
            logger.info(f"Fetching {url} (expect={options.expect}, cache={options.use_cache})")
            try:
                result = await asyncio.wait_for(
                    self._fetch(url, options, start + timeout), timeout=timeout
                )
            except FetchError as e:
                self._record("failure", start)
                logger.warning(f"Fetch of {url} failed: {e.kind}: {e}")
                raise
            except asyncio.TimeoutError:
                self._record("timeout", start)
                logger.warning(f"Fetch of {url} timed out after {timeout:.1f}s")
                raise FetchTimeoutError("fetch", timeout, url=url) from None

            self._record("cached" if result.from_cache else "success", start)
            return result

    async def fetch_html(self, url: str, options: FetchOptions | dict | None = None) -> str:
        return (await self.fetch(url, options)).content

    def _record(self, status: str, start: float):
        if self.settings.METRICS_ENABLED:
            metrics.fetch_requests_total.labels(status=status).inc()
            metrics.fetch_duration_seconds.observe(time.monotonic() - start)

    def stats(self) -> dict:
        return {
            "tabs": self.tabs.stats(),
            "cache_inflight": self.cache.inflight_count,
            "strategies": [strategy.name for strategy in self.chain.strategies],
        }


_default_fetcher: StealthFetcher | None = None


def get_fetcher() -> StealthFetcher:
    global _default_fetcher
    if _default_fetcher is None:
        _default_fetcher = StealthFetcher()
    return _default_fetcher


async def fetch_html(url: str, options: FetchOptions | dict | None = None) -> str:
    """Rendered HTML (or raw body) for ``url`` using the process-wide fetcher."""
    return await get_fetcher().fetch_html(url, options)


async def shutdown():
    global _default_fetcher
    if _default_fetcher is not None:
        await _default_fetcher.shutdown()
        _default_fetcher = None
