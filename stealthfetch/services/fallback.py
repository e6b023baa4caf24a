import asyncio
import json
import logging
import time
from dataclasses import dataclass, field

from stealthfetch.config import Settings, settings as default_settings
from stealthfetch.core import metrics
from stealthfetch.core.exceptions import (
    AggregateFetchError,
    ConfigError,
    ContentValidationError,
    FetchError,
    FetchTimeoutError,
    ProxyError,
)
from stealthfetch.services.http_fetch import (
    HttpFetcher,
    mirror_urls,
    validate_response,
    validate_text,
)
from stealthfetch.services.navigator import ResilientNavigator
from stealthfetch.services.proxy_list import ProxyList

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    content: str
    content_type: str = "text/html"
    status_code: int = 200
    strategy: str = ""
    url: str = ""
    attempts: int = 1
    from_cache: bool = False
    elapsed: float = field(default=0.0, compare=False)

    def json(self):
        return json.loads(self.content)


class FetchStrategy:
    """One way of getting a URL's content. Subclasses implement ``attempt``."""

    name = "base"
    # Fraction of the chain's remaining time this strategy may use while later
    # strategies are pending. None: a single request timeout.
    budget_share: float | None = None

    def applicable(self, url: str, expect: str) -> bool:
        return True

    async def attempt(
        self, url: str, expect: str, timeout: float, max_attempts: int | None = None
    ) -> FetchResult:
        raise NotImplementedError


class RelayStrategy(FetchStrategy):
    """Browser-driven fetch through the web-proxy relay."""

    name = "relay"
    budget_share = 0.6

    def __init__(
        self,
        navigator: ResilientNavigator,
        max_attempts: int | None = None,
        budget_share: float | None = None,
    ):
        self._navigator = navigator
        self._max_attempts = max_attempts
        if budget_share is not None:
            self.budget_share = budget_share

    def applicable(self, url: str, expect: str) -> bool:
        # The relay renders pages inside its own frame; raw JSON does not survive it
        return expect != "json"

    async def attempt(
        self, url: str, expect: str, timeout: float, max_attempts: int | None = None
    ) -> FetchResult:
        nav = await self._navigator.run(
            url, max_attempts=max_attempts or self._max_attempts, timeout=timeout
        )
        content = validate_text(nav.content, "text/html", "html", url=url)
        return FetchResult(
            content=content,
            content_type="text/html",
            strategy=self.name,
            url=nav.url,
            attempts=nav.attempts,
        )


class DirectFetchStrategy(FetchStrategy):
    """Stealth-header HTTP fetch of the target URL itself."""

    name = "direct"

    def __init__(self, http: HttpFetcher):
        self._http = http

    async def attempt(
        self, url: str, expect: str, timeout: float, max_attempts: int | None = None
    ) -> FetchResult:
        response = await self._http.fetch_direct(url, timeout, expect=expect)
        content = validate_response(response, expect)
        return FetchResult(
            content=content,
            content_type=response.content_type,
            status_code=response.status_code,
            strategy=self.name,
            url=response.url or url,
        )


class ProxyListStrategy(FetchStrategy):
    """The direct fetch again, through public proxies until one is not blocked."""

    name = "proxy_list"
    budget_share = 0.5

    def __init__(
        self,
        http: HttpFetcher,
        proxies: ProxyList,
        request_timeout: float = 6.0,
        max_proxies: int = 20,
    ):
        self._http = http
        self._proxies = proxies
        self._request_timeout = request_timeout
        self._max_proxies = max_proxies

    async def attempt(
        self, url: str, expect: str, timeout: float, max_attempts: int | None = None
    ) -> FetchResult:
        candidates = (await self._proxies.get())[: self._max_proxies]
        if not candidates:
            raise ProxyError("Proxy list is empty", url=url)
        request_timeout = min(timeout, self._request_timeout)
        last_error: FetchError | None = None
        for proxy in candidates:
            try:
                response = await self._http.fetch_via_proxy(
                    url, proxy, request_timeout, expect=expect
                )
                # ISP block pages come back as 200s and fail validation here
                content = validate_response(response, expect)
            except ConfigError:
                raise
            except FetchError as e:
                logger.debug(f"Proxy {proxy} failed for {url}: {e.kind}: {e}")
                last_error = e
                continue
            logger.info(f"Fetched {url} through proxy {proxy}")
            return FetchResult(
                content=content,
                content_type=response.content_type,
                status_code=response.status_code,
                strategy=self.name,
                url=response.url or url,
            )
        raise last_error


class MirrorStrategy(FetchStrategy):
    """Same resource from the configured alternate/API hosts, in order."""

    name = "mirror"

    def __init__(self, http: HttpFetcher, mirror_hosts: dict[str, list[str]]):
        self._http = http
        self._mirror_hosts = mirror_hosts

    def applicable(self, url: str, expect: str) -> bool:
        return bool(mirror_urls(url, self._mirror_hosts))

    async def attempt(
        self, url: str, expect: str, timeout: float, max_attempts: int | None = None
    ) -> FetchResult:
        last_error: FetchError | None = None
        candidates = mirror_urls(url, self._mirror_hosts)
        for candidate in candidates:
            try:
                response = await self._http.fetch_mirror(candidate, timeout, expect=expect)
                content = validate_response(response, expect)
            except ConfigError:
                raise
            except FetchError as e:
                logger.debug(f"Mirror {candidate} failed: {e}")
                last_error = e
                continue
            return FetchResult(
                content=content,
                content_type=response.content_type,
                status_code=response.status_code,
                strategy=self.name,
                url=response.url or candidate,
            )
        if last_error is not None:
            raise last_error
        raise ContentValidationError(f"No mirror configured for {url}", url=url)


class FallbackChain:
    """Try strategies in order and return the first validated result.

    Every strategy failure except ConfigError falls through to the next one;
    when none succeeds an AggregateFetchError carries each strategy's error.

    All strategies share one deadline. A strategy with a ``budget_share``
    gets that fraction of the time left while later strategies are pending,
    the others get one request timeout (DEFAULT_TIMEOUT), and the last
    strategy may use whatever remains.
    """

    def __init__(self, strategies: list[FetchStrategy], config: Settings | None = None):
        self._strategies = list(strategies)
        self._settings = config or default_settings

    @property
    def strategies(self) -> list[FetchStrategy]:
        return list(self._strategies)

    def _budget(self, strategy: FetchStrategy, remaining: float, last: bool) -> float:
        if strategy.budget_share is None:
            return min(remaining, self._settings.DEFAULT_TIMEOUT / 1000)
        if last:
            return remaining
        return remaining * strategy.budget_share

    async def _attempt(
        self,
        strategy: FetchStrategy,
        url: str,
        expect: str,
        budget: float,
        limit: float,
        max_attempts: int | None,
    ) -> FetchResult:
        try:
            return await asyncio.wait_for(
                strategy.attempt(url, expect, budget, max_attempts=max_attempts),
                timeout=limit,
            )
        except FetchError:
            raise
        except asyncio.TimeoutError:
            raise FetchTimeoutError(strategy.name, limit, url=url) from None

    def _record(self, strategy: FetchStrategy, status: str):
        if self._settings.METRICS_ENABLED:
            metrics.strategy_attempts_total.labels(strategy=strategy.name, status=status).inc()

    async def fetch(
        self,
        url: str,
        expect: str = "html",
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> FetchResult:
        """Fetch ``url`` with the whole chain bounded by ``timeout`` seconds."""
        if timeout is None:
            timeout = self._settings.FETCH_TIMEOUT
        deadline = time.monotonic() + timeout
        failures: dict[str, BaseException] = {}

        candidates = []
        for strategy in self._strategies:
            if strategy.applicable(url, expect):
                candidates.append(strategy)
            else:
                logger.debug(f"Strategy {strategy.name} skipped for {url}")

        for index, strategy in enumerate(candidates):
            start = time.monotonic()
            remaining = deadline - start
            if remaining <= 0:
                failures[strategy.name] = FetchTimeoutError(strategy.name, 0, url=url)
                self._record(strategy, "failure")
                logger.warning(f"Strategy {strategy.name} skipped for {url}: no time left")
                continue

            last = index == len(candidates) - 1
            budget = self._budget(strategy, remaining, last)
            try:
                result = await self._attempt(
                    strategy,
                    url,
                    expect,
                    budget,
                    remaining if last else budget,
                    max_attempts,
                )
            except ConfigError:
                raise
            except FetchError as e:
                failures[strategy.name] = e
                self._record(strategy, "failure")
                logger.warning(f"Strategy {strategy.name} failed for {url}: {e.kind}: {e}")
                continue

            result.elapsed = time.monotonic() - start
            self._record(strategy, "success")
            logger.info(
                f"Fetched {url} via {strategy.name} in {result.elapsed:.2f}s "
                f"({len(result.content)} chars)"
            )
            return result

        raise AggregateFetchError(failures, url=url)
