import asyncio
import itertools
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from stealthfetch.config import Settings, settings as default_settings
from stealthfetch.core import metrics
from stealthfetch.core.exceptions import (
    ConfigError,
    ElementNotFound,
    FetchError,
    FetchTimeoutError,
    NavigationError,
    PermitError,
    ProtocolError,
    TabCreationError,
)
from stealthfetch.services.browser_pool import BrowserHandle, BrowserPool
from stealthfetch.services.stealth import (
    StealthProfile,
    StealthProfileProvider,
    setup_route_blocking,
)

logger = logging.getLogger(__name__)

# Cloudflare-style interstitials: challenge containers or the well-known titles
CHALLENGE_CHECK_SCRIPT = """() =>
    document.querySelector('div[class*="challenge"]') !== null ||
    document.querySelector('div[class*="cf-browser-verification"]') !== null ||
    document.querySelector('div[class*="cf-challenge"]') !== null ||
    document.title.includes('Just a moment') ||
    document.title.includes('Checking your browser')
"""

_CLOSE_TIMEOUT = 5.0

_BROWSER_CLOSED_PHRASES = (
    "browser has been closed",
    "target page, context or browser has been closed",
    "target closed",
    "connection closed",
    "browser closed",
)


def is_browser_closed_error(exc: BaseException) -> bool:
    """Check if an exception indicates the browser process has died."""
    msg = str(exc).lower()
    return any(phrase in msg for phrase in _BROWSER_CLOSED_PHRASES)


@dataclass
class TabLease:
    """Exclusive use of one page (in its own context) on one pooled browser."""

    tab_id: str
    browser_id: int
    acquired_at: float
    profile: StealthProfile | None
    page: object = field(repr=False)
    context: object = field(repr=False)
    handle: BrowserHandle = field(repr=False)
    released: bool = False


class TabManager:
    """Leases tabs under a global concurrency cap and wraps page primitives.

    Every public page operation is bounded by its own timeout and translates
    Playwright failures into stealthfetch errors. A lost browser connection
    is reported to the pool so the slot is respawned on next use.
    """

    def __init__(
        self,
        pool: BrowserPool,
        config: Settings | None = None,
        provider: StealthProfileProvider | None = None,
    ):
        self._pool = pool
        self._settings = config or default_settings
        self._provider = provider or StealthProfileProvider(self._settings)
        if self._settings.MAX_CONCURRENT_TABS < 1:
            raise ConfigError(
                f"MAX_CONCURRENT_TABS must be >= 1 (got {self._settings.MAX_CONCURRENT_TABS})"
            )
        self._semaphore = asyncio.Semaphore(self._settings.MAX_CONCURRENT_TABS)
        self._leases: dict[str, TabLease] = {}
        self._seq = itertools.count(1)
        self.peak_leased = 0
        self.acquired_total = 0
        self.released_total = 0

    @property
    def pool(self) -> BrowserPool:
        return self._pool

    @property
    def leased_count(self) -> int:
        return len(self._leases)

    def _ms(self, seconds: float) -> float:
        return max(seconds, 0.0) * 1000

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    async def acquire_tab(
        self,
        browser: BrowserHandle | None = None,
        timeout: float | None = None,
        profile: StealthProfile | None = None,
    ) -> TabLease:
        """Take a concurrency permit and a browser slot, then open a fresh tab.

        Raises PermitError if either is not available within ``timeout``
        seconds. On any failure after the permit is taken, everything
        acquired so far is given back before the error propagates.
        """
        if timeout is None:
            timeout = self._settings.ACQUIRE_TIMEOUT / 1000
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            if self._settings.METRICS_ENABLED:
                metrics.permit_exhausted_total.inc()
            raise PermitError(
                "tab permit",
                timeout,
                f"No tab permit available after {timeout:.1f}s "
                f"(max_concurrent_tabs={self._settings.MAX_CONCURRENT_TABS})",
            ) from None

        handle = None
        try:
            handle = await self._pool.acquire_browser(
                timeout=max(0.0, deadline - loop.time()),
                preferred=browser.id if browser is not None else None,
            )
            profile = profile or self._provider.next_profile()
            context, page = await self._open_tab(handle, profile)
        except BaseException:
            if handle is not None:
                await asyncio.shield(self._pool.release_browser(handle))
            self._semaphore.release()
            raise

        lease = TabLease(
            tab_id=f"tab-{handle.id}-{next(self._seq)}",
            browser_id=handle.id,
            acquired_at=time.monotonic(),
            profile=profile,
            page=page,
            context=context,
            handle=handle,
        )
        self._leases[lease.tab_id] = lease
        self.acquired_total += 1
        self.peak_leased = max(self.peak_leased, len(self._leases))
        if self._settings.METRICS_ENABLED:
            metrics.leased_tabs.set(len(self._leases))
        logger.debug(f"Leased {lease.tab_id} ({len(self._leases)} tabs leased)")
        return lease

    async def _open_tab(self, handle: BrowserHandle, profile: StealthProfile):
        browser = handle.browser
        try:
            context = await browser.new_context(**profile.context_kwargs())
        except PlaywrightError as e:
            if is_browser_closed_error(e):
                self._pool.notify_connection_lost(handle.id, browser)
                raise ProtocolError(
                    f"Browser {handle.id} closed while opening a tab: {e}",
                    browser_id=handle.id,
                ) from e
            raise TabCreationError(f"new_context failed on browser {handle.id}: {e}") from e

        try:
            await setup_route_blocking(context, self._settings.BLOCK_RESOURCES)
            if self._settings.STEALTH_ENABLED:
                await context.add_init_script(profile.init_script())
            page = await context.new_page()
            page.set_default_timeout(self._settings.DEFAULT_TIMEOUT)
        except BaseException as e:
            await asyncio.shield(self._close_quietly(None, context))
            if isinstance(e, PlaywrightError):
                if is_browser_closed_error(e):
                    self._pool.notify_connection_lost(handle.id, browser)
                    raise ProtocolError(str(e), browser_id=handle.id) from e
                raise TabCreationError(f"new_page failed on browser {handle.id}: {e}") from e
            raise
        return context, page

    async def release(self, lease: TabLease):
        """Give back a lease exactly once; later calls are no-ops.

        Closing the tab and returning the permit run in a shielded task so
        they complete even if the caller is being cancelled.
        """
        if lease.released:
            return
        lease.released = True
        self._leases.pop(lease.tab_id, None)
        await asyncio.shield(asyncio.ensure_future(self._finish(lease)))

    async def _finish(self, lease: TabLease):
        try:
            await self._close_quietly(lease.page, lease.context)
        finally:
            try:
                await self._pool.release_browser(lease.handle)
            finally:
                self._semaphore.release()
                self.released_total += 1
                if self._settings.METRICS_ENABLED:
                    metrics.leased_tabs.set(len(self._leases))
                logger.debug(f"Released {lease.tab_id}")

    async def _close_quietly(self, page, context):
        for target in (page, context):
            if target is None:
                continue
            try:
                await asyncio.wait_for(target.close(), timeout=_CLOSE_TIMEOUT)
            except (PlaywrightError, asyncio.TimeoutError) as e:
                logger.debug(f"Tab cleanup: {type(e).__name__}: {e}")

    @asynccontextmanager
    async def lease(
        self,
        browser: BrowserHandle | None = None,
        timeout: float | None = None,
        profile: StealthProfile | None = None,
    ):
        tab = await self.acquire_tab(browser=browser, timeout=timeout, profile=profile)
        try:
            yield tab
        finally:
            await self.release(tab)

    # ------------------------------------------------------------------
    # Page primitives
    # ------------------------------------------------------------------

    def _check(self, lease: TabLease):
        if lease.released:
            raise NavigationError(f"{lease.tab_id} has already been released")

    async def _call(
        self,
        lease: TabLease,
        operation: str,
        awaitable,
        timeout: float,
        selector: str | None = None,
    ):
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except FetchError:
            raise
        except (asyncio.TimeoutError, PlaywrightTimeoutError) as e:
            raise FetchTimeoutError(operation, timeout) from e
        except PlaywrightError as e:
            if is_browser_closed_error(e):
                self._pool.notify_connection_lost(lease.browser_id, lease.handle.browser)
                raise ProtocolError(
                    f"{operation} failed, browser {lease.browser_id} disconnected: {e}",
                    browser_id=lease.browser_id,
                ) from e
            if selector is not None:
                raise ElementNotFound(selector, f"{operation} failed: {e}") from e
            raise NavigationError(f"{operation} failed: {e}") from e

    async def navigate(
        self,
        lease: TabLease,
        url: str,
        timeout: float | None = None,
        wait_until: str = "load",
        ready_selector: str | None = None,
    ) -> int | None:
        """Load ``url`` and wait for the lifecycle event (or ``ready_selector``).

        On timeout the lease is released before FetchTimeoutError is raised.
        Returns the main response status when there is one.
        """
        self._check(lease)
        if timeout is None:
            timeout = self._settings.NAVIGATION_TIMEOUT / 1000
        if lease.profile is not None and lease.profile.delay_ms:
            await asyncio.sleep(lease.profile.delay_ms / 1000)

        async def _go():
            response = await lease.page.goto(
                url, wait_until=wait_until, timeout=self._ms(timeout)
            )
            if ready_selector:
                await lease.page.wait_for_selector(ready_selector, timeout=self._ms(timeout))
            return response.status if response is not None else None

        try:
            return await self._call(lease, f"navigate to {url}", _go(), timeout)
        except FetchTimeoutError:
            await self.release(lease)
            raise

    async def evaluate(self, lease: TabLease, script: str, arg=None, timeout: float | None = None):
        self._check(lease)
        if timeout is None:
            timeout = self._settings.DEFAULT_TIMEOUT / 1000
        if arg is None:
            awaitable = lease.page.evaluate(script)
        else:
            awaitable = lease.page.evaluate(script, arg)
        return await self._call(lease, "evaluate", awaitable, timeout)

    async def get_content(self, lease: TabLease, timeout: float | None = None) -> str:
        self._check(lease)
        if timeout is None:
            timeout = self._settings.DEFAULT_TIMEOUT / 1000
        return await self._call(lease, "get_content", lease.page.content(), timeout)

    async def wait_for_selector(
        self,
        lease: TabLease,
        selector: str,
        timeout: float | None = None,
        state: str = "visible",
    ):
        """Wait for ``selector``; raises ElementNotFound if it never shows up."""
        self._check(lease)
        if timeout is None:
            timeout = self._settings.SELECTOR_TIMEOUT / 1000
        awaitable = lease.page.wait_for_selector(
            selector, state=state, timeout=self._ms(timeout)
        )
        try:
            return await self._call(
                lease, f"wait_for_selector {selector}", awaitable, timeout, selector=selector
            )
        except FetchTimeoutError as e:
            raise ElementNotFound(
                selector, f"Element not found within {timeout:.1f}s: {selector}"
            ) from e

    async def type(
        self,
        lease: TabLease,
        selector: str,
        text: str,
        delay_ms: int = 50,
        timeout: float | None = None,
    ):
        self._check(lease)
        if timeout is None:
            timeout = self._settings.DEFAULT_TIMEOUT / 1000
        # Keystroke pacing makes the typing budget grow with the text
        budget = timeout + len(text) * delay_ms / 1000
        awaitable = lease.page.type(selector, text, delay=delay_ms, timeout=self._ms(budget))
        await self._call(lease, f"type into {selector}", awaitable, budget, selector=selector)

    async def click(self, lease: TabLease, selector: str, timeout: float | None = None):
        self._check(lease)
        if timeout is None:
            timeout = self._settings.DEFAULT_TIMEOUT / 1000
        awaitable = lease.page.click(selector, timeout=self._ms(timeout))
        await self._call(lease, f"click {selector}", awaitable, timeout, selector=selector)

    async def click_and_wait_for_navigation(
        self,
        lease: TabLease,
        selector: str,
        timeout: float | None = None,
        wait_until: str = "load",
    ):
        """Click ``selector`` and wait for the navigation it triggers."""
        self._check(lease)
        if timeout is None:
            timeout = self._settings.NAVIGATION_TIMEOUT / 1000

        async def _submit():
            async with lease.page.expect_navigation(
                wait_until=wait_until, timeout=self._ms(timeout)
            ):
                await lease.page.click(selector, timeout=self._ms(timeout))

        await self._call(lease, f"submit via {selector}", _submit(), timeout)

    async def wait_for_navigation(
        self, lease: TabLease, timeout: float | None = None, wait_until: str = "load"
    ):
        """Wait for the next navigation of the page (e.g. a scripted redirect)."""
        self._check(lease)
        if timeout is None:
            timeout = self._settings.NAVIGATION_TIMEOUT / 1000

        async def _wait():
            async with lease.page.expect_navigation(
                wait_until=wait_until, timeout=self._ms(timeout)
            ):
                pass

        await self._call(lease, "wait_for_navigation", _wait(), timeout)

    def current_url(self, lease: TabLease) -> str:
        self._check(lease)
        return lease.page.url

    async def detect_challenge(self, lease: TabLease, timeout: float | None = None) -> bool:
        """True when the page looks like a Cloudflare-style challenge."""
        try:
            return bool(await self.evaluate(lease, CHALLENGE_CHECK_SCRIPT, timeout=timeout))
        except (NavigationError, FetchTimeoutError) as e:
            logger.debug(f"Challenge check failed on {lease.tab_id}: {e}")
            return False

    def stats(self) -> dict:
        return {
            "max_concurrent_tabs": self._settings.MAX_CONCURRENT_TABS,
            "leased": len(self._leases),
            "peak_leased": self.peak_leased,
            "acquired_total": self.acquired_total,
            "released_total": self.released_total,
            "pool": self._pool.stats(),
        }
