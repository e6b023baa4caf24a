import asyncio
import logging
from dataclasses import dataclass, field

from playwright.async_api import async_playwright

from stealthfetch.config import Settings, settings as default_settings
from stealthfetch.core import metrics
from stealthfetch.core.exceptions import (
    BrowserStartupError,
    ConfigError,
    PermitError,
)
from stealthfetch.services.proxy import Proxy, assign_proxies
from stealthfetch.services.stealth import StealthProfileProvider

logger = logging.getLogger(__name__)


@dataclass
class BrowserHandle:
    """One pooled browser process (or remote CDP endpoint) and its tab budget."""

    id: int
    endpoint: str | None
    proxy: Proxy | None
    launch_args: list[str]
    max_tabs: int
    leased_tabs: int = 0
    alive: bool = False
    browser: object = field(default=None, repr=False)
    respawns: int = 0
    selections: int = 0
    last_error: str | None = None
    _respawn_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def saturated(self) -> bool:
        return self.leased_tabs >= self.max_tabs


class PlaywrightLauncher:
    """Starts Chromium processes (or attaches over CDP) through one Playwright driver."""

    def __init__(self, headless: bool = True):
        self._headless = headless
        self._playwright = None
        self._lock = asyncio.Lock()

    async def _driver(self):
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            return self._playwright

    async def launch(self, handle: BrowserHandle):
        pw = await self._driver()
        if handle.endpoint:
            return await pw.chromium.connect_over_cdp(handle.endpoint)
        kwargs = dict(headless=self._headless, args=handle.launch_args)
        if handle.proxy:
            kwargs["proxy"] = handle.proxy.to_playwright()
        return await pw.chromium.launch(**kwargs)

    async def close(self, browser):
        await browser.close()

    async def stop(self):
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


class BrowserPool:
    """Fixed set of browser handles assigned round-robin under per-browser tab caps.

    Handle counters and liveness are only mutated from the event loop while
    holding ``_cond``'s lock (or in synchronous code with no await in
    between). Dead handles stay in rotation and are respawned lazily by the
    first caller that selects them.
    """

    def __init__(
        self,
        config: Settings | None = None,
        provider: StealthProfileProvider | None = None,
        launcher=None,
    ):
        self._settings = config or default_settings
        self._provider = provider or StealthProfileProvider(self._settings)
        self._launcher = launcher or PlaywrightLauncher(
            headless=self._settings.BROWSER_HEADLESS
        )
        self._handles: list[BrowserHandle] = []
        self._cursor = 0
        self._cond = asyncio.Condition()
        self._start_lock = asyncio.Lock()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def handles(self) -> list[BrowserHandle]:
        return list(self._handles)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, config: Settings | None = None):
        async with self._start_lock:
            if self._started:
                return
            if config is not None:
                self._settings = config
            s = self._settings
            for name in ("BROWSER_INSTANCES", "MAX_TABS_PER_BROWSER", "MAX_CONCURRENT_TABS"):
                if getattr(s, name) < 1:
                    raise ConfigError(f"{name} must be >= 1 (got {getattr(s, name)})")

            flags = self._provider.launch_flags()
            proxies = assign_proxies(s.browser_proxies, s.BROWSER_INSTANCES)
            endpoints = s.BROWSER_CDP_ENDPOINTS
            self._handles = [
                BrowserHandle(
                    id=i,
                    endpoint=endpoints[i] if i < len(endpoints) else None,
                    proxy=proxies[i],
                    launch_args=flags,
                    max_tabs=s.MAX_TABS_PER_BROWSER,
                )
                for i in range(s.BROWSER_INSTANCES)
            ]
            self._cursor = 0

            results = await asyncio.gather(
                *(self._launch(h) for h in self._handles), return_exceptions=True
            )
            for handle, result in zip(self._handles, results):
                if isinstance(result, BrowserStartupError):
                    logger.error(f"Browser slot {handle.id} failed to start: {result}")
                elif isinstance(result, BaseException):
                    raise result

            alive = sum(1 for h in self._handles if h.alive)
            self._record_alive()
            if alive == 0:
                await self._launcher.stop()
                self._handles = []
                raise ConfigError(
                    f"No browser instance could be started ({s.BROWSER_INSTANCES} attempted)"
                )

            self._started = True
            logger.info(
                f"Browser pool started ({alive}/{len(self._handles)} browsers live, "
                f"max_tabs_per_browser={s.MAX_TABS_PER_BROWSER})"
            )

    async def shutdown(self):
        async with self._start_lock:
            for handle in self._handles:
                await self._close_browser(handle)
                handle.alive = False
            await self._launcher.stop()
            self._started = False
            self._record_alive()
            async with self._cond:
                self._cond.notify_all()
            logger.info("Browser pool shut down")

    async def _launch(self, handle: BrowserHandle):
        try:
            browser = await self._launcher.launch(handle)
        except Exception as e:
            handle.alive = False
            handle.last_error = str(e)
            raise BrowserStartupError(
                f"Browser {handle.id} failed to launch: {e}", browser_id=handle.id
            ) from e
        handle.browser = browser
        handle.alive = True
        handle.last_error = None
        self._watch(handle, browser)
        where = handle.endpoint or "local"
        via = f" via proxy {handle.proxy}" if handle.proxy else ""
        logger.debug(f"Browser {handle.id} launched ({where}){via}")

    def _watch(self, handle: BrowserHandle, browser):
        on = getattr(browser, "on", None)
        if on is None:
            return
        on("disconnected", lambda *_: self.notify_connection_lost(handle.id, browser))

    async def _close_browser(self, handle: BrowserHandle):
        browser, handle.browser = handle.browser, None
        if browser is None:
            return
        try:
            await self._launcher.close(browser)
        except Exception as e:
            logger.debug(f"Closing browser {handle.id} failed: {e}")

    async def _respawn(self, handle: BrowserHandle):
        async with handle._respawn_lock:
            if handle.alive:
                return  # Already respawned by another coroutine
            await self._close_browser(handle)
            handle.respawns += 1
            try:
                await self._launch(handle)
            except BrowserStartupError:
                if self._settings.METRICS_ENABLED:
                    metrics.browser_respawns_total.labels(status="failure").inc()
                raise
            if self._settings.METRICS_ENABLED:
                metrics.browser_respawns_total.labels(status="success").inc()
            self._record_alive()
            logger.info(f"Browser {handle.id} respawned (respawns={handle.respawns})")

    def notify_connection_lost(self, browser_id: int, browser=None):
        """Mark a handle dead; it is respawned the next time it is selected.

        ``browser`` identifies the process that disconnected so late events
        from an already-replaced process are ignored.
        """
        handle = self._get(browser_id)
        if handle is None:
            return
        if browser is not None and handle.browser is not browser:
            return
        if handle.alive:
            handle.alive = False
            logger.warning(f"Browser {browser_id} lost its connection, will respawn on next use")
            self._record_alive()

    # ------------------------------------------------------------------
    # Slot assignment
    # ------------------------------------------------------------------

    def _get(self, browser_id: int) -> BrowserHandle | None:
        for handle in self._handles:
            if handle.id == browser_id:
                return handle
        return None

    def _select(self, preferred: int | None, skip: set[int]) -> BrowserHandle | None:
        if preferred is not None:
            handle = self._get(preferred)
            if handle is None:
                raise BrowserStartupError(f"Unknown browser id {preferred}", browser_id=preferred)
            if handle.saturated or handle.id in skip:
                return None
            return handle

        n = len(self._handles)
        for offset in range(n):
            idx = (self._cursor + offset) % n
            handle = self._handles[idx]
            if handle.id in skip or handle.saturated:
                continue
            self._cursor = (idx + 1) % n
            return handle
        return None

    async def _reserve(
        self, deadline: float, timeout: float, preferred: int | None, skip: set[int]
    ) -> BrowserHandle:
        loop = asyncio.get_running_loop()
        async with self._cond:
            while True:
                if not self._started:
                    raise BrowserStartupError("Browser pool is shut down")
                handle = self._select(preferred, skip)
                if handle is not None:
                    handle.leased_tabs += 1
                    handle.selections += 1
                    return handle
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise PermitError("acquire_browser", timeout)
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise PermitError("acquire_browser", timeout) from None

    async def acquire_browser(
        self, timeout: float | None = None, preferred: int | None = None
    ) -> BrowserHandle:
        """Reserve one tab slot on the next browser with spare capacity.

        Suspends while every browser is saturated, up to ``timeout`` seconds
        (PermitError). A dead handle is respawned before being returned; if
        that fails the slot is given back and the next handle is tried.
        """
        if not self._started:
            await self.start()
        if timeout is None:
            timeout = self._settings.ACQUIRE_TIMEOUT / 1000
        deadline = asyncio.get_running_loop().time() + timeout
        skip: set[int] = set()

        while True:
            try:
                handle = await self._reserve(deadline, timeout, preferred, skip)
            except PermitError:
                if self._settings.METRICS_ENABLED:
                    metrics.permit_exhausted_total.inc()
                raise
            if handle.alive:
                return handle
            try:
                await self._respawn(handle)
                return handle
            except BrowserStartupError as e:
                logger.warning(f"Respawn of browser {handle.id} failed: {e}")
                await self.release_browser(handle)
                skip.add(handle.id)
                if preferred is not None or len(skip) >= len(self._handles):
                    raise
            except BaseException:
                await asyncio.shield(self.release_browser(handle))
                raise

    async def release_browser(self, handle: BrowserHandle):
        async with self._cond:
            if handle.leased_tabs > 0:
                handle.leased_tabs -= 1
            else:
                logger.error(f"Browser {handle.id} released more slots than it leased")
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _record_alive(self):
        if self._settings.METRICS_ENABLED:
            metrics.browser_instances_alive.set(sum(1 for h in self._handles if h.alive))

    def stats(self) -> dict:
        return {
            "started": self._started,
            "instances": len(self._handles),
            "alive": sum(1 for h in self._handles if h.alive),
            "leased_tabs": sum(h.leased_tabs for h in self._handles),
            "browsers": [
                {
                    "id": h.id,
                    "alive": h.alive,
                    "leased": h.leased_tabs,
                    "max": h.max_tabs,
                    "respawns": h.respawns,
                    "proxy": str(h.proxy) if h.proxy else None,
                    "endpoint": h.endpoint,
                    "last_error": h.last_error,
                }
                for h in self._handles
            ],
        }
