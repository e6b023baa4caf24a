"""In-memory stand-ins for Redis and for Playwright browsers, contexts and pages."""

import asyncio
from contextlib import asynccontextmanager

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from stealthfetch.config import Settings
from stealthfetch.core.exceptions import NavigationError

RELAY_PAGE = "<html><body><form><input id='url'><button id='requestSubmit'>Go</button></form></body></html>"
PROXIED_PAGE = (
    "<html><head><title>Target</title></head><body>"
    "<div id='__cpsHeaderTab'></div><main>"
    + "Real article content. " * 40
    + "</main></body></html>"
)


def make_settings(**overrides) -> Settings:
    """Settings tuned for tests: no pacing, no backoff, no .env file."""
    values = dict(
        BROWSER_INSTANCES=2,
        MAX_CONCURRENT_TABS=4,
        MAX_TABS_PER_BROWSER=2,
        STEALTH_DELAY_MIN=0,
        STEALTH_DELAY_MAX=0,
        RETRY_DELAY=0,
        ACQUIRE_TIMEOUT=1000,
        METRICS_ENABLED=False,
        CACHE_INFLIGHT_POLL_INTERVAL=0.01,
        CACHE_INFLIGHT_WAIT=1,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeRedis:
    """Minimal fake Redis supporting what the scrape cache uses."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.set_calls: list[tuple] = []
        self.closed = False

    async def get(self, key: str):
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int = None, nx: bool = False):
        self.set_calls.append((key, value, ex, nx))
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def setex(self, key: str, ttl: int, value: str):
        self._store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
        return removed

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self._store)

    async def close(self):
        self.closed = True


class OfflineHttp:
    """HttpFetcher stand-in whose every request fails without touching the network."""

    def __init__(self):
        self.requested: list[str] = []

    async def _fail(self, url):
        self.requested.append(url)
        raise NavigationError(f"offline: {url}", url=url)

    async def fetch_direct(self, url, timeout, expect="html", profile=None):
        return await self._fail(url)

    async def fetch_mirror(self, url, timeout, expect="html"):
        return await self._fail(url)

    async def fetch_via_proxy(self, url, proxy, timeout, expect="html"):
        return await self._fail(url)

    async def aclose(self):
        pass


class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status


class FakePage:
    """Playwright Page double.

    ``hang`` names operations that never complete, ``fail`` maps operation
    names to exceptions to raise. ``on_click`` / ``on_navigation`` let a test
    script what the page looks like after the relay form is submitted.
    """

    def __init__(self, context):
        self.context = context
        self.url = "about:blank"
        self.html = "<html><body></body></html>"
        self.closed = False
        self.default_timeout = None
        self.goto_calls: list[str] = []
        self.typed: list[tuple[str, str, int]] = []
        self.clicks: list[str] = []
        self.navigations: list[str] = []
        self.missing_selectors: set[str] = set()
        self.hang: set[str] = set()
        self.fail: dict[str, BaseException] = {}
        self.goto_delay = 0.0
        self.evaluate_result = False
        self.on_click = None
        self.on_navigation = None

    async def _step(self, op: str):
        if op in self.fail:
            raise self.fail[op]
        if op in self.hang:
            await asyncio.Event().wait()

    def set_default_timeout(self, ms):
        self.default_timeout = ms

    async def goto(self, url, wait_until=None, timeout=None):
        await self._step("goto")
        if self.goto_delay:
            await asyncio.sleep(self.goto_delay)
        self.goto_calls.append(url)
        self.url = url
        self.html = RELAY_PAGE
        return FakeResponse(200)

    async def wait_for_selector(self, selector, state=None, timeout=None):
        await self._step("wait_for_selector")
        if selector in self.missing_selectors:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return object()

    async def type(self, selector, text, delay=None, timeout=None):
        await self._step("type")
        self.typed.append((selector, text, delay))

    async def click(self, selector, timeout=None):
        await self._step("click")
        self.clicks.append(selector)
        if self.on_click is not None:
            self.on_click(self)

    @asynccontextmanager
    async def expect_navigation(self, wait_until=None, timeout=None):
        yield
        await self._step("navigation")
        self.navigations.append(wait_until)
        if self.on_navigation is not None:
            self.on_navigation(self)

    async def content(self):
        await self._step("content")
        return self.html

    async def evaluate(self, script, arg=None):
        await self._step("evaluate")
        return self.evaluate_result

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, browser, kwargs):
        self.browser = browser
        self.kwargs = kwargs
        self.pages: list[FakePage] = []
        self.routes: list[tuple] = []
        self.init_scripts: list[str] = []
        self.closed = False

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        page = FakePage(self)
        if self.browser.page_setup is not None:
            self.browser.page_setup(page)
        self.pages.append(page)
        return page

    async def close(self):
        if not self.closed:
            self.closed = True
            self.browser.open_contexts -= 1


class FakeBrowser:
    def __init__(self, browser_id: int, page_setup=None):
        self.browser_id = browser_id
        self.page_setup = page_setup
        self.contexts: list[FakeContext] = []
        self.connected = True
        self.closed = False
        self.open_contexts = 0
        self.peak_open_contexts = 0
        self.new_context_error: BaseException | None = None
        self.launch_args = None
        self.proxy = None
        self._handlers: dict[str, list] = {}

    def on(self, event, callback):
        self._handlers.setdefault(event, []).append(callback)

    def is_connected(self):
        return self.connected

    def disconnect(self):
        self.connected = False
        for callback in self._handlers.get("disconnected", []):
            callback(self)

    async def new_context(self, **kwargs):
        if self.new_context_error is not None:
            raise self.new_context_error
        context = FakeContext(self, kwargs)
        self.contexts.append(context)
        self.open_contexts += 1
        self.peak_open_contexts = max(self.peak_open_contexts, self.open_contexts)
        return context

    async def close(self):
        self.closed = True
        self.connected = False


class FakeLauncher:
    """Launcher double: hands out FakeBrowsers, failing for ``fail_ids``."""

    def __init__(self, page_setup=None, fail_ids=()):
        self.page_setup = page_setup
        self.fail_ids = set(fail_ids)
        self.browsers: list[FakeBrowser] = []
        self.launch_calls = 0
        self.stopped = False

    async def launch(self, handle):
        self.launch_calls += 1
        if handle.id in self.fail_ids:
            raise RuntimeError(f"cannot launch browser {handle.id}")
        browser = FakeBrowser(handle.id, self.page_setup)
        browser.launch_args = handle.launch_args
        browser.proxy = handle.proxy
        self.browsers.append(browser)
        return browser

    async def close(self, browser):
        await browser.close()

    async def stop(self):
        self.stopped = True

    def all_pages(self) -> list[FakePage]:
        return [page for b in self.browsers for c in b.contexts for page in c.pages]


def relay_success(page: FakePage):
    """Page setup for a relay that renders the target on the first try."""

    def _submitted(p):
        p.url = "https://proxy.example/__cpo?target"
        p.html = PROXIED_PAGE

    page.on_click = _submitted
