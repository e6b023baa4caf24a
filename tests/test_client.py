"""Tests for StealthFetcher and the module-level fetch_html contract."""

import asyncio

import pytest
from pydantic import ValidationError

import stealthfetch.client as client_module
from stealthfetch.client import FetchOptions, StealthFetcher, fetch_html, shutdown
from stealthfetch.core.exceptions import (
    AggregateFetchError,
    FetchError,
    FetchTimeoutError,
    InvalidURLError,
)
from stealthfetch.core.fetch_context import get_fetch_id
from stealthfetch.services.fallback import FetchResult, FetchStrategy, RelayStrategy
from stealthfetch.services.scrape_cache import inflight_key
from tests.fakes import (
    PROXIED_PAGE,
    FakeLauncher,
    FakeRedis,
    OfflineHttp,
    make_settings,
    relay_success,
)

URL = "https://target.example/article/1"


class RecordingStrategy(FetchStrategy):
    name = "stub"

    def __init__(self, content="<html><body>stub page</body></html>", delay=0.0):
        self.content = content
        self.delay = delay
        self.calls = 0
        self.fetch_ids = []

    async def attempt(self, url, expect, timeout, max_attempts=None):
        self.calls += 1
        self.fetch_ids.append(get_fetch_id())
        if self.delay:
            await asyncio.sleep(self.delay)
        return FetchResult(content=self.content, strategy=self.name, url=url)


def make_fetcher(strategies=None, page_setup=relay_success, **overrides):
    launcher = FakeLauncher(page_setup=page_setup)
    fetcher = StealthFetcher(
        make_settings(**overrides),
        redis=FakeRedis(),
        launcher=launcher,
        http=OfflineHttp(),
        strategies=strategies,
    )
    return fetcher, launcher


class TestFetchOptions:
    def test_defaults(self):
        options = FetchOptions()
        assert options.use_cache is True
        assert options.cache_variant == "html"

    def test_variant_overrides_expect(self):
        assert FetchOptions(expect="json", variant="api-v2").cache_variant == "api-v2"

    @pytest.mark.parametrize(
        "bad", [{"timeout": 0}, {"max_retries": 0}, {"ttl": -5}, {"expect": "xml"}]
    )
    def test_invalid(self, bad):
        with pytest.raises(ValidationError):
            FetchOptions(**bad)


class TestStealthFetcher:
    @pytest.mark.asyncio
    async def test_fetch_through_relay(self):
        fetcher, _ = make_fetcher()
        async with fetcher:
            html = await fetcher.fetch_html(URL)
        assert html == PROXIED_PAGE

    @pytest.mark.asyncio
    async def test_second_fetch_served_from_cache(self):
        strategy = RecordingStrategy()
        fetcher, _ = make_fetcher([strategy])

        first = await fetcher.fetch(URL)
        second = await fetcher.fetch(URL, {"expect": "html"})
        await fetcher.shutdown()

        assert strategy.calls == 1
        assert first.from_cache is False
        assert second.from_cache is True

    @pytest.mark.asyncio
    async def test_use_cache_false_always_fetches(self):
        strategy = RecordingStrategy()
        fetcher, _ = make_fetcher([strategy])

        await fetcher.fetch(URL, FetchOptions(use_cache=False))
        await fetcher.fetch(URL, FetchOptions(use_cache=False))
        assert strategy.calls == 2

    @pytest.mark.asyncio
    async def test_each_fetch_gets_a_fetch_id(self):
        strategy = RecordingStrategy()
        fetcher, _ = make_fetcher([strategy])

        await fetcher.fetch(URL, {"use_cache": False})
        await fetcher.fetch(URL, {"use_cache": False})

        first, second = strategy.fetch_ids
        assert len(first) == 12
        assert first != second
        assert get_fetch_id() == ""

    @pytest.mark.asyncio
    async def test_caller_timeout(self):
        strategy = RecordingStrategy()
        fetcher, _ = make_fetcher([strategy])
        # Another process holds the in-flight claim and never delivers a result
        await fetcher.cache._redis.set(inflight_key(URL, "html"), "1")
        with pytest.raises(FetchTimeoutError) as exc_info:
            await fetcher.fetch(URL, {"timeout": 0.05})

        err = exc_info.value
        assert err.operation == "fetch"
        assert err.url == URL
        assert isinstance(err, TimeoutError)
        await asyncio.sleep(0.01)
        assert fetcher.cache.inflight_count == 0
        assert strategy.calls == 0

    @pytest.mark.asyncio
    async def test_timeout_releases_browser_resources(self):
        def stuck(page):
            page.hang.add("goto")

        fetcher, launcher = make_fetcher(page_setup=stuck)
        with pytest.raises(AggregateFetchError) as exc_info:
            await fetcher.fetch(URL, {"timeout": 0.1, "use_cache": False})

        assert isinstance(exc_info.value.failures["relay"], FetchTimeoutError)

        assert fetcher.tabs.leased_count == 0
        assert fetcher.pool.stats()["leased_tabs"] == 0
        assert all(page.closed for page in launcher.all_pages())

    @pytest.mark.asyncio
    async def test_hanging_relay_leaves_time_for_direct(self):
        def stuck(page):
            page.hang.add("goto")

        fetcher, _ = make_fetcher(page_setup=stuck, NAVIGATION_TIMEOUT=5000, MAX_RETRIES=3)
        direct = RecordingStrategy()
        direct.name = "direct"
        fetcher.chain._strategies = [fetcher.chain.strategies[0], direct]

        result = await fetcher.fetch(URL, {"timeout": 1, "use_cache": False})
        await fetcher.shutdown()

        assert result.strategy == "direct"
        assert direct.calls == 1
        assert fetcher.tabs.leased_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_closes_cache_store(self):
        fetcher, _ = make_fetcher([RecordingStrategy()])
        await fetcher.shutdown()
        assert fetcher.cache._redis.closed is True

    @pytest.mark.asyncio
    async def test_all_strategies_failing(self):
        def blocked(page):
            def _submitted(p):
                p.url = "https://relay.example/requests?fso=1"

            page.on_click = _submitted

        fetcher, _ = make_fetcher(
            page_setup=blocked, MIRROR_HOSTS={}, MAX_RETRIES=2
        )
        fetcher.chain._strategies = [
            s for s in fetcher.chain.strategies if isinstance(s, RelayStrategy)
        ]
        with pytest.raises(AggregateFetchError) as exc_info:
            await fetcher.fetch(URL)
        assert exc_info.value.failures["relay"].attempts == 2

    @pytest.mark.asyncio
    async def test_bounded_concurrency_end_to_end(self):
        def slow(page):
            relay_success(page)
            page.goto_delay = 0.01

        fetcher, launcher = make_fetcher(
            page_setup=slow, BROWSER_INSTANCES=2, MAX_TABS_PER_BROWSER=2, MAX_CONCURRENT_TABS=3
        )
        urls = [f"https://target.example/item/{i}" for i in range(10)]
        pages = await asyncio.gather(*(fetcher.fetch_html(u) for u in urls))

        assert set(pages) == {PROXIED_PAGE}
        assert fetcher.tabs.peak_leased <= 3
        assert all(b.peak_open_contexts <= 2 for b in launcher.browsers)
        assert fetcher.tabs.leased_count == 0

    @pytest.mark.asyncio
    async def test_rejects_non_http_urls(self):
        fetcher, _ = make_fetcher([RecordingStrategy()])
        with pytest.raises(InvalidURLError) as exc_info:
            await fetcher.fetch("ftp://example.com/file")
        assert isinstance(exc_info.value, FetchError)
        assert exc_info.value.kind == "invalid_url"

    @pytest.mark.asyncio
    async def test_stats(self):
        fetcher, _ = make_fetcher()
        await fetcher.start()
        stats = fetcher.stats()
        await fetcher.shutdown()

        assert stats["strategies"] == ["relay", "direct", "proxy_list", "mirror"]
        assert stats["tabs"]["pool"]["alive"] == 2
        assert stats["cache_inflight"] == 0


class TestModuleLevelFetch:
    @pytest.mark.asyncio
    async def test_fetch_html_uses_shared_fetcher(self, monkeypatch):
        strategy = RecordingStrategy(content="<html><body>shared</body></html>")
        fetcher, _ = make_fetcher([strategy])
        monkeypatch.setattr(client_module, "_default_fetcher", fetcher)

        assert await fetch_html(URL) == "<html><body>shared</body></html>"
        assert client_module.get_fetcher() is fetcher

        await shutdown()
        assert client_module._default_fetcher is None
