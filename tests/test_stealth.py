"""Tests for stealth profiles, launch flags and request blocking."""

import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from stealthfetch.services.stealth import (
    LAUNCH_ARGS,
    USER_AGENTS,
    VIEWPORTS,
    StealthProfileProvider,
    launch_flags,
    setup_route_blocking,
    should_block,
)
from tests.fakes import make_settings


class TestStealthProfileProvider:
    def test_consecutive_profiles_never_share_user_agent(self):
        provider = StealthProfileProvider(make_settings(), rng=random.Random(1))
        agents = [provider.next_profile().user_agent for _ in range(len(USER_AGENTS) * 2)]
        for previous, current in zip(agents, agents[1:]):
            assert previous != current
        assert set(agents) == set(USER_AGENTS)

    def test_viewport_jitter_bounds(self):
        provider = StealthProfileProvider(
            make_settings(VIEWPORT_JITTER=10), rng=random.Random(7)
        )
        widths = {v["width"] for v in VIEWPORTS}
        for _ in range(50):
            viewport = provider.next_profile().viewport
            assert any(w - 10 <= viewport["width"] <= w for w in widths)

    def test_delay_within_configured_range(self):
        provider = StealthProfileProvider(
            make_settings(STEALTH_DELAY_MIN=100, STEALTH_DELAY_MAX=300),
            rng=random.Random(3),
        )
        delays = [provider.next_profile().delay_ms for _ in range(50)]
        assert all(100 <= d <= 300 for d in delays)

    def test_no_delay_when_stealth_disabled(self):
        provider = StealthProfileProvider(
            make_settings(STEALTH_ENABLED=False, STEALTH_DELAY_MIN=100, STEALTH_DELAY_MAX=300)
        )
        assert provider.next_profile().delay_ms == 0

    def test_context_kwargs_consistent_with_user_agent(self):
        provider = StealthProfileProvider(make_settings())
        profile = provider.next_profile()  # first agent is a Windows Chrome 125
        kwargs = profile.context_kwargs()
        assert kwargs["user_agent"] == USER_AGENTS[0]
        assert kwargs["timezone_id"] == profile.timezone
        assert kwargs["extra_http_headers"]["Sec-Ch-Ua-Platform"] == '"Windows"'
        assert '"Google Chrome";v="125"' in kwargs["extra_http_headers"]["Sec-Ch-Ua"]

    def test_context_headers_safe_for_subresources(self):
        headers = StealthProfileProvider(make_settings()).next_profile().context_kwargs()[
            "extra_http_headers"
        ]
        assert "Accept" not in headers
        assert "Upgrade-Insecure-Requests" not in headers
        assert headers["Accept-Language"].startswith("en-US")

    def test_profile_carries_launch_flags(self):
        profile = StealthProfileProvider(make_settings(BROWSER_LAUNCH_ARGS=["--lang=en-US"])).next_profile()
        assert "--disable-blink-features=AutomationControlled" in profile.launch_flags
        assert profile.launch_flags[-1] == "--lang=en-US"

    def test_init_script_carries_profile_values(self):
        profile = StealthProfileProvider(make_settings()).next_profile()
        script = profile.init_script()
        assert "webdriver" in script
        assert profile.webgl_renderer in script
        assert profile.timezone in script


class TestLaunchFlags:
    def test_stealth_flags_added(self):
        flags = launch_flags(True)
        assert "--disable-blink-features=AutomationControlled" in flags
        assert flags[: len(LAUNCH_ARGS)] == LAUNCH_ARGS

    def test_stealth_flags_omitted(self):
        assert "--disable-blink-features=AutomationControlled" not in launch_flags(False)

    def test_extra_flags_deduplicated(self):
        flags = launch_flags(False, ["--lang=en-US", "--no-sandbox"])
        assert flags[-1] == "--lang=en-US"
        assert flags.count("--no-sandbox") == 1


class TestRequestBlocking:
    def test_ad_domains_always_blocked(self):
        assert should_block("https://securepubads.doubleclick.net/x.js", "script", False)

    def test_heavy_resources_blocked_on_request(self):
        assert should_block("https://example.com/a.png", "image", True)
        assert not should_block("https://example.com/a.png", "image", False)
        assert not should_block("https://example.com/", "document", True)

    @pytest.mark.asyncio
    async def test_route_handler_aborts_and_continues(self):
        context = MagicMock()
        context.route = AsyncMock()
        await setup_route_blocking(context, block_resources=True)

        pattern, handler = context.route.await_args.args
        assert pattern == "**/*"

        route = MagicMock(abort=AsyncMock(), continue_=AsyncMock())
        await handler(route, MagicMock(url="https://example.com/font.woff2", resource_type="font"))
        route.abort.assert_awaited_once()

        route = MagicMock(abort=AsyncMock(), continue_=AsyncMock())
        await handler(route, MagicMock(url="https://example.com/", resource_type="document"))
        route.continue_.assert_awaited_once()
        route.abort.assert_not_awaited()
