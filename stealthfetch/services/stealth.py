import json
import logging
import random
from dataclasses import dataclass, field

from stealthfetch.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Realistic fingerprint data, rotated per tab lease
# ---------------------------------------------------------------------------

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
]

VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1680, "height": 1050},
    {"width": 1280, "height": 720},
]

TIMEZONES = [
    "America/New_York",
    "America/Chicago",
    "America/Los_Angeles",
    "America/Denver",
    "Europe/London",
    "Europe/Paris",
]

WEBGL_RENDERERS = [
    (
        "Google Inc. (NVIDIA)",
        "ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    (
        "Google Inc. (NVIDIA)",
        "ANGLE (NVIDIA, NVIDIA GeForce GTX 1080 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    (
        "Google Inc. (Intel)",
        "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    (
        "Google Inc. (AMD)",
        "ANGLE (AMD, AMD Radeon RX 580 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    ("Google Inc. (Apple)", "ANGLE (Apple, Apple M1, OpenGL 4.1)"),
]

# Shared launch-flag template for every pooled browser process
LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-infobars",
    "--window-size=1920,1080",
    "--disable-extensions",
    "--disable-default-apps",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-hang-monitor",
    "--disable-background-networking",
    "--disable-sync",
    "--disable-gpu",
    "--renderer-process-limit=2",
]

# Suppress automation-detection signals
STEALTH_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process,TranslateUI",
    "--disable-webrtc-hw-encoding",
    "--force-webrtc-ip-handling-policy=disable_non_proxied_udp",
]


def launch_flags(stealth_enabled: bool = True, extra: list[str] | None = None) -> list[str]:
    """Build the launch-flag list for one browser process (deduplicated, ordered)."""
    flags = list(LAUNCH_ARGS)
    if stealth_enabled:
        flags.extend(STEALTH_LAUNCH_ARGS)
    flags.extend(extra or [])
    seen = set()
    return [f for f in flags if not (f in seen or seen.add(f))]


# ---------------------------------------------------------------------------
# Request interception: ads/trackers always, heavy resources on request
# ---------------------------------------------------------------------------

AD_SERVING_DOMAINS = frozenset(
    {
        "doubleclick.net",
        "adservice.google.com",
        "googlesyndication.com",
        "googletagservices.com",
        "googletagmanager.com",
        "google-analytics.com",
        "amazon-adsystem.com",
        "adnxs.com",
        "facebook.net",
        "criteo.com",
        "outbrain.com",
        "taboola.com",
        "pubmatic.com",
        "rubiconproject.com",
        "scorecardresearch.com",
        "hotjar.com",
        "popads.net",
        "propellerads.com",
    }
)

BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font", "stylesheet"})


def _hostname(url: str) -> str:
    try:
        after_scheme = url.split("//", 1)[1]
        return after_scheme.split("/", 1)[0].split(":")[0].lower()
    except IndexError:
        return ""


def should_block(url: str, resource_type: str, block_resources: bool) -> bool:
    hostname = _hostname(url)
    if hostname and any(domain in hostname for domain in AD_SERVING_DOMAINS):
        return True
    return block_resources and resource_type in BLOCKED_RESOURCE_TYPES


async def setup_route_blocking(context, block_resources: bool = True):
    """Abort ad/tracker requests, and heavy resource types when requested."""

    async def _route_handler(route, request):
        if should_block(request.url, request.resource_type, block_resources):
            await route.abort()
        else:
            await route.continue_()

    await context.route("**/*", _route_handler)


# ---------------------------------------------------------------------------
# Stealth profile
# ---------------------------------------------------------------------------


def _platform_hint(user_agent: str) -> str:
    if "Win" in user_agent:
        return '"Windows"'
    if "Mac" in user_agent:
        return '"macOS"'
    return '"Linux"'


def _chrome_major(user_agent: str) -> str:
    marker = "Chrome/"
    if marker not in user_agent:
        return "125"
    return user_agent.split(marker, 1)[1].split(".", 1)[0]


# Installed with context.add_init_script; __FINGERPRINT__ is replaced by the
# profile's values as a JSON object.
_INIT_SCRIPT = """
(() => {
    const fp = __FINGERPRINT__;
    const pin = (target, prop, value) => {
        try {
            Object.defineProperty(target, prop, { get: () => value, configurable: true });
        } catch (e) {}
    };

    // Challenge scripts read navigator.webdriver first
    pin(Navigator.prototype, 'webdriver', false);
    pin(navigator, 'languages', ['en-US', 'en']);
    pin(navigator, 'hardwareConcurrency', fp.cores);
    pin(navigator, 'deviceMemory', fp.memory);
    pin(navigator, 'platform', fp.platform);

    // Headless Chrome has no chrome.runtime and an empty plugin list
    if (!window.chrome) {
        window.chrome = { runtime: {}, loadTimes() {}, csi() {} };
    }
    pin(navigator, 'plugins', [
        { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
        { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' },
        { name: 'Native Client', filename: 'internal-nacl-plugin', description: '' },
    ]);

    // UNMASKED_VENDOR_WEBGL (37445) / UNMASKED_RENDERER_WEBGL (37446)
    for (const ctx of [window.WebGLRenderingContext, window.WebGL2RenderingContext]) {
        if (!ctx) continue;
        const getParameter = ctx.prototype.getParameter;
        ctx.prototype.getParameter = function (param) {
            if (param === 37445) return fp.vendor;
            if (param === 37446) return fp.renderer;
            return getParameter.call(this, param);
        };
    }

    // Relay-only ICE so WebRTC cannot expose the address behind the proxy
    const NativeRTC = window.RTCPeerConnection;
    if (NativeRTC) {
        const RelayOnlyRTC = function (config) {
            return new NativeRTC(Object.assign({}, config, { iceTransportPolicy: 'relay' }));
        };
        RelayOnlyRTC.prototype = NativeRTC.prototype;
        window.RTCPeerConnection = RelayOnlyRTC;
        if (window.webkitRTCPeerConnection) window.webkitRTCPeerConnection = RelayOnlyRTC;
    }

    const resolvedOptions = Intl.DateTimeFormat.prototype.resolvedOptions;
    Intl.DateTimeFormat.prototype.resolvedOptions = function () {
        return Object.assign(resolvedOptions.call(this), { timeZone: fp.timezone });
    };

    const permissions = window.Permissions && window.Permissions.prototype;
    if (permissions && permissions.query) {
        const query = permissions.query;
        permissions.query = function (params) {
            if (params && params.name === 'notifications') {
                return Promise.resolve({ state: 'prompt' });
            }
            return query.call(this, params);
        };
    }
})();
"""


def _navigator_platform(user_agent: str) -> str:
    if "Win" in user_agent:
        return "Win32"
    if "Mac" in user_agent:
        return "MacIntel"
    return "Linux x86_64"


@dataclass
class StealthProfile:
    user_agent: str
    viewport: dict
    timezone: str
    webgl_vendor: str
    webgl_renderer: str
    hw_concurrency: int
    device_memory: int
    delay_ms: int
    locale: str = "en-US"
    extra_headers: dict = field(default_factory=dict)
    launch_flags: list = field(default_factory=list)  # process-level, applied by the pool

    def context_kwargs(self) -> dict:
        """Keyword arguments for ``browser.new_context``."""
        return dict(
            user_agent=self.user_agent,
            viewport=dict(self.viewport),
            locale=self.locale,
            timezone_id=self.timezone,
            ignore_https_errors=True,
            java_script_enabled=True,
            has_touch=False,
            is_mobile=False,
            color_scheme="light",
            extra_http_headers=dict(self.extra_headers),
        )

    def init_script(self) -> str:
        """Per-session script that masks headless/automation fingerprints."""
        fingerprint = json.dumps(
            {
                "cores": self.hw_concurrency,
                "memory": self.device_memory,
                "vendor": self.webgl_vendor,
                "renderer": self.webgl_renderer,
                "timezone": self.timezone,
                "platform": _navigator_platform(self.user_agent),
            }
        )
        return _INIT_SCRIPT.replace("__FINGERPRINT__", fingerprint)


class StealthProfileProvider:
    """Hands out a fresh fingerprint per tab lease.

    User agents rotate in table order so consecutive leases never reuse one;
    everything else is randomized. The only state is the rotation index.
    """

    def __init__(self, config: Settings | None = None, rng: random.Random | None = None):
        self._settings = config or default_settings
        self._rng = rng or random.Random()
        self._index = 0

    @property
    def enabled(self) -> bool:
        return self._settings.STEALTH_ENABLED

    def launch_flags(self) -> list[str]:
        return launch_flags(self._settings.STEALTH_ENABLED, self._settings.BROWSER_LAUNCH_ARGS)

    def next_profile(self) -> StealthProfile:
        ua = USER_AGENTS[self._index % len(USER_AGENTS)]
        self._index += 1

        base = self._rng.choice(VIEWPORTS)
        jitter = max(0, self._settings.VIEWPORT_JITTER)
        viewport = {
            "width": base["width"] - self._rng.randint(0, jitter),
            "height": base["height"] - self._rng.randint(0, jitter),
        }
        webgl_vendor, webgl_renderer = self._rng.choice(WEBGL_RENDERERS)

        delay_ms = 0
        if self._settings.STEALTH_ENABLED:
            delay_ms = self._rng.randint(
                self._settings.STEALTH_DELAY_MIN, self._settings.STEALTH_DELAY_MAX
            )

        return StealthProfile(
            user_agent=ua,
            viewport=viewport,
            timezone=self._rng.choice(TIMEZONES),
            webgl_vendor=webgl_vendor,
            webgl_renderer=webgl_renderer,
            hw_concurrency=self._rng.choice([4, 8, 12, 16]),
            device_memory=self._rng.choice([4, 8, 16]),
            delay_ms=delay_ms,
            launch_flags=self.launch_flags(),
            # Sent with every request the tab makes, documents and subresources alike
            extra_headers={
                "Accept-Language": "en-US,en;q=0.9",
                "Sec-Ch-Ua": f'"Chromium";v="{_chrome_major(ua)}", "Google Chrome";v="{_chrome_major(ua)}", "Not-A.Brand";v="99"',
                "Sec-Ch-Ua-Mobile": "?0",
                "Sec-Ch-Ua-Platform": _platform_hint(ua),
            },
        )
