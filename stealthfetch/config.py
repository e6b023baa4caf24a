import logging
from typing import Dict, List

from pydantic_settings import BaseSettings

from stealthfetch.services.proxy import Proxy

_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # App
    APP_NAME: str = "stealthfetch"
    APP_VERSION: str = "0.1.0"

    # Browser pool
    BROWSER_INSTANCES: int = 2
    MAX_CONCURRENT_TABS: int = 6
    MAX_TABS_PER_BROWSER: int = 4
    BROWSER_HEADLESS: bool = True
    BROWSER_LAUNCH_ARGS: List[str] = []  # appended to the built-in flag template
    BROWSER_CDP_ENDPOINTS: List[str] = []  # slot i connects here instead of launching

    # Timeouts
    DEFAULT_TIMEOUT: int = 30000  # ms
    NAVIGATION_TIMEOUT: int = 60000  # ms
    SELECTOR_TIMEOUT: int = 30000  # ms
    LAUNCH_REDIRECT_TIMEOUT: int = 120000  # ms
    ACQUIRE_TIMEOUT: int = 30000  # ms
    FETCH_TIMEOUT: int = 180  # seconds, caller-level default

    # Retry
    MAX_RETRIES: int = 3
    RETRY_DELAY: int = 1000  # ms, doubled per attempt
    RETRY_BACKOFF_MAX: int = 15000  # ms

    # Stealth
    STEALTH_ENABLED: bool = True
    STEALTH_DELAY_MIN: int = 500  # ms
    STEALTH_DELAY_MAX: int = 2000  # ms
    VIEWPORT_JITTER: int = 24  # px
    BLOCK_RESOURCES: bool = True

    # Proxy (single upstream proxy; BROWSER_PROXIES overrides it per browser slot)
    PROXY_SERVER: str = ""  # host:port
    PROXY_PROTOCOL: str = "http"
    PROXY_USERNAME: str = ""
    PROXY_PASSWORD: str = ""
    BROWSER_PROXIES: List[str] = []

    # Relay (CroxyProxy-style web proxy)
    RELAY_URL: str = "https://www.croxyproxy.com/"
    RELAY_INPUT_SELECTOR: str = "input#url"
    RELAY_SUBMIT_SELECTOR: str = "#requestSubmit"
    RELAY_SUCCESS_SELECTOR: str = "#__cpsHeaderTab"

    # Public proxy list tried after the direct fetch (host:port or scheme://host:port per line)
    PROXY_LIST_ENABLED: bool = True
    PROXY_LIST_URL: str = "https://www.proxy-list.download/api/v1/get?type=https"
    PROXY_LIST_TTL: int = 360  # seconds
    PROXY_LIST_REQUEST_TIMEOUT: float = 6  # seconds per proxied request
    PROXY_LIST_MAX_PROXIES: int = 20  # tried per fetch

    # Fallback chain: share of the time left that the relay may use while
    # later strategies are still pending
    RELAY_BUDGET_SHARE: float = 0.6

    # Alternate hosts serving the same paths, e.g. {"example.com": ["api.example.com"]}
    MIRROR_HOSTS: Dict[str, List[str]] = {}

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 50

    # Cache
    CACHE_ENABLED: bool = True
    CACHE_TTL_SECONDS: int = 3600
    CACHE_INFLIGHT_TTL: int = 180  # seconds
    CACHE_INFLIGHT_WAIT: float = 90  # seconds
    CACHE_INFLIGHT_POLL_INTERVAL: float = 0.5  # seconds

    # Logging
    LOG_FORMAT: str = "json"  # "json" for production, "text" for development
    LOG_LEVEL: str = "INFO"

    # Metrics
    METRICS_ENABLED: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def model_post_init(self, __context) -> None:
        if self.STEALTH_DELAY_MAX < self.STEALTH_DELAY_MIN:
            _logger.warning(
                "STEALTH_DELAY_MAX (%d) < STEALTH_DELAY_MIN (%d); using MIN for both.",
                self.STEALTH_DELAY_MAX,
                self.STEALTH_DELAY_MIN,
            )
            object.__setattr__(self, "STEALTH_DELAY_MAX", self.STEALTH_DELAY_MIN)

    @property
    def proxy(self) -> Proxy | None:
        """The single configured upstream proxy, if any."""
        if not self.PROXY_SERVER:
            return None
        scheme = self.PROXY_PROTOCOL or "http"
        proxy = Proxy.from_url(f"{scheme}://{self.PROXY_SERVER}")
        proxy.username = self.PROXY_USERNAME or None
        proxy.password = self.PROXY_PASSWORD or None
        return proxy

    @property
    def browser_proxies(self) -> list[Proxy]:
        """Proxies to spread over browser slots (falls back to the single proxy)."""
        proxies = [Proxy.from_url(url) for url in self.BROWSER_PROXIES if url.strip()]
        if not proxies and self.proxy:
            proxies = [self.proxy]
        return proxies


settings = Settings()
