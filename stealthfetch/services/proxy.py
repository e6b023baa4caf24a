import logging
import re
from dataclasses import dataclass
from urllib.parse import quote, urlparse

logger = logging.getLogger(__name__)

_SUPPORTED_PROTOCOLS = ("http", "https", "socks4", "socks5")
_HOST_PORT = re.compile(r"^[^:\s/]+:\d+$")


@dataclass
class Proxy:
    protocol: str  # http, https, socks4, socks5
    host: str
    port: int
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_url(cls, url: str) -> "Proxy":
        """Parse a proxy URL (or bare host:port) into a Proxy object."""
        url = url.strip()
        if "://" not in url:
            url = f"http://{url}"
        parsed = urlparse(url)
        protocol = (parsed.scheme or "http").lower()
        if protocol not in _SUPPORTED_PROTOCOLS:
            raise ValueError(f"Unsupported proxy protocol: {protocol}")
        return cls(
            protocol=protocol,
            host=parsed.hostname or "",
            port=parsed.port or 8080,
            username=parsed.username,
            password=parsed.password,
        )

    @property
    def server(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def url(self) -> str:
        """Full URL including credentials, for HTTP clients."""
        if self.username:
            auth = quote(self.username, safe="")
            if self.password:
                auth += ":" + quote(self.password, safe="")
            return f"{self.protocol}://{auth}@{self.host}:{self.port}"
        return self.server

    def to_playwright(self) -> dict:
        """Playwright launch/context proxy option."""
        opts: dict = {"server": self.server}
        if self.username:
            opts["username"] = self.username
            opts["password"] = self.password or ""
        return opts

    def __str__(self) -> str:
        # Never log credentials
        return self.server


def assign_proxies(proxies: list[Proxy], slots: int) -> list[Proxy | None]:
    """Spread proxies round-robin over browser slots (None when there are none)."""
    if not proxies:
        return [None] * slots
    assigned = [proxies[i % len(proxies)] for i in range(slots)]
    if len(proxies) > slots:
        logger.info(
            f"{len(proxies)} proxies configured for {slots} browser slots; "
            f"only the first {slots} are used"
        )
    return assigned


def parse_proxy_list(text: str) -> list[Proxy]:
    """Proxies from a plain-text list, one per line.

    A line is either ``host:port`` (taken as an https proxy) or a full URL
    with an http, https, socks4 or socks5 scheme. Blank lines, ``#``
    comments and anything else are skipped.
    """
    proxies = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "://" not in line:
            if not _HOST_PORT.match(line):
                continue
            line = f"https://{line}"
        try:
            proxies.append(Proxy.from_url(line))
        except ValueError:
            logger.debug(f"Skipping proxy list entry {line!r}")
    return proxies
