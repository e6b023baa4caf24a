import asyncio
import gzip
import json
import logging
import random
import zlib
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx
from curl_cffi.requests import AsyncSession as CurlAsyncSession
from curl_cffi.requests.exceptions import ProxyError as CurlProxyError
from curl_cffi.requests.exceptions import RequestException as CurlRequestException
from curl_cffi.requests.exceptions import Timeout as CurlTimeout

from stealthfetch.config import Settings, settings as default_settings
from stealthfetch.core.exceptions import (
    ChallengeDetected,
    ContentValidationError,
    FetchTimeoutError,
    NavigationError,
    ProxyError,
)
from stealthfetch.services.challenge import ISP_BLOCK_MARKERS, block_marker
from stealthfetch.services.proxy import Proxy

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"

EXPECT_KINDS = ("html", "json", "any")

# TLS fingerprints for the direct fetch, tried in rotation
CURL_CFFI_PROFILES = ["chrome124", "chrome120", "safari17_0", "edge101"]

HEADER_ROTATION_POOL = [
    {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Ch-Ua": '"Chromium";v="124", "Google Chrome";v="124", "Not-A.Brand";v="99"',
        "Sec-Ch-Ua-Mobile": "?0",
        "Sec-Ch-Ua-Platform": '"Windows"',
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Sec-Fetch-User": "?1",
        "Upgrade-Insecure-Requests": "1",
    },
    {
        "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Ch-Ua": '"Chromium";v="125", "Google Chrome";v="125", "Not-A.Brand";v="99"',
        "Sec-Ch-Ua-Mobile": "?0",
        "Sec-Ch-Ua-Platform": '"macOS"',
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Upgrade-Insecure-Requests": "1",
    },
    {
        "User-Agent": "Mozilla/5.0 (X11; Linux x86_64; rv:126.0) Gecko/20100101 Firefox/126.0",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Upgrade-Insecure-Requests": "1",
    },
]

_JSON_ACCEPT = "application/json, text/plain;q=0.9, */*;q=0.8"


@dataclass
class HttpResponse:
    body: bytes
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    url: str = ""

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


# ---------------------------------------------------------------------------
# Body decoding and validation
# ---------------------------------------------------------------------------


def _charset(content_type: str) -> str:
    for part in content_type.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip("\"'")
    return "utf-8"


def decode_body(body: bytes, content_type: str = "") -> str:
    """Decode a response body, inflating it first if it is still gzip-compressed.

    Some upstreams gzip the payload without a Content-Encoding header, so the
    client hands back compressed bytes. Undecodable bytes are replaced.
    """
    if body[:2] == GZIP_MAGIC:
        try:
            body = gzip.decompress(body)
        except (OSError, EOFError, zlib.error) as e:
            logger.debug(f"Body has gzip magic but does not inflate: {e}")
    try:
        return body.decode(_charset(content_type), errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def _is_json_type(content_type: str) -> bool:
    ct = content_type.split(";")[0].strip().lower()
    return ct == "application/json" or ct.endswith("+json") or ct == "text/json"


def _is_html_type(content_type: str) -> bool:
    ct = content_type.split(";")[0].strip().lower()
    return ct in ("text/html", "application/xhtml+xml")


def validate_text(
    text: str,
    content_type: str = "",
    expect: str = "html",
    status_code: int = 200,
    url: str | None = None,
) -> str:
    """Reject responses that are not usable content; return the text otherwise.

    Raises ContentValidationError for bad status, empty body or a content
    type that does not match ``expect``, and ChallengeDetected for block
    pages.
    """
    if expect not in EXPECT_KINDS:
        raise ValueError(f"expect must be one of {EXPECT_KINDS}, got {expect!r}")
    if not 200 <= status_code < 300:
        raise ContentValidationError(
            f"HTTP {status_code}", status_code=status_code, url=url
        )
    if not text or not text.strip():
        raise ContentValidationError("Empty body", status_code=status_code, url=url)

    if expect == "json":
        if content_type and not _is_json_type(content_type):
            raise ContentValidationError(
                f"Expected JSON, got {content_type}", status_code=status_code, url=url
            )
        try:
            json.loads(text)
        except ValueError as e:
            raise ContentValidationError(
                f"Body is not valid JSON: {e}", status_code=status_code, url=url
            ) from e
        for marker in ISP_BLOCK_MARKERS:
            if marker in text:
                raise ChallengeDetected(marker, url=url)
        return text

    if expect == "html" and content_type and not _is_html_type(content_type):
        raise ContentValidationError(
            f"Expected HTML, got {content_type}", status_code=status_code, url=url
        )
    marker = block_marker(text)
    if marker:
        raise ChallengeDetected(marker, url=url)
    return text


def validate_response(response: HttpResponse, expect: str = "html") -> str:
    text = decode_body(response.body, response.content_type) if response.body else ""
    return validate_text(
        text,
        content_type=response.content_type,
        expect=expect,
        status_code=response.status_code,
        url=response.url or None,
    )


def mirror_urls(url: str, mirror_hosts: dict[str, list[str]]) -> list[str]:
    """Same path and query on every configured alternate host for ``url``'s host."""
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    alternates = mirror_hosts.get(host)
    if alternates is None and host.startswith("www."):
        alternates = mirror_hosts.get(host[4:])
    urls = []
    for alt in alternates or []:
        if "://" in alt:
            alt_parts = urlsplit(alt)
            scheme, netloc = alt_parts.scheme, alt_parts.netloc
        else:
            scheme, netloc = parts.scheme, alt
        candidate = urlunsplit((scheme, netloc, parts.path, parts.query, ""))
        if candidate != url and candidate not in urls:
            urls.append(candidate)
    return urls


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class HttpFetcher:
    """Plain-HTTP fetches: curl_cffi for the target, httpx for mirror/API hosts.

    Both clients are pooled and recreated when the running event loop
    changes. Requests through the configured upstream proxy use fresh
    clients.
    """

    def __init__(self, config: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = config or default_settings
        self._transport = transport
        self._httpx_client: httpx.AsyncClient | None = None
        self._httpx_loop_id: int | None = None
        self._curl_sessions: dict[str, Any] = {}
        self._curl_loop_id: int | None = None
        self._profile_index = random.randrange(len(CURL_CFFI_PROFILES))

    @property
    def _proxy_url(self) -> str | None:
        proxy = self._settings.proxy
        return proxy.url if proxy else None

    def _headers(self, expect: str) -> dict[str, str]:
        headers = random.choice(HEADER_ROTATION_POOL).copy()
        headers["Accept-Encoding"] = "gzip, deflate"
        if expect == "json":
            headers["Accept"] = _JSON_ACCEPT
        return headers

    def _get_httpx_client(self) -> httpx.AsyncClient:
        current_loop_id = id(asyncio.get_running_loop())
        if (
            self._httpx_client is None
            or self._httpx_client.is_closed
            or self._httpx_loop_id != current_loop_id
        ):
            self._httpx_client = httpx.AsyncClient(
                follow_redirects=True, http2=True, timeout=30, transport=self._transport
            )
            self._httpx_loop_id = current_loop_id
        return self._httpx_client

    def _get_curl_session(self, profile: str):
        current_loop_id = id(asyncio.get_running_loop())
        if self._curl_loop_id != current_loop_id:
            # Sessions bound to a dead loop cannot be awaited; drop them
            self._curl_sessions.clear()
            self._curl_loop_id = current_loop_id
        if profile not in self._curl_sessions:
            self._curl_sessions[profile] = CurlAsyncSession(impersonate=profile)
        return self._curl_sessions[profile]

    def _next_profile(self) -> str:
        profile = CURL_CFFI_PROFILES[self._profile_index % len(CURL_CFFI_PROFILES)]
        self._profile_index += 1
        return profile

    async def _curl_get(
        self,
        url: str,
        timeout: float,
        expect: str,
        profile: str,
        operation: str,
        proxy_url: str | None = None,
        verify: bool = True,
    ):
        headers = self._headers(expect)
        kwargs: dict[str, Any] = dict(timeout=timeout, allow_redirects=True, headers=headers)
        if not verify:
            kwargs["verify"] = False
        try:
            if proxy_url:
                async with CurlAsyncSession(impersonate=profile) as session:
                    return await session.get(url, proxy=proxy_url, **kwargs)
            session = self._get_curl_session(profile)
            return await session.get(url, **kwargs)
        except CurlTimeout as e:
            raise FetchTimeoutError(operation, timeout, url=url) from e
        except CurlProxyError as e:
            raise ProxyError(f"Proxy failed for {url}: {e}", url=url) from e
        except CurlRequestException as e:
            raise NavigationError(f"{operation.capitalize()} of {url} failed: {e}", url=url) from e

    @staticmethod
    def _from_curl(response) -> HttpResponse:
        return HttpResponse(
            body=response.content or b"",
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            url=str(response.url),
        )

    async def fetch_direct(
        self, url: str, timeout: float, expect: str = "html", profile: str | None = None
    ) -> HttpResponse:
        """GET ``url`` with a browser TLS fingerprint and rotated headers."""
        profile = profile or self._next_profile()
        response = await self._curl_get(
            url, timeout, expect, profile, "direct fetch", proxy_url=self._proxy_url
        )
        logger.debug(f"Direct fetch {url} [{profile}] -> {response.status_code}")
        return self._from_curl(response)

    async def fetch_via_proxy(
        self, url: str, proxy: Proxy, timeout: float, expect: str = "html"
    ) -> HttpResponse:
        """GET ``url`` through one listed proxy on a throwaway session.

        Certificates are not verified; public proxies commonly re-sign TLS.
        """
        profile = self._next_profile()
        response = await self._curl_get(
            url, timeout, expect, profile, "proxied fetch", proxy_url=proxy.url, verify=False
        )
        logger.debug(f"Proxied fetch {url} via {proxy} -> {response.status_code}")
        return self._from_curl(response)

    async def fetch_mirror(self, url: str, timeout: float, expect: str = "html") -> HttpResponse:
        """GET ``url`` over httpx (HTTP/2), used for mirror and API hosts."""
        headers = self._headers(expect)
        proxy_url = self._proxy_url
        try:
            if proxy_url:
                async with httpx.AsyncClient(
                    follow_redirects=True,
                    timeout=timeout,
                    headers=headers,
                    http2=True,
                    proxy=proxy_url,
                ) as client:
                    response = await client.get(url)
            else:
                client = self._get_httpx_client()
                response = await client.get(url, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError("mirror fetch", timeout, url=url) from e
        except httpx.ProxyError as e:
            raise ProxyError(f"Proxy failed for {url}: {e}", url=url) from e
        except httpx.HTTPError as e:
            raise NavigationError(f"Mirror fetch of {url} failed: {e}", url=url) from e

        logger.debug(f"Mirror fetch {url} -> {response.status_code}")
        return HttpResponse(
            body=response.content,
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            url=str(response.url),
        )

    async def aclose(self):
        if self._httpx_client is not None:
            await self._httpx_client.aclose()
            self._httpx_client = None
            self._httpx_loop_id = None
        for session in self._curl_sessions.values():
            try:
                await session.close()
            except CurlRequestException as e:
                logger.debug(f"curl session close failed: {e}")
        self._curl_sessions.clear()
        self._curl_loop_id = None
