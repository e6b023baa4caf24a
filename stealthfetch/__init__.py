"""stealthfetch: browser pool and resilient navigation for hostile sites.

    from stealthfetch import fetch_html

    html = await fetch_html("https://example.com/")
"""

from stealthfetch.client import (
    FetchOptions,
    StealthFetcher,
    fetch_html,
    get_fetcher,
    shutdown,
)
from stealthfetch.core.exceptions import FetchError
from stealthfetch.services.fallback import FetchResult

__all__ = [
    "FetchError",
    "FetchOptions",
    "FetchResult",
    "StealthFetcher",
    "fetch_html",
    "get_fetcher",
    "shutdown",
]
