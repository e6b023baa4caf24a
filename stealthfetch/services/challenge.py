"""Classify pages as blocked, transitional or done.

Both the current URL and the page text are consulted: some challenge
responses keep the original URL, others keep a generic title.
"""

import enum
import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class PageVerdict(str, enum.Enum):
    BLOCKED = "blocked"  # error URL or challenge text, retry
    LAUNCHING = "launching"  # relay interstitial, wait for the final redirect
    SUCCEEDED = "succeeded"  # success selector present
    PENDING = "pending"  # nothing conclusive yet


@dataclass(frozen=True)
class ChallengeSignature:
    url_markers: tuple[str, ...] = ()
    text_markers: tuple[str, ...] = ()
    launching_markers: tuple[str, ...] = ()
    success_selector: str | None = None


@dataclass
class Classification:
    verdict: PageVerdict
    marker: str | None = None
    source: str | None = None  # "url" or "text"


# CroxyProxy-style relay
RELAY_SIGNATURE = ChallengeSignature(
    url_markers=("/requests?fso=",),
    text_markers=("your session has outdated", "something went wrong", "web proxy server"),
    launching_markers=("proxy is launching",),
    success_selector="#__cpsHeaderTab",
)

# ISP interception pages served with a 200 instead of the real content
ISP_BLOCK_MARKERS = (
    "internetbaik.telkomsel.com",
    "VmaxAdManager.js",
    "VmaxAdHelper",
)

# Strong anti-bot phrases, only trusted on short pages
_BLOCK_PATTERNS = [
    "just a moment",
    "checking your browser",
    "verify you are human",
    "verify you're human",
    "are you a robot",
    "not a robot",
    "attention required",
    "please wait while we verify",
    "performance & security by cloudflare",
    "sucuri website firewall",
    "pardon our interruption",
    "unusual traffic",
    "access denied",
    "enable javascript",
    "your connection needs to be verified",
]

_SHORT_PAGE_CHARS = 3000


class ChallengeDetector:
    """Match a page against a ChallengeSignature.

    Blocking signals win over the launching marker, which wins over the
    success selector; a page can carry a stale success header while the
    relay is already showing an error.
    """

    def __init__(self, signature: ChallengeSignature = RELAY_SIGNATURE):
        self.signature = signature

    @property
    def success_selector(self) -> str | None:
        return self.signature.success_selector

    def classify(self, url: str, text: str, success: bool = False) -> Classification:
        url = url or ""
        lowered = (text or "").lower()

        for marker in self.signature.url_markers:
            if marker in url:
                return Classification(PageVerdict.BLOCKED, marker, "url")
        for marker in self.signature.text_markers:
            if marker.lower() in lowered:
                return Classification(PageVerdict.BLOCKED, marker, "text")
        for marker in self.signature.launching_markers:
            if marker.lower() in lowered:
                return Classification(PageVerdict.LAUNCHING, marker, "text")
        if success:
            return Classification(PageVerdict.SUCCEEDED)
        return Classification(PageVerdict.PENDING)


def _visible_text(html: str) -> str:
    body_match = re.search(r"<body[^>]*>(.*?)</body>", html, re.DOTALL | re.IGNORECASE)
    body_html = body_match.group(1) if body_match else html
    for tag in ("script", "style", "noscript"):
        body_html = re.sub(
            rf"<{tag}[^>]*>.*?</{tag}>", " ", body_html, flags=re.DOTALL | re.IGNORECASE
        )
    text = re.sub(r"<[^>]+>", " ", body_html).strip().lower()
    return re.sub(r"\s+", " ", text)


def block_marker(html: str | None) -> str | None:
    """Return the marker that identifies ``html`` as a block page, if any."""
    if not html:
        return None

    for marker in ISP_BLOCK_MARKERS:
        if marker in html:
            return marker

    body_text = _visible_text(html)
    # Pages with substantial visible text are never block pages
    if len(body_text) > _SHORT_PAGE_CHARS:
        return None

    head = html[:5000].lower()
    for pattern in _BLOCK_PATTERNS:
        if pattern in body_text or pattern in head:
            logger.debug(f"block_marker: matched '{pattern}' ({len(body_text)} chars visible)")
            return pattern
    return None


def looks_blocked(html: str | None) -> bool:
    return block_marker(html) is not None
