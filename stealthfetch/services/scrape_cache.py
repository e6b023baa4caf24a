import asyncio
import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from stealthfetch.config import Settings, settings as default_settings
from stealthfetch.core import metrics
from stealthfetch.core.redis import ResilientRedis, redis_client
from stealthfetch.services.fallback import FetchResult

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache:fetch:"
INFLIGHT_PREFIX = "inflight:fetch:"

_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Canonical form used for keys: lowercase scheme/host, no default port,
    no fragment, query pairs sorted."""
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        host = f"{userinfo}@{host}"
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, host, parts.path or "/", query, ""))


def _digest(url: str, variant: str) -> str:
    key_data = f"{normalize_url(url)}|{variant}"
    return hashlib.sha256(key_data.encode()).hexdigest()


def cache_key(url: str, variant: str = "html") -> str:
    """SHA256-based cache key from the normalized URL and the fetch variant."""
    return f"{CACHE_PREFIX}{_digest(url, variant)}"


def inflight_key(url: str, variant: str = "html") -> str:
    return f"{INFLIGHT_PREFIX}{_digest(url, variant)}"


@dataclass
class CacheEntry:
    content: str
    content_type: str
    strategy: str
    url: str
    created_at: float

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        return cls(
            content=data["content"],
            content_type=data.get("content_type", "text/html"),
            strategy=data.get("strategy", ""),
            url=data.get("url", ""),
            created_at=float(data.get("created_at", 0)),
        )

    def to_result(self) -> FetchResult:
        return FetchResult(
            content=self.content,
            content_type=self.content_type,
            strategy=self.strategy,
            url=self.url,
            from_cache=True,
        )


@dataclass
class _Flight:
    task: asyncio.Task
    waiters: int = 0


class ScrapeCache:
    """Memoize fetches in Redis with at-most-one concurrent compute per key.

    Inside the process, callers asking for a key that is already being
    fetched await the same task; the task is cancelled only when all of
    them have gone. Across processes an in-flight claim (SET NX EX) makes
    late peers poll for the leader's result before fetching themselves.
    """

    def __init__(self, redis: ResilientRedis | None = None, config: Settings | None = None):
        self._redis = redis if redis is not None else redis_client
        self._settings = config or default_settings
        self._flights: dict[str, _Flight] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._flights)

    def _count(self, result: str):
        if self._settings.METRICS_ENABLED:
            metrics.scrape_cache_requests_total.labels(result=result).inc()

    async def get(self, url: str, variant: str = "html") -> FetchResult | None:
        if not self._settings.CACHE_ENABLED:
            return None
        try:
            raw = await self._redis.get(cache_key(url, variant))
            if raw:
                logger.debug(f"Cache hit for {url}")
                return CacheEntry.from_json(raw).to_result()
        except Exception as e:
            logger.warning(f"Cache get failed: {e}")
        return None

    async def set(
        self, url: str, result: FetchResult, ttl: int | None = None, variant: str = "html"
    ) -> bool:
        """Store a validated result; empty content is never cached."""
        if not self._settings.CACHE_ENABLED or not result.content:
            return False
        ttl = ttl or self._settings.CACHE_TTL_SECONDS
        entry = CacheEntry(
            content=result.content,
            content_type=result.content_type,
            strategy=result.strategy,
            url=result.url or url,
            created_at=time.time(),
        )
        try:
            stored = await self._redis.setex(cache_key(url, variant), ttl, entry.to_json())
            logger.debug(f"Cached {url} (TTL={ttl}s)")
            return bool(stored)
        except Exception as e:
            logger.warning(f"Cache set failed: {e}")
            return False

    async def close(self):
        await self._redis.close()

    async def _try_claim(self, url: str, variant: str) -> bool:
        try:
            acquired = await self._redis.set(
                inflight_key(url, variant),
                "1",
                nx=True,
                ex=self._settings.CACHE_INFLIGHT_TTL,
            )
            return bool(acquired)
        except Exception as e:
            logger.warning(f"In-flight claim failed: {e}")
            return True  # on error, fall through to fetch normally

    async def _release_claim(self, url: str, variant: str):
        try:
            await self._redis.delete(inflight_key(url, variant))
        except Exception as e:
            logger.warning(f"In-flight release failed: {e}")

    async def _wait_for_peer(self, url: str, variant: str) -> FetchResult | None:
        """Poll for a result another process is fetching, until its claim goes away."""
        s = self._settings
        elapsed = 0.0
        while elapsed < s.CACHE_INFLIGHT_WAIT:
            cached = await self.get(url, variant)
            if cached is not None:
                logger.debug(f"Got cached result after waiting {elapsed:.1f}s for {url}")
                return cached
            if not await self._redis.exists(inflight_key(url, variant)):
                break
            await asyncio.sleep(s.CACHE_INFLIGHT_POLL_INTERVAL)
            elapsed += s.CACHE_INFLIGHT_POLL_INTERVAL
        logger.debug(f"No peer result for {url} after {elapsed:.1f}s, fetching")
        return None

    async def _lead(self, url: str, variant: str, ttl: int | None, compute) -> FetchResult:
        claimed = await self._try_claim(url, variant)
        if not claimed:
            peer_result = await self._wait_for_peer(url, variant)
            if peer_result is not None:
                return peer_result
        try:
            result = await compute()
            await self.set(url, result, ttl=ttl, variant=variant)
            return result
        finally:
            if claimed:
                await asyncio.shield(self._release_claim(url, variant))

    async def get_or_fetch(
        self,
        url: str,
        compute,
        ttl: int | None = None,
        variant: str = "html",
    ) -> FetchResult:
        """Return the cached result for ``url`` or run ``compute`` once to fill it.

        ``compute`` is a zero-argument coroutine function returning a
        validated FetchResult; its errors propagate to every waiting caller
        and nothing is cached.
        """
        if not self._settings.CACHE_ENABLED:
            return await compute()

        cached = await self.get(url, variant)
        if cached is not None:
            self._count("hit")
            return cached

        key = cache_key(url, variant)
        flight = self._flights.get(key)
        if flight is None:
            self._count("miss")
            flight = _Flight(task=asyncio.ensure_future(self._lead(url, variant, ttl, compute)))
            self._flights[key] = flight

            def _forget(_task, key=key, flight=flight):
                if self._flights.get(key) is flight:
                    del self._flights[key]

            flight.task.add_done_callback(_forget)
        else:
            self._count("coalesced")
            logger.debug(f"Joining in-flight fetch for {url}")

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                logger.debug(f"All callers left, cancelling fetch for {url}")
                flight.task.cancel()
