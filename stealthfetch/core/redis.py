"""Redis access for the scrape cache.

Cache reads and writes must never fail a fetch. Connection problems are
answered with the command's neutral result (a miss, a dropped write), the
client is rebuilt with growing delays, and after a run of failures Redis is
left alone for a cooldown period.
"""

import asyncio
import logging
import time

import redis.asyncio as aioredis

from stealthfetch.config import settings

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (aioredis.ConnectionError, aioredis.TimeoutError, OSError)


class ResilientRedis:
    """The handful of Redis commands the scrape cache uses, made outage-proof.

    Every command goes through ``_call``: connection failures count towards
    a breaker that trips after CB_THRESHOLD in a row and bypasses Redis for
    CB_COOLDOWN seconds. Other Redis errors (wrong type, bad arguments)
    propagate unchanged.
    """

    CB_THRESHOLD = 5
    CB_COOLDOWN = 10.0
    MAX_BACKOFF = 30.0

    def __init__(self, url: str | None = None, max_connections: int | None = None):
        self._url = url or settings.REDIS_URL
        self._max_connections = max_connections or settings.REDIS_MAX_CONNECTIONS
        self._client: aioredis.Redis | None = None
        self._failures = 0
        self._circuit_open_until = 0.0
        self._reconnect_delay = 1.0

    def _create_client(self) -> aioredis.Redis:
        return aioredis.from_url(
            self._url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = self._create_client()
        return self._client

    @property
    def degraded(self) -> bool:
        return self._failures > 0

    def _breaker_open(self) -> bool:
        if self._failures < self.CB_THRESHOLD:
            return False
        if time.monotonic() < self._circuit_open_until:
            return True
        self._failures = 0  # half-open: the next command is a trial
        return False

    def _on_failure(self, command: str, exc: BaseException):
        self._failures += 1
        logger.warning(f"Redis {command} failed, cache degraded ({self._failures} in a row): {exc}")
        if self._failures == self.CB_THRESHOLD:
            self._circuit_open_until = time.monotonic() + self.CB_COOLDOWN
            logger.warning(f"Redis breaker tripped, bypassing the cache for {self.CB_COOLDOWN:.0f}s")

    async def _rebuild(self):
        stale, self._client = self._client, None
        if stale is not None:
            try:
                await stale.aclose()
            except _CONNECTION_ERRORS as e:
                logger.debug(f"Closing stale Redis client failed: {e}")
        delay = self._reconnect_delay
        self._reconnect_delay = min(delay * 2, self.MAX_BACKOFF)
        await asyncio.sleep(delay)

    async def _call(self, command: str, default, *args, **kwargs):
        if self._breaker_open():
            return default
        method = getattr(self.client, command)
        try:
            result = await method(*args, **kwargs)
        except _CONNECTION_ERRORS as e:
            self._on_failure(command, e)
            await self._rebuild()
            return default
        self._failures = 0
        self._reconnect_delay = 1.0
        return result

    async def get(self, key: str) -> str | None:
        return await self._call("get", None, key)

    async def set(self, key: str, value: str, *, ex: int | None = None, nx: bool = False):
        """SET with optional EX/NX; falsy when NX lost the race or Redis is down."""
        return await self._call("set", False, key, value, ex=ex, nx=nx)

    async def setex(self, key: str, ttl: int, value: str):
        return await self._call("setex", False, key, ttl, value)

    async def delete(self, *keys: str) -> int:
        return await self._call("delete", 0, *keys)

    async def exists(self, *keys: str) -> int:
        return await self._call("exists", 0, *keys)

    async def close(self):
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.aclose()
            except _CONNECTION_ERRORS as e:
                logger.debug(f"Redis close failed: {e}")


redis_client = ResilientRedis()
