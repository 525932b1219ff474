"""
HTTP connection pooling for gateway requests.

One pool per API base URL is shared by every repository gateway that talks to
that host, so coordinated operations over many repositories reuse the same
connections (HTTP/2 multiplexed) and the same API quota. The pool reads the
``X-RateLimit-*`` headers of every response and, once the remaining quota
drops to ``rate_limit_buffer``, waits for the reset before sending more.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

log = structlog.get_logger(__name__)


@dataclass
class RateLimitStatus:
    """Last quota reported by the API host."""

    limit: int | None = None
    remaining: int | None = None
    reset_at: float | None = None
    """Epoch seconds at which the quota resets."""

    def update(self, headers: httpx.Headers) -> None:
        for attr, header in (
            ("limit", "x-ratelimit-limit"),
            ("remaining", "x-ratelimit-remaining"),
            ("reset_at", "x-ratelimit-reset"),
        ):
            value = headers.get(header)
            if value is None:
                continue
            try:
                setattr(self, attr, float(value) if attr == "reset_at" else int(value))
            except ValueError:
                log.debug("invalid_rate_limit_header", header=header, value=value)

    def seconds_until_reset(self, now: float | None = None) -> float:
        if self.reset_at is None:
            return 0.0
        return max(self.reset_at - (time.time() if now is None else now), 0.0)


class HTTPConnectionPool:
    """Lazily initialized ``httpx.AsyncClient`` for one API host."""

    def __init__(
        self,
        base_url: str,
        max_connections: int = 10,
        max_keepalive_connections: int = 5,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        rate_limit_buffer: int = 10,
        max_rate_limit_wait: float = 60.0,
    ) -> None:
        self.base_url = base_url
        self.max_connections = max_connections
        self.max_keepalive_connections = max_keepalive_connections
        self.timeout = timeout
        self.headers = headers or {}
        self.rate_limit_buffer = rate_limit_buffer
        self.max_rate_limit_wait = max_rate_limit_wait
        self.rate_limit = RateLimitStatus()
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the underlying client if it does not exist yet."""
        async with self._lock:
            if self._client is None:
                limits = httpx.Limits(
                    max_keepalive_connections=self.max_keepalive_connections,
                    max_connections=self.max_connections,
                    keepalive_expiry=30.0,
                )

                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    limits=limits,
                    timeout=self.timeout,
                    http2=True,
                    headers=self.headers,
                )

                log.info(
                    "connection_pool_initialized",
                    base_url=self.base_url,
                    max_connections=self.max_connections,
                )

    async def close(self) -> None:
        """Close the underlying client."""
        async with self._lock:
            if self._client:
                await self._client.aclose()
                self._client = None
                log.info("connection_pool_closed", base_url=self.base_url)

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send one request, initializing the client on first use.

        Waits for the quota reset first when the last response left at most
        ``rate_limit_buffer`` requests.
        """
        if self._client is None:
            await self.initialize()
        assert self._client is not None

        await self._respect_rate_limit()
        response = await self._client.request(method, path, **kwargs)
        self.rate_limit.update(response.headers)
        return response

    async def _respect_rate_limit(self) -> None:
        remaining = self.rate_limit.remaining
        if remaining is None or remaining > self.rate_limit_buffer:
            return

        wait = min(self.rate_limit.seconds_until_reset(), self.max_rate_limit_wait)
        if wait <= 0:
            return

        log.warning("rate_limit_low_waiting", base_url=self.base_url, remaining=remaining, wait=wait)
        await asyncio.sleep(wait)
        # The next response reports the refreshed quota
        self.rate_limit.remaining = None

    async def __aenter__(self) -> "HTTPConnectionPool":
        await self.initialize()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class ConnectionPoolManager:
    """Named pools, one per API host."""

    def __init__(self) -> None:
        self._pools: dict[str, HTTPConnectionPool] = {}
        self._lock = asyncio.Lock()

    async def get_pool(
        self,
        name: str,
        base_url: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
    ) -> HTTPConnectionPool:
        """Get or create a named connection pool."""
        async with self._lock:
            if name not in self._pools:
                pool = HTTPConnectionPool(base_url=base_url, timeout=timeout, headers=headers)
                await pool.initialize()
                self._pools[name] = pool
                log.info("connection_pool_created", name=name, base_url=base_url)

            return self._pools[name]

    async def close_all(self) -> None:
        """Close all connection pools."""
        async with self._lock:
            for pool in self._pools.values():
                await pool.close()
            self._pools.clear()
            log.info("all_connection_pools_closed")


_pool_manager = ConnectionPoolManager()


async def get_pool(
    name: str,
    base_url: str,
    timeout: float = 30.0,
    headers: dict[str, str] | None = None,
) -> HTTPConnectionPool:
    """Get a named connection pool from the global manager."""
    return await _pool_manager.get_pool(name=name, base_url=base_url, timeout=timeout, headers=headers)


async def close_all_pools() -> None:
    """Close every pool held by the global manager."""
    await _pool_manager.close_all()
