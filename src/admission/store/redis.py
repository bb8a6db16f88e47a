"""Redis counting store implementation."""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from admission.store.base import CountingStore, StoreResult, WindowCount, now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Trim, count, conditionally record and refresh TTL in one atomic step.
# Returns {count_including_attempt, oldest_score?}.
INCREMENT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local ttl = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count < limit then
    redis.call('ZADD', key, now, member)
    redis.call('PEXPIRE', key, ttl)
end

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
    return {count + 1, oldest[2]}
end
return {count + 1}
"""

# Extra TTL beyond the window so slow clients never lose a live key
TTL_GRACE_MS = 60_000

BLOCK_SUFFIX = ":blocked"


class RedisStore(CountingStore):
    """
    Redis counting store for distributed rate limiting.

    Best for:
    - Multi-instance deployments
    - Shared quota across services
    - Windows that survive process restarts

    Each key is a sorted set of events scored by time in milliseconds.
    Keys carry a TTL of window + 60s so idle windows expire on their own.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/1",
        prefix: str = "ratelimit:",
        max_connections: int = 10,
        timeout_seconds: float = 0.5,
        client: Any = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """
        Initialize Redis store.

        Args:
            url: Redis connection URL
            prefix: Key prefix for namespacing
            max_connections: Maximum connections in pool
            timeout_seconds: Upper bound for every Redis round trip
            client: Pre-built asyncio Redis client (skips URL connection)
            clock: Millisecond clock (defaults to wall-clock time)
        """
        self._url = url
        self._prefix = prefix
        self._max_connections = max_connections
        self._timeout = timeout_seconds
        self._client: Any = client
        self._clock = clock or now_ms
        self._increment_script: Any = None
        self._connected = False

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _get_key(self, key: str) -> str:
        """Get prefixed key."""
        return f"{self._prefix}{key}"

    async def connect(self) -> bool:
        """
        Connect to Redis.

        Returns:
            True if connected successfully
        """
        if self._connected and self._client:
            return True

        try:
            if self._client is None:
                self._client = redis.from_url(
                    self._url,
                    max_connections=self._max_connections,
                    socket_timeout=self._timeout,
                    socket_connect_timeout=self._timeout,
                    decode_responses=False,
                )

            await asyncio.wait_for(self._client.ping(), timeout=self._timeout)
            self._increment_script = self._client.register_script(INCREMENT_SCRIPT)
            self._connected = True
            logger.info(f"Rate limit store connected to Redis at {self._url}")
            return True

        except (RedisError, OSError, ValueError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._connected = False
            return False

    async def _run(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
    ) -> StoreResult[T]:
        """Run one Redis call under the timeout, reporting failures as values."""
        if not self._connected and not await self.connect():
            return StoreResult.failure(f"Redis {operation}: not connected")

        try:
            value = await asyncio.wait_for(call(), timeout=self._timeout)
        except asyncio.TimeoutError:
            self._connected = False
            return StoreResult.failure(
                f"Redis {operation} timed out after {self._timeout}s"
            )
        except (RedisError, OSError) as e:
            self._connected = False
            return StoreResult.failure(f"Redis {operation} error: {e}")
        except (ValueError, TypeError, IndexError) as e:
            return StoreResult.failure(f"Redis {operation} returned bad data: {e}")

        return StoreResult.success(value)

    async def increment(
        self,
        key: str,
        window_ms: int,
        limit: int,
    ) -> StoreResult[WindowCount]:
        """Count an attempt, recording it while under the limit."""

        async def call() -> WindowCount:
            now = self._clock()
            reply = await self._increment_script(
                keys=[self._get_key(key)],
                args=[
                    repr(now),
                    window_ms,
                    limit,
                    f"{now}-{uuid.uuid4().hex}",
                    window_ms + TTL_GRACE_MS,
                ],
            )
            oldest = float(reply[1]) if len(reply) > 1 else None
            return WindowCount(count=int(reply[0]), oldest_ms=oldest)

        return await self._run("INCREMENT", call)

    async def peek(self, key: str, window_ms: int) -> StoreResult[WindowCount]:
        """Read the in-window count without modifying the sorted set."""

        async def call() -> WindowCount:
            cutoff = f"({self._clock() - window_ms!r}"
            pipe = self._client.pipeline(transaction=True)
            pipe.zcount(self._get_key(key), cutoff, "+inf")
            pipe.zrangebyscore(
                self._get_key(key), cutoff, "+inf", start=0, num=1, withscores=True
            )
            count, oldest = await pipe.execute()
            return WindowCount(
                count=int(count),
                oldest_ms=float(oldest[0][1]) if oldest else None,
            )

        return await self._run("PEEK", call)

    async def refund(self, key: str) -> StoreResult[bool]:
        """Remove the newest recorded event."""

        async def call() -> bool:
            popped = await self._client.zpopmax(self._get_key(key))
            return len(popped) > 0

        return await self._run("REFUND", call)

    async def reset(self, key: str) -> StoreResult[bool]:
        """Delete the key's sorted set."""

        async def call() -> bool:
            return await self._client.delete(self._get_key(key)) > 0

        return await self._run("RESET", call)

    async def size(self) -> StoreResult[int]:
        """Count window keys under our prefix with SCAN (safe for large keyspaces)."""
        suffix = BLOCK_SUFFIX.encode()

        async def call() -> int:
            count = 0
            async for key in self._client.scan_iter(match=f"{self._prefix}*"):
                if isinstance(key, str):
                    key = key.encode()
                if not key.endswith(suffix):
                    count += 1
            return count

        return await self._run("SIZE", call)

    def _block_key(self, key: str) -> str:
        return self._get_key(key) + BLOCK_SUFFIX

    async def block(self, key: str, duration_ms: int) -> StoreResult[float]:
        """Store the block expiry in a key that Redis expires with it."""

        async def call() -> float:
            until = self._clock() + duration_ms
            await self._client.set(self._block_key(key), repr(until), px=duration_ms)
            return until

        return await self._run("BLOCK", call)

    async def blocked_until(self, key: str) -> StoreResult[float | None]:
        async def call() -> float | None:
            value = await self._client.get(self._block_key(key))
            if value is None:
                return None
            until = float(value)
            return until if until > self._clock() else None

        return await self._run("BLOCKED", call)

    async def unblock(self, key: str) -> StoreResult[bool]:
        async def call() -> bool:
            return await self._client.delete(self._block_key(key)) > 0

        return await self._run("UNBLOCK", call)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self._client = None
                self._increment_script = None
                self._connected = False

    async def health_check(self) -> dict[str, Any]:
        """Return health status with Redis info."""
        result = await self._run("INFO", lambda: self._client.info("server"))
        if not result.ok:
            return {
                "backend": self.name,
                "connected": False,
                "error": result.error,
            }

        info = result.value or {}
        return {
            "backend": self.name,
            "connected": True,
            "redis_version": info.get("redis_version"),
            "uptime_seconds": info.get("uptime_in_seconds"),
        }
