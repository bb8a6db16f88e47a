"""Distributed-first counting store with local fallback."""

import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from admission.store.base import CountingStore, StoreResult, WindowCount
from admission.store.memory import LocalStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FallbackStore(CountingStore):
    """
    Counting store that prefers a distributed backend.

    Every operation is attempted on the primary store first. When the
    primary reports a failure the same operation runs against the local
    store, so admission control degrades to single-instance accuracy
    instead of failing open or closed.

    After a failure the primary is skipped for ``retry_interval_seconds``
    so a dead Redis does not add a timeout to every request.
    """

    def __init__(
        self,
        primary: CountingStore,
        fallback: LocalStore | None = None,
        retry_interval_seconds: float = 5.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize fallback store.

        Args:
            primary: Distributed store tried first
            fallback: Local store used when the primary fails
            retry_interval_seconds: How long to skip the primary after a failure
            monotonic: Seconds clock used for the retry interval
        """
        self._primary = primary
        self._fallback = fallback or LocalStore()
        self._retry_interval = retry_interval_seconds
        self._monotonic = monotonic
        self._degraded = False
        self._retry_at = 0.0

    @property
    def name(self) -> str:
        return f"{self._primary.name}+{self._fallback.name}"

    @property
    def is_connected(self) -> bool:
        return self._fallback.is_connected

    @property
    def primary(self) -> CountingStore:
        return self._primary

    @property
    def fallback(self) -> LocalStore:
        return self._fallback

    @property
    def degraded(self) -> bool:
        """True while operations are being served by the local store."""
        return self._degraded

    def _primary_available(self) -> bool:
        return not self._degraded or self._monotonic() >= self._retry_at

    def _mark_failed(self, operation: str, error: str | None) -> None:
        if not self._degraded:
            logger.warning(
                f"Distributed rate limit store failed during {operation} "
                f"({error}), falling back to local store"
            )
        else:
            logger.debug(f"Distributed store still failing during {operation}: {error}")
        self._degraded = True
        self._retry_at = self._monotonic() + self._retry_interval

    def _mark_recovered(self) -> None:
        if self._degraded:
            logger.info("Distributed rate limit store recovered")
        self._degraded = False

    async def _attempt(
        self,
        operation: str,
        primary_call: Callable[[], Awaitable[StoreResult[T]]],
        fallback_call: Callable[[], Awaitable[StoreResult[T]]],
    ) -> StoreResult[T]:
        """Try the primary store, then the local store if it reported a failure."""
        if self._primary_available():
            result = await primary_call()
            if result.ok:
                self._mark_recovered()
                return result
            self._mark_failed(operation, result.error)

        return await fallback_call()

    async def increment(
        self,
        key: str,
        window_ms: int,
        limit: int,
    ) -> StoreResult[WindowCount]:
        return await self._attempt(
            "increment",
            lambda: self._primary.increment(key, window_ms, limit),
            lambda: self._fallback.increment(key, window_ms, limit),
        )

    async def peek(self, key: str, window_ms: int) -> StoreResult[WindowCount]:
        return await self._attempt(
            "peek",
            lambda: self._primary.peek(key, window_ms),
            lambda: self._fallback.peek(key, window_ms),
        )

    async def refund(self, key: str) -> StoreResult[bool]:
        return await self._attempt(
            "refund",
            lambda: self._primary.refund(key),
            lambda: self._fallback.refund(key),
        )

    async def _write_through(
        self,
        operation: str,
        primary_call: Callable[[], Awaitable[StoreResult[T]]],
        fallback_call: Callable[[], Awaitable[StoreResult[T]]],
    ) -> tuple[StoreResult[T], StoreResult[T] | None]:
        """Apply a write to the local store, then to the primary if available."""
        local = await fallback_call()
        if not self._primary_available():
            return local, None

        remote = await primary_call()
        if not remote.ok:
            self._mark_failed(operation, remote.error)
            return local, None

        self._mark_recovered()
        return local, remote

    async def reset(self, key: str) -> StoreResult[bool]:
        """Reset the key in both stores so stale local state never resurfaces."""
        local, remote = await self._write_through(
            "reset",
            lambda: self._primary.reset(key),
            lambda: self._fallback.reset(key),
        )
        if remote is None:
            return local
        return StoreResult.success(bool(remote.value) or bool(local.value))

    async def size(self) -> StoreResult[int]:
        """
        Tracked key count for diagnostics.

        A slow or failing primary here never switches admission traffic to
        the local store; the local count is reported instead.
        """
        if self._primary_available():
            result = await self._primary.size()
            if result.ok:
                return result
            logger.debug(f"Distributed store size unavailable: {result.error}")

        return await self._fallback.size()

    async def block(self, key: str, duration_ms: int) -> StoreResult[float]:
        """Block in both stores so the block survives a failover."""
        local, remote = await self._write_through(
            "block",
            lambda: self._primary.block(key, duration_ms),
            lambda: self._fallback.block(key, duration_ms),
        )
        return remote if remote is not None else local

    async def blocked_until(self, key: str) -> StoreResult[float | None]:
        return await self._attempt(
            "blocked_until",
            lambda: self._primary.blocked_until(key),
            lambda: self._fallback.blocked_until(key),
        )

    async def unblock(self, key: str) -> StoreResult[bool]:
        local, remote = await self._write_through(
            "unblock",
            lambda: self._primary.unblock(key),
            lambda: self._fallback.unblock(key),
        )
        if remote is None:
            return local
        return StoreResult.success(bool(remote.value) or bool(local.value))

    async def cleanup_expired(self) -> int:
        """Sweep the local store; Redis keys expire by TTL."""
        return await self._fallback.cleanup_expired()

    async def close(self) -> None:
        await self._primary.close()
        await self._fallback.close()

    async def health_check(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "connected": self.is_connected,
            "degraded": self._degraded,
            "primary": await self._primary.health_check(),
            "fallback": await self._fallback.health_check(),
        }
