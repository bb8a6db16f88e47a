"""In-memory counting store implementation."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from admission.store.base import CountingStore, StoreResult, WindowCount, now_ms

logger = logging.getLogger(__name__)


@dataclass
class WindowEntry:
    """
    Event timestamps recorded for one key.

    Attributes:
        window_ms: Window length the key was last written with
        timestamps: Event times in milliseconds, oldest first
    """

    window_ms: int
    timestamps: deque[float] = field(default_factory=deque)

    def evict(self, now: float) -> None:
        """Drop events at or before the start of the window."""
        cutoff = now - self.window_ms
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    @property
    def oldest_ms(self) -> float | None:
        return self.timestamps[0] if self.timestamps else None

    @property
    def newest_ms(self) -> float | None:
        return self.timestamps[-1] if self.timestamps else None


class LocalStore(CountingStore):
    """
    In-process counting store backed by a dictionary of timestamp deques.

    Best for:
    - Single-instance deployments
    - Fallback when the distributed store is unreachable
    - Development and testing

    Limitations:
    - Not shared across instances
    - Lost on restart
    """

    def __init__(
        self,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """
        Initialize local store.

        Args:
            clock: Millisecond clock (defaults to wall-clock time)
        """
        self._entries: dict[str, WindowEntry] = {}
        self._blocks: dict[str, float] = {}
        self._clock = clock or now_ms
        self._lock = asyncio.Lock()
        self._connected = True

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def increment(
        self,
        key: str,
        window_ms: int,
        limit: int,
    ) -> StoreResult[WindowCount]:
        """Count an attempt, recording it while under the limit."""
        async with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None:
                entry = WindowEntry(window_ms=window_ms)
                self._entries[key] = entry

            entry.window_ms = window_ms
            entry.evict(now)

            existing = len(entry.timestamps)
            if existing < limit:
                entry.timestamps.append(now)

            return StoreResult.success(
                WindowCount(count=existing + 1, oldest_ms=entry.oldest_ms)
            )

    async def peek(self, key: str, window_ms: int) -> StoreResult[WindowCount]:
        """Read the in-window count without recording anything."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return StoreResult.success(WindowCount(count=0))

            now = self._clock()
            cutoff = now - window_ms
            in_window = [ts for ts in entry.timestamps if ts > cutoff]
            return StoreResult.success(
                WindowCount(
                    count=len(in_window),
                    oldest_ms=in_window[0] if in_window else None,
                )
            )

    async def refund(self, key: str) -> StoreResult[bool]:
        """Remove the newest recorded event."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.timestamps:
                return StoreResult.success(False)

            entry.timestamps.pop()
            if not entry.timestamps:
                del self._entries[key]
            return StoreResult.success(True)

    async def reset(self, key: str) -> StoreResult[bool]:
        """Forget every event for a key."""
        async with self._lock:
            return StoreResult.success(self._entries.pop(key, None) is not None)

    async def size(self) -> StoreResult[int]:
        return StoreResult.success(len(self._entries))

    async def block(self, key: str, duration_ms: int) -> StoreResult[float]:
        async with self._lock:
            until = self._clock() + duration_ms
            self._blocks[key] = until
            return StoreResult.success(until)

    async def blocked_until(self, key: str) -> StoreResult[float | None]:
        async with self._lock:
            until = self._blocks.get(key)
            if until is not None and until <= self._clock():
                del self._blocks[key]
                until = None
            return StoreResult.success(until)

    async def unblock(self, key: str) -> StoreResult[bool]:
        async with self._lock:
            until = self._blocks.pop(key, None)
            return StoreResult.success(until is not None and until > self._clock())

    async def cleanup_expired(self) -> int:
        """Remove windows whose newest event has aged out, and lapsed blocks."""
        async with self._lock:
            now = self._clock()
            expired_keys = [
                k for k, v in self._entries.items()
                if v.newest_ms is None or v.newest_ms <= now - v.window_ms
            ]
            for key in expired_keys:
                del self._entries[key]

            lapsed = [k for k, until in self._blocks.items() if until <= now]
            for key in lapsed:
                del self._blocks[key]

            if expired_keys:
                logger.debug(f"Swept {len(expired_keys)} expired rate limit windows")

            return len(expired_keys) + len(lapsed)

    async def close(self) -> None:
        """Drop all entries."""
        self._connected = False
        self._entries.clear()
        self._blocks.clear()

    async def health_check(self) -> dict[str, Any]:
        """Return health status with store statistics."""
        async with self._lock:
            tracked = len(self._entries)
            events = sum(len(v.timestamps) for v in self._entries.values())
            blocked = len(self._blocks)

        return {
            "backend": self.name,
            "connected": self.is_connected,
            "tracked_keys": tracked,
            "recorded_events": events,
            "blocked_keys": blocked,
        }
