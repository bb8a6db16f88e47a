"""Abstract base class for counting store backends."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


def now_ms() -> float:
    """Current wall-clock time in milliseconds."""
    return time.time() * 1000


@dataclass(frozen=True)
class WindowCount:
    """
    Number of events inside a sliding window.

    Attributes:
        count: Events in (now - window, now], including the current attempt
            when returned by an increment
        oldest_ms: Timestamp of the oldest recorded in-window event, or None
    """

    count: int
    oldest_ms: float | None = None


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """
    Outcome of a store operation.

    Backends report failures as values so callers can decide on a
    fallback path without catching exceptions.
    """

    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "StoreResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "StoreResult[T]":
        return cls(error=error)


class CountingStore(ABC):
    """
    Abstract base class for counting store backends.

    A counting store answers "how many events happened for key K in the
    last N milliseconds", records new events, and forgets old ones.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this backend.

        Returns:
            Backend name (e.g., 'memory', 'redis')
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """
        Check if the backend is connected and healthy.

        Returns:
            True if connected, False otherwise
        """
        ...

    @abstractmethod
    async def increment(
        self,
        key: str,
        window_ms: int,
        limit: int,
    ) -> StoreResult[WindowCount]:
        """
        Count an attempt against a sliding window.

        Events at or before ``now - window_ms`` are evicted first. The
        attempt is recorded only if fewer than ``limit`` events remain.

        Args:
            key: Window key
            window_ms: Window length in milliseconds
            limit: Maximum events recorded per window

        Returns:
            In-window count including this attempt
        """
        ...

    @abstractmethod
    async def peek(self, key: str, window_ms: int) -> StoreResult[WindowCount]:
        """
        Read the in-window count without recording anything.

        Args:
            key: Window key
            window_ms: Window length in milliseconds

        Returns:
            Current in-window count
        """
        ...

    @abstractmethod
    async def refund(self, key: str) -> StoreResult[bool]:
        """
        Remove the most recently recorded event for a key.

        Args:
            key: Window key

        Returns:
            True if an event was removed
        """
        ...

    @abstractmethod
    async def reset(self, key: str) -> StoreResult[bool]:
        """
        Forget every event for a key.

        Args:
            key: Window key

        Returns:
            True if the key existed
        """
        ...

    @abstractmethod
    async def size(self) -> StoreResult[int]:
        """
        Number of keys currently tracked.

        Returns:
            Tracked key count
        """
        ...

    @abstractmethod
    async def block(self, key: str, duration_ms: int) -> StoreResult[float]:
        """
        Block a key until ``now + duration_ms``.

        Args:
            key: Identifier to block
            duration_ms: Block length in milliseconds

        Returns:
            Block expiry in epoch milliseconds
        """
        ...

    @abstractmethod
    async def blocked_until(self, key: str) -> StoreResult[float | None]:
        """
        Read a key's block expiry.

        Returns:
            Expiry in epoch milliseconds, or None if the key is not blocked
        """
        ...

    @abstractmethod
    async def unblock(self, key: str) -> StoreResult[bool]:
        """
        Lift a block early.

        Returns:
            True if the key was blocked
        """
        ...

    async def cleanup_expired(self) -> int:
        """
        Purge keys whose events have all aged out.

        Backends that expire keys on their own return 0.

        Returns:
            Number of keys removed
        """
        return 0

    async def close(self) -> None:
        """Close connections."""
        pass

    async def health_check(self) -> dict[str, Any]:
        """
        Check backend health.

        Returns:
            Dict with health status information
        """
        return {
            "backend": self.name,
            "connected": self.is_connected,
        }
