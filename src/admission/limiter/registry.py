"""Process-wide rate limiter instance management."""

import logging
from typing import Callable

from admission.config import settings
from admission.limiter.backoff import ExponentialBackoff
from admission.limiter.sliding_window import SlidingWindowLimiter
from admission.store.factory import connect_store, create_store

logger = logging.getLogger(__name__)


def build_rate_limiter() -> SlidingWindowLimiter:
    """
    Create a rate limiter from configuration settings.

    Returns:
        Unstarted SlidingWindowLimiter
    """
    return SlidingWindowLimiter(
        store=create_store(),
        backoff=ExponentialBackoff(
            max_backoff_ms=settings.backoff_max_ms,
            max_entries=settings.backoff_max_entries,
        ),
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
    )


class RateLimiterHolder:
    """
    Lazily created, replaceable limiter instance.

    Application code asks the holder for the limiter instead of reaching
    for a module global; tests swap in their own instance with set()
    and tear it down with shutdown().
    """

    def __init__(
        self,
        factory: Callable[[], SlidingWindowLimiter] = build_rate_limiter,
    ) -> None:
        self._factory = factory
        self._instance: SlidingWindowLimiter | None = None

    def get(self) -> SlidingWindowLimiter:
        """Get the limiter, creating it on first access."""
        if self._instance is None:
            self._instance = self._factory()
            logger.info(f"Initialized rate limiter with {self._instance.store.name} store")
        return self._instance

    def set(self, limiter: SlidingWindowLimiter | None) -> None:
        """Install a specific limiter (or clear it with None)."""
        self._instance = limiter

    async def initialize(self) -> SlidingWindowLimiter:
        """
        Create the limiter, connect its store and start the sweep.

        Call during application startup.
        """
        limiter = self.get()
        await connect_store(limiter.store)
        await limiter.start()
        return limiter

    async def shutdown(self) -> None:
        """Destroy the current limiter, if any. Call during shutdown."""
        if self._instance is not None:
            await self._instance.destroy()
            self._instance = None
            logger.info("Rate limiter shutdown complete")


# Global default holder
default_holder = RateLimiterHolder()


def get_rate_limiter() -> SlidingWindowLimiter:
    """
    Get the process-wide rate limiter.

    This is the recommended way to access the limiter in application code.
    """
    return default_holder.get()


async def initialize_rate_limiter() -> SlidingWindowLimiter:
    return await default_holder.initialize()


async def shutdown_rate_limiter() -> None:
    await default_holder.shutdown()


def reset_rate_limiter() -> None:
    """
    Forget the process-wide limiter without destroying it.

    Useful for testing or when configuration changes.
    """
    default_holder.set(None)
