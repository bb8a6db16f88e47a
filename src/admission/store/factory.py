"""Store factory for creating counting stores based on configuration."""

import logging
from typing import Any

from admission.config import settings
from admission.store.base import CountingStore
from admission.store.fallback import FallbackStore
from admission.store.memory import LocalStore
from admission.store.redis import RedisStore

logger = logging.getLogger(__name__)


def create_store(
    backend: str | None = None,
    **kwargs: Any,
) -> CountingStore:
    """
    Create a counting store instance.

    The "redis" backend is always wrapped in a FallbackStore so that an
    unreachable Redis degrades to the local store.

    Args:
        backend: Backend type ("memory" or "redis"), defaults to config
        **kwargs: Overrides for backend arguments (url, prefix, clock, ...)

    Returns:
        CountingStore instance

    Raises:
        ValueError: If backend type is unknown
    """
    backend_type = backend or settings.store_backend
    clock = kwargs.get("clock")

    local = LocalStore(clock=clock)

    if backend_type == "memory":
        return local

    elif backend_type == "redis":
        url = kwargs.get("url", settings.redis_url)
        if not url and kwargs.get("client") is None:
            logger.warning(
                "Redis URL not configured, using in-memory rate limit store. "
                "Set REDIS_URL environment variable to enable distributed limits."
            )
            return local

        primary = RedisStore(
            url=url or "redis://localhost:6379/1",
            prefix=kwargs.get("prefix", settings.redis_prefix),
            max_connections=kwargs.get("max_connections", settings.redis_max_connections),
            timeout_seconds=kwargs.get("timeout_seconds", settings.store_timeout_seconds),
            client=kwargs.get("client"),
            clock=clock,
        )
        return FallbackStore(
            primary=primary,
            fallback=local,
            retry_interval_seconds=kwargs.get(
                "retry_interval_seconds", settings.fallback_retry_seconds
            ),
        )

    else:
        raise ValueError(f"Unknown rate limit store backend: {backend_type}")


async def connect_store(store: CountingStore) -> CountingStore:
    """
    Establish connections for a store created by create_store().

    A failed Redis connection is logged and left to the fallback path.

    Returns:
        The same store
    """
    if isinstance(store, FallbackStore) and isinstance(store.primary, RedisStore):
        connected = await store.primary.connect()
        if not connected:
            logger.warning("Failed to connect to Redis, serving rate limits locally")

    return store
