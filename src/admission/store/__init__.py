"""
Counting stores for sliding window rate limiting.

Provides a Redis-backed distributed store, an in-process local store,
and a fallback wrapper that degrades from the former to the latter.
"""

from admission.store.base import CountingStore, StoreResult, WindowCount
from admission.store.factory import connect_store, create_store
from admission.store.fallback import FallbackStore
from admission.store.memory import LocalStore, WindowEntry
from admission.store.redis import RedisStore

__all__ = [
    "CountingStore",
    "FallbackStore",
    "LocalStore",
    "RedisStore",
    "StoreResult",
    "WindowCount",
    "WindowEntry",
    "connect_store",
    "create_store",
]
