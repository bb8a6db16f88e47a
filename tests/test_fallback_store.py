"""Tests for the distributed-first store with local fallback."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis.aioredis
import pytest

from admission.store.base import CountingStore, StoreResult, WindowCount
from admission.store.factory import connect_store, create_store
from admission.store.fallback import FallbackStore
from admission.store.memory import LocalStore
from admission.store.redis import RedisStore


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def failing_primary(error: str = "connection refused") -> MagicMock:
    """Primary store whose every operation reports a failure."""
    primary = MagicMock(spec=CountingStore)
    primary.name = "redis"
    for method in (
        "increment", "peek", "refund", "reset", "size", "block", "blocked_until", "unblock"
    ):
        setattr(primary, method, AsyncMock(return_value=StoreResult.failure(error)))
    primary.close = AsyncMock()
    primary.health_check = AsyncMock(return_value={"backend": "redis", "connected": False})
    return primary


class TestFallbackStore:
    """Tests for FallbackStore degradation and recovery."""

    @pytest.fixture
    def monotonic(self) -> FakeMonotonic:
        return FakeMonotonic()

    @pytest.mark.asyncio
    async def test_primary_serves_when_healthy(self, clock, monotonic) -> None:
        primary = LocalStore(clock=clock)
        local = LocalStore(clock=clock)
        store = FallbackStore(primary, local, monotonic=monotonic)

        await store.increment("k", 1000, 5)

        assert (await primary.peek("k", 1000)).value.count == 1
        assert (await local.peek("k", 1000)).value.count == 0
        assert store.degraded is False

    @pytest.mark.asyncio
    async def test_falls_back_on_failure(self, clock, monotonic) -> None:
        """Test a failed primary operation is served locally."""
        local = LocalStore(clock=clock)
        store = FallbackStore(failing_primary(), local, monotonic=monotonic)

        result = await store.increment("k", 1000, 5)

        assert result.ok
        assert result.value.count == 1
        assert store.degraded is True
        assert (await local.peek("k", 1000)).value.count == 1

    @pytest.mark.asyncio
    async def test_logs_once_per_episode(self, clock, monotonic, caplog) -> None:
        """Test only the first failure of an episode warns."""
        primary = failing_primary()
        store = FallbackStore(primary, LocalStore(clock=clock), retry_interval_seconds=0, monotonic=monotonic)

        with caplog.at_level(logging.DEBUG, logger="admission.store.fallback"):
            for _ in range(5):
                await store.increment("k", 1000, 10)

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert primary.increment.await_count == 5

    @pytest.mark.asyncio
    async def test_skips_primary_during_retry_interval(self, clock, monotonic) -> None:
        """Test a dead primary is not retried on every call."""
        primary = failing_primary()
        store = FallbackStore(primary, LocalStore(clock=clock), retry_interval_seconds=5, monotonic=monotonic)

        await store.increment("k", 1000, 10)
        await store.increment("k", 1000, 10)
        assert primary.increment.await_count == 1

        monotonic.now = 5.0
        await store.increment("k", 1000, 10)
        assert primary.increment.await_count == 2

    @pytest.mark.asyncio
    async def test_recovers(self, clock, monotonic, caplog) -> None:
        """Test the primary is used again once it succeeds."""
        primary = failing_primary()
        store = FallbackStore(primary, LocalStore(clock=clock), retry_interval_seconds=1, monotonic=monotonic)
        await store.increment("k", 1000, 10)
        assert store.degraded is True

        primary.increment.return_value = StoreResult.success(WindowCount(count=1, oldest_ms=clock.now))
        monotonic.now = 1.0
        with caplog.at_level(logging.INFO, logger="admission.store.fallback"):
            result = await store.increment("k", 1000, 10)

        assert result.value.count == 1
        assert store.degraded is False
        assert any("recovered" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_reset_clears_both(self, clock, monotonic) -> None:
        primary = LocalStore(clock=clock)
        local = LocalStore(clock=clock)
        store = FallbackStore(primary, local, monotonic=monotonic)
        await primary.increment("k", 1000, 5)
        await local.increment("k", 1000, 5)

        result = await store.reset("k")

        assert result.value is True
        assert (await primary.size()).value == 0
        assert (await local.size()).value == 0

    @pytest.mark.asyncio
    async def test_reset_with_failing_primary(self, clock, monotonic) -> None:
        local = LocalStore(clock=clock)
        await local.increment("k", 1000, 5)
        store = FallbackStore(failing_primary(), local, monotonic=monotonic)

        result = await store.reset("k")

        assert result.ok
        assert result.value is True
        assert store.degraded is True

    @pytest.mark.asyncio
    async def test_hanging_redis_falls_back(self, clock, monotonic) -> None:
        """Test a Redis call exceeding the timeout is served locally."""

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        client.register_script.return_value = hang
        client.aclose = AsyncMock()
        primary = RedisStore(client=client, timeout_seconds=0.05, clock=clock)
        store = FallbackStore(primary, LocalStore(clock=clock), monotonic=monotonic)

        result = await store.increment("k", 1000, 5)

        assert result.ok
        assert result.value.count == 1
        assert store.degraded is True
        await store.close()

    @pytest.mark.asyncio
    async def test_failed_size_does_not_degrade(self, clock, monotonic) -> None:
        """Test a failing size read reports the local count and keeps the primary."""
        primary = LocalStore(clock=clock)
        primary.size = AsyncMock(return_value=StoreResult.failure("SIZE timed out"))
        local = LocalStore(clock=clock)
        store = FallbackStore(primary, local, monotonic=monotonic)

        size = await store.size()
        await store.increment("k", 1000, 5)

        assert size.ok
        assert size.value == 0
        assert store.degraded is False
        assert (await primary.peek("k", 1000)).value.count == 1
        assert (await local.peek("k", 1000)).value.count == 0

    @pytest.mark.asyncio
    async def test_slow_size_keeps_primary(self, clock, monotonic) -> None:
        """Test a SCAN past the timeout leaves admissions on Redis."""
        client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())
        primary = RedisStore(client=client, timeout_seconds=0.05, clock=clock)
        await primary.connect()
        store = FallbackStore(primary, LocalStore(clock=clock), monotonic=monotonic)
        assert (await store.increment("k", 1000, 1)).value.count == 1

        async def slow_scan(*args, **kwargs):
            await asyncio.sleep(0.2)
            yield b"never"

        with patch.object(client, "scan_iter", slow_scan):
            size = await store.size()

        assert size.ok
        assert store.degraded is False
        over = await store.increment("k", 1000, 1)
        assert over.value.count == 2
        await store.close()

    @pytest.mark.asyncio
    async def test_block_written_to_both(self, clock, monotonic) -> None:
        """Test a block survives a later failover to the local store."""
        primary = LocalStore(clock=clock)
        local = LocalStore(clock=clock)
        store = FallbackStore(primary, local, monotonic=monotonic)

        result = await store.block("abuser", 5000)

        assert result.value == clock.now + 5000
        assert (await primary.blocked_until("abuser")).value == clock.now + 5000
        assert (await local.blocked_until("abuser")).value == clock.now + 5000

        assert (await store.unblock("abuser")).value is True
        assert (await primary.blocked_until("abuser")).value is None
        assert (await local.blocked_until("abuser")).value is None

    @pytest.mark.asyncio
    async def test_block_with_failing_primary(self, clock, monotonic) -> None:
        store = FallbackStore(failing_primary(), LocalStore(clock=clock), monotonic=monotonic)

        await store.block("abuser", 5000)

        assert store.degraded is True
        assert (await store.blocked_until("abuser")).value == clock.now + 5000

    @pytest.mark.asyncio
    async def test_name_and_health(self, clock, monotonic) -> None:
        store = FallbackStore(failing_primary(), LocalStore(clock=clock), monotonic=monotonic)

        assert store.name == "redis+memory"
        health = await store.health_check()
        assert health["primary"]["connected"] is False
        assert health["fallback"]["connected"] is True


class TestFactory:
    """Tests for create_store() and connect_store()."""

    def test_memory_backend(self) -> None:
        assert isinstance(create_store("memory"), LocalStore)

    def test_redis_without_url_uses_memory(self) -> None:
        """Test a missing Redis URL never prevents operation."""
        store = create_store("redis", url=None)

        assert isinstance(store, LocalStore)

    def test_redis_backend_is_wrapped(self) -> None:
        store = create_store("redis", url="redis://localhost:6379/1")

        assert isinstance(store, FallbackStore)
        assert isinstance(store.primary, RedisStore)
        assert isinstance(store.fallback, LocalStore)

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError, match="Unknown"):
            create_store("memcached")

    @pytest.mark.asyncio
    async def test_connect_store(self, clock) -> None:
        client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())
        store = create_store("redis", client=client, clock=clock)

        await connect_store(store)

        assert store.primary.is_connected is True
        result = await store.increment("k", 1000, 5)
        assert result.value.count == 1
        assert store.degraded is False
        await store.close()
