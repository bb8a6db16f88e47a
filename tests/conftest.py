"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Callable

import pytest

from admission.limiter.backoff import ExponentialBackoff
from admission.limiter.identifier import RequestInfo
from admission.limiter.sliding_window import SlidingWindowLimiter
from admission.store.memory import LocalStore

START_MS = 1_700_000_000_000.0


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: float = START_MS) -> None:
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    """Deterministic clock shared by stores, backoff and limiter."""
    return FakeClock()


@pytest.fixture
def make_request() -> Callable[..., RequestInfo]:
    """Factory for requests that resolve to a given address."""

    def factory(ip: str = "203.0.113.7", path: str = "/api/test", **headers: str) -> RequestInfo:
        return RequestInfo(
            method="POST",
            path=path,
            headers={k.replace("_", "-"): v for k, v in headers.items()},
            client_host=ip,
        )

    return factory


@pytest.fixture
async def limiter(clock: FakeClock) -> AsyncGenerator[SlidingWindowLimiter, None]:
    """Local-store limiter on the fake clock."""
    instance = SlidingWindowLimiter(
        store=LocalStore(clock=clock),
        backoff=ExponentialBackoff(clock=clock),
        clock=clock,
    )
    yield instance
    await instance.destroy()
