"""
Sliding window rate limiter.

Counts requests per identifier over the trailing window (now - window, now]
rather than aligned buckets, so a burst straddling a bucket boundary can
never get twice the quota.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from admission.limiter.backoff import ExponentialBackoff
from admission.limiter.identifier import RequestInfo, resolve_identifier
from admission.limiter.policy import RateLimitPolicy
from admission.store.base import CountingStore, WindowCount, now_ms
from admission.store.fallback import FallbackStore
from admission.store.memory import LocalStore

logger = logging.getLogger(__name__)

# Local windows beyond this suggest moving to a distributed store
HIGH_LOCAL_ENTRIES = 10_000


def _to_datetime(timestamp_ms: float) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check."""

    admitted: bool
    """Whether the request is admitted."""

    remaining: int
    """Admissions left in the current window."""

    retry_after_ms: int
    """Milliseconds until the oldest in-window request ages out (0 if admitted)."""

    limit: int
    """Maximum requests allowed in the window."""

    reset_at: datetime
    """When the oldest in-window request leaves the window."""

    blocked: bool = False
    """Whether the identifier is on the block list."""

    @property
    def retry_after_seconds(self) -> int:
        """Retry delay rounded up to whole seconds (for Retry-After)."""
        return math.ceil(self.retry_after_ms / 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "admitted": self.admitted,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "retry_after_ms": self.retry_after_ms,
            "blocked": self.blocked,
        }

    def to_headers(self) -> dict[str, str]:
        """Standard X-RateLimit-* response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at.timestamp())),
        }
        if self.retry_after_ms:
            headers["X-RateLimit-RetryAfter"] = str(self.retry_after_seconds)
        return headers


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time limiter statistics."""

    tracked_identifiers: int
    store: str
    distributed_available: bool
    tracked_violations: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tracked_identifiers": self.tracked_identifiers,
            "store": self.store,
            "distributed_available": self.distributed_available,
            "tracked_violations": self.tracked_violations,
        }


class SlidingWindowLimiter:
    """
    Admission controller for named rate limit policies.

    Uses a counting store for per-identifier windows (distributed with
    local fallback when configured) and owns a periodic sweep that purges
    expired windows and idle backoff entries.
    """

    def __init__(
        self,
        store: CountingStore | None = None,
        backoff: ExponentialBackoff | None = None,
        clock: Callable[[], float] | None = None,
        cleanup_interval_seconds: float = 60.0,
    ) -> None:
        """
        Initialize sliding window limiter.

        Args:
            store: Counting store (uses a LocalStore if None)
            backoff: Violation tracker exposed to callers
            clock: Millisecond clock (defaults to wall-clock time)
            cleanup_interval_seconds: How often the sweep runs
        """
        self._clock = clock or now_ms
        self._store = store or LocalStore(clock=self._clock)
        self._backoff = backoff or ExponentialBackoff(clock=self._clock)
        self._cleanup_interval = cleanup_interval_seconds
        self._cleanup_task: asyncio.Task | None = None
        self._destroyed = False

    @property
    def store(self) -> CountingStore:
        return self._store

    @property
    def backoff(self) -> ExponentialBackoff:
        return self._backoff

    @property
    def is_running(self) -> bool:
        """True while the background sweep is active."""
        return self._cleanup_task is not None and not self._cleanup_task.done()

    @staticmethod
    def _window_key(
        identifier: str,
        policy: RateLimitPolicy,
        scope: str | None = None,
    ) -> str:
        # A scoped key stays the same whatever window it is checked with
        if scope:
            return f"{identifier}:{scope}:{policy.max_requests}"
        return f"{identifier}:{policy.window_ms}:{policy.max_requests}"

    def _build_result(
        self,
        window: WindowCount,
        policy: RateLimitPolicy,
        admitted: bool,
        now: float,
    ) -> RateLimitResult:
        if window.oldest_ms is not None:
            reset_at_ms = window.oldest_ms + policy.window_ms
        else:
            reset_at_ms = now + policy.window_ms

        retry_after_ms = 0
        if not admitted:
            retry_after_ms = max(1, math.ceil(reset_at_ms - now))

        return RateLimitResult(
            admitted=admitted,
            remaining=max(0, policy.max_requests - window.count),
            retry_after_ms=retry_after_ms,
            limit=policy.max_requests,
            reset_at=_to_datetime(reset_at_ms),
        )

    def _unavailable_result(self, policy: RateLimitPolicy, now: float) -> RateLimitResult:
        # Only reachable with a bare distributed store and no fallback
        return RateLimitResult(
            admitted=True,
            remaining=policy.max_requests,
            retry_after_ms=0,
            limit=policy.max_requests,
            reset_at=_to_datetime(now + policy.window_ms),
        )

    async def _blocked_result(
        self,
        identifier: str,
        policy: RateLimitPolicy,
    ) -> RateLimitResult | None:
        result = await self._store.blocked_until(identifier)
        if not result.ok:
            logger.error(f"Rate limit store unavailable for block check: {result.error}")
            return None
        if result.value is None:
            return None

        now = self._clock()
        return RateLimitResult(
            admitted=False,
            remaining=0,
            retry_after_ms=max(1, math.ceil(result.value - now)),
            limit=policy.max_requests,
            reset_at=_to_datetime(result.value),
            blocked=True,
        )

    async def check_rate_limit(
        self,
        request: RequestInfo,
        policy: RateLimitPolicy,
        scope: str | None = None,
    ) -> RateLimitResult:
        """
        Count a request and decide whether to admit it.

        Call at most once per logical request; every call consumes quota.
        Blocked identifiers are rejected without being counted.

        Args:
            request: Request projection
            policy: Policy to enforce
            scope: Named window kept under one key whatever the policy's
                window length (used for backoff windows)

        Returns:
            RateLimitResult for this request
        """
        identifier = resolve_identifier(request, policy)
        blocked = await self._blocked_result(identifier, policy)
        if blocked is not None:
            return blocked

        key = self._window_key(identifier, policy, scope)
        result = await self._store.increment(key, policy.window_ms, policy.max_requests)
        now = self._clock()

        if not result.ok:
            logger.error(f"Rate limit store unavailable, admitting request: {result.error}")
            return self._unavailable_result(policy, now)

        window = result.value
        return self._build_result(
            window,
            policy,
            admitted=window.count <= policy.max_requests,
            now=now,
        )

    async def check_all(
        self,
        request: RequestInfo,
        policies: Sequence[RateLimitPolicy],
    ) -> RateLimitResult:
        """
        Check several policies (e.g. per minute, per hour, per day) at once.

        Every policy is counted. The first rejection wins; when all admit,
        the result with the fewest remaining requests is returned.

        Raises:
            ValueError: If no policies are given
        """
        if not policies:
            raise ValueError("check_all requires at least one policy")

        results = [await self.check_rate_limit(request, policy) for policy in policies]
        for result in results:
            if not result.admitted:
                return result
        return min(results, key=lambda r: r.remaining)

    async def get_rate_limit_status(
        self,
        request: RequestInfo,
        policy: RateLimitPolicy,
    ) -> RateLimitResult:
        """
        Inspect the current window without consuming quota.

        ``admitted`` reports whether the next request would be admitted.
        """
        identifier = resolve_identifier(request, policy)
        blocked = await self._blocked_result(identifier, policy)
        if blocked is not None:
            return blocked

        result = await self._store.peek(self._window_key(identifier, policy), policy.window_ms)
        now = self._clock()

        if not result.ok:
            logger.error(f"Rate limit store unavailable for status read: {result.error}")
            return self._unavailable_result(policy, now)

        window = result.value
        return self._build_result(
            window,
            policy,
            admitted=window.count < policy.max_requests,
            now=now,
        )

    async def block_identifier(self, identifier: str, duration_ms: int) -> datetime | None:
        """
        Reject every request from an identifier for a fixed period.

        Returns:
            When the block lifts, or None if the store could not record it

        Raises:
            ValueError: If duration_ms is not positive
        """
        if duration_ms <= 0:
            raise ValueError(f"Block duration must be positive, got {duration_ms}")

        result = await self._store.block(identifier, duration_ms)
        if not result.ok:
            logger.error(f"Failed to block {identifier}: {result.error}")
            return None

        until = _to_datetime(result.value)
        logger.warning(f"Blocked {identifier} until {until.isoformat()}")
        return until

    async def get_block(self, identifier: str) -> datetime | None:
        """When the identifier's block lifts, or None if it is not blocked."""
        result = await self._store.blocked_until(identifier)
        if not result.ok or result.value is None:
            return None
        return _to_datetime(result.value)

    async def is_blocked(self, identifier: str) -> bool:
        return await self.get_block(identifier) is not None

    async def unblock_identifier(self, identifier: str) -> bool:
        """Lift a block early. Returns True if the identifier was blocked."""
        result = await self._store.unblock(identifier)
        if result.ok and result.value:
            logger.info(f"Unblocked {identifier}")
            return True
        return False

    async def complete_request(
        self,
        request: RequestInfo,
        policy: RateLimitPolicy,
        succeeded: bool,
    ) -> bool:
        """
        Apply the policy's skip flags once the request outcome is known.

        Returns:
            True if the request was refunded
        """
        if not policy.should_refund(succeeded):
            return False

        key = self._window_key(resolve_identifier(request, policy), policy)
        result = await self._store.refund(key)
        return bool(result.ok and result.value)

    async def reset_rate_limit(
        self,
        request: RequestInfo,
        policy: RateLimitPolicy,
    ) -> bool:
        """Clear the identifier's window, restoring full quota."""
        identifier = resolve_identifier(request, policy)
        result = await self._store.reset(self._window_key(identifier, policy))
        logger.info(f"Reset rate limit for {identifier} under {policy.name} policy")
        return result.ok

    async def get_stats(self) -> StatsSnapshot:
        size = await self._store.size()

        if isinstance(self._store, FallbackStore):
            distributed = not self._store.degraded
        else:
            distributed = self._store.name == "redis" and self._store.is_connected

        return StatsSnapshot(
            tracked_identifiers=size.value if size.ok else 0,
            store=self._store.name,
            distributed_available=distributed,
            tracked_violations=self._backoff.size(),
        )

    async def health_report(self) -> dict[str, Any]:
        """
        Summarize limiter health with issues and recommendations.

        ``overall`` is "healthy" with no issues, "warning" with one or two
        and "critical" beyond that.
        """
        stats = await self.get_stats()
        issues: list[str] = []
        recommendations: list[str] = []

        if self._store.name != "memory" and not stats.distributed_available:
            issues.append("Distributed store is not available, using local fallback")
            recommendations.append(
                "Ensure Redis is running and reachable for distributed rate limiting"
            )

        if not stats.distributed_available and stats.tracked_identifiers > HIGH_LOCAL_ENTRIES:
            issues.append(f"High memory usage: {stats.tracked_identifiers} local windows")
            recommendations.append("Consider Redis for better memory management")

        if len(issues) > 2:
            overall = "critical"
        elif issues:
            overall = "warning"
        else:
            overall = "healthy"

        return {
            "overall": overall,
            "issues": issues,
            "recommendations": recommendations,
            "statistics": stats.to_dict(),
        }

    async def sweep(self) -> int:
        """Purge expired windows and idle backoff entries."""
        removed = await self._store.cleanup_expired()
        removed += self._backoff.prune_expired()
        return removed

    async def start(self) -> None:
        """Start the background sweep."""
        if self._destroyed:
            raise RuntimeError("Cannot start a destroyed rate limiter")
        if self._cleanup_task is not None:
            return

        async def cleanup_loop():
            while True:
                try:
                    await asyncio.sleep(self._cleanup_interval)
                    await self.sweep()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Rate limiter sweep error: {e}")

        self._cleanup_task = asyncio.create_task(cleanup_loop())

    async def destroy(self) -> None:
        """Stop the sweep and release the store. Safe to call repeatedly."""
        if self._destroyed:
            return
        self._destroyed = True

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        await self._store.close()
        logger.debug("Rate limiter destroyed")
