"""Rate limit policies and built-in presets."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from admission.limiter.identifier import RequestInfo


class InvalidPolicyError(ValueError):
    """Raised when a policy has a non-positive window or quota."""

    pass


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Immutable quota configuration for one class of requests.

    A policy is a plain value: it can be shared across any number of
    concurrent checks and never changes after construction.
    """

    window_ms: int
    """Length of the sliding window in milliseconds."""

    max_requests: int
    """Requests admitted per identifier per window (inclusive)."""

    key_fn: Callable[[RequestInfo], str] | None = field(default=None, compare=False)
    """Optional identifier override; replaces address-based resolution."""

    skip_on_success: bool = False
    """Refund the counted request when the handler succeeds."""

    skip_on_failure: bool = False
    """Refund the counted request when the handler fails."""

    name: str = "custom"
    """Policy name for identification."""

    description: str = ""
    """Human-readable description of the policy."""

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise InvalidPolicyError(
                f"window_ms must be positive, got {self.window_ms}"
            )
        if self.max_requests < 1:
            raise InvalidPolicyError(
                f"max_requests must be at least 1, got {self.max_requests}"
            )

    def with_window(self, window_ms: int) -> RateLimitPolicy:
        """Copy of this policy with a different window length."""
        return dataclasses.replace(self, window_ms=window_ms)

    def should_refund(self, succeeded: bool) -> bool:
        """Whether a completed request should stop counting against quota."""
        if succeeded:
            return self.skip_on_success
        return self.skip_on_failure

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "window_ms": self.window_ms,
            "max_requests": self.max_requests,
            "skip_on_success": self.skip_on_success,
            "skip_on_failure": self.skip_on_failure,
            "custom_key": self.key_fn is not None,
            "description": self.description,
        }


MINUTE_MS = 60 * 1000


# Built-in policies
AUTH_POLICY = RateLimitPolicy(
    name="auth",
    window_ms=15 * MINUTE_MS,
    max_requests=5,
    description="Authentication endpoints - prevents brute force attacks",
)

DESCRIPTION_FREE_POLICY = RateLimitPolicy(
    name="description_free",
    window_ms=MINUTE_MS,
    max_requests=10,
    skip_on_failure=True,
    description="Description generation for free tier users",
)

DESCRIPTION_PAID_POLICY = RateLimitPolicy(
    name="description_paid",
    window_ms=MINUTE_MS,
    max_requests=100,
    skip_on_failure=True,
    description="Description generation for paid tier users",
)

GENERAL_POLICY = RateLimitPolicy(
    name="general",
    window_ms=MINUTE_MS,
    max_requests=100,
    skip_on_success=True,
    description="General API endpoints",
)

STRICT_POLICY = RateLimitPolicy(
    name="strict",
    window_ms=MINUTE_MS,
    max_requests=10,
    description="Sensitive operations with enhanced protection",
)

BURST_POLICY = RateLimitPolicy(
    name="burst",
    window_ms=10 * 1000,
    max_requests=20,
    skip_on_success=True,
    description="Burst protection for high-frequency requests",
)

# Export all built-in policies
BUILTIN_POLICIES: dict[str, RateLimitPolicy] = {
    "auth": AUTH_POLICY,
    "description_free": DESCRIPTION_FREE_POLICY,
    "description_paid": DESCRIPTION_PAID_POLICY,
    "general": GENERAL_POLICY,
    "strict": STRICT_POLICY,
    "burst": BURST_POLICY,
}


def get_policy(name: str) -> RateLimitPolicy:
    """
    Get a built-in policy by name.

    Args:
        name: Policy name

    Returns:
        Matching policy

    Raises:
        ValueError: If policy not found
    """
    if name in BUILTIN_POLICIES:
        return BUILTIN_POLICIES[name]
    raise ValueError(f"Unknown policy: {name}. Available: {list(BUILTIN_POLICIES.keys())}")


def get_description_policy(is_paid_tier: bool) -> RateLimitPolicy:
    """Pick the description-generation policy for a caller's tier."""
    return DESCRIPTION_PAID_POLICY if is_paid_tier else DESCRIPTION_FREE_POLICY
