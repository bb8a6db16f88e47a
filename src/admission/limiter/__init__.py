"""
Admission control: sliding window rate limiting and violation backoff.

Provides immutable policies with built-in presets, client identifier
resolution, the sliding window limiter, and an exponential backoff
tracker for repeat offenders.
"""

from admission.limiter.backoff import ExponentialBackoff
from admission.limiter.identifier import RequestInfo, client_address, resolve_identifier
from admission.limiter.policy import (
    BUILTIN_POLICIES,
    InvalidPolicyError,
    RateLimitPolicy,
    get_description_policy,
    get_policy,
)
from admission.limiter.registry import (
    RateLimiterHolder,
    get_rate_limiter,
    initialize_rate_limiter,
    reset_rate_limiter,
    shutdown_rate_limiter,
)
from admission.limiter.sliding_window import (
    RateLimitResult,
    SlidingWindowLimiter,
    StatsSnapshot,
)

__all__ = [
    "BUILTIN_POLICIES",
    "ExponentialBackoff",
    "InvalidPolicyError",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimiterHolder",
    "RequestInfo",
    "SlidingWindowLimiter",
    "StatsSnapshot",
    "client_address",
    "get_description_policy",
    "get_policy",
    "get_rate_limiter",
    "initialize_rate_limiter",
    "reset_rate_limiter",
    "resolve_identifier",
    "shutdown_rate_limiter",
]
