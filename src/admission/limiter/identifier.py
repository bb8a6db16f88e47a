"""Client identifier resolution for rate limiting."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping

from starlette.requests import Request

if TYPE_CHECKING:
    from admission.limiter.policy import RateLimitPolicy

UNKNOWN_IDENTIFIER = "unknown"


@dataclass(frozen=True)
class RequestInfo:
    """
    Framework-independent view of an inbound request.

    Only the fields needed for rate limiting are kept, so key functions
    never depend on a particular web framework.
    """

    method: str = "GET"
    path: str = "/"
    headers: Mapping[str, str] = field(default_factory=dict)
    client_host: str | None = None

    def __post_init__(self) -> None:
        # Normalize header names once so lookups are case-insensitive
        object.__setattr__(
            self,
            "headers",
            {k.lower(): v for k, v in self.headers.items()},
        )

    def header(self, name: str) -> str | None:
        """Get a header value by case-insensitive name."""
        value = self.headers.get(name.lower())
        if value is None:
            return None
        value = value.strip()
        return value or None

    @classmethod
    def from_request(cls, request: Request) -> RequestInfo:
        """Build from a Starlette/FastAPI request."""
        return cls(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            client_host=request.client.host if request.client else None,
        )


def client_address(request: RequestInfo) -> str:
    """
    Best available network address for a request.

    Order: first X-Forwarded-For hop, X-Real-IP, transport address.
    """
    forwarded = request.header("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.header("x-real-ip")
    if real_ip:
        return real_ip

    if request.client_host:
        return request.client_host

    return UNKNOWN_IDENTIFIER


def resolve_identifier(request: RequestInfo, policy: RateLimitPolicy) -> str:
    """
    Resolve the identifier a request is counted against.

    Args:
        request: Request projection
        policy: Policy being applied

    Returns:
        Policy key function result if set, otherwise the client address
    """
    if policy.key_fn is not None:
        return policy.key_fn(request)
    return client_address(request)
