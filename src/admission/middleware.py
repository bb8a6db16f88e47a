"""Rate limiting middleware for FastAPI/Starlette applications."""

import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from admission.config import settings
from admission.limiter.identifier import RequestInfo, resolve_identifier
from admission.limiter.policy import RateLimitPolicy, get_policy
from admission.limiter.registry import get_rate_limiter
from admission.limiter.sliding_window import RateLimitResult, SlidingWindowLimiter

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Too many requests. Please try again later."


def is_admin_request(request: RequestInfo) -> bool:
    """Check the admin key header or the admin user id list."""
    admin_key = request.header("x-admin-key")
    if admin_key and settings.admin_api_key and admin_key == settings.admin_api_key:
        return True

    user_id = request.header("x-user-id")
    if user_id and user_id in settings.admin_user_ids:
        return True

    return False


def add_rate_limit_headers(response: Response, result: RateLimitResult) -> None:
    """Add X-RateLimit-* headers to a response."""
    for name, value in result.to_headers().items():
        response.headers[name] = value


def rate_limit_response(
    result: RateLimitResult,
    request_id: str,
    message: str = DEFAULT_MESSAGE,
    extra_details: dict[str, Any] | None = None,
) -> JSONResponse:
    """
    Build the 429 response for a rejected request.

    Args:
        result: Rejected rate limit result
        request_id: Correlation id echoed in X-Request-ID
        message: Human-readable message
        extra_details: Additional fields for the details object

    Returns:
        JSONResponse with status 429
    """
    retry_after = max(1, result.retry_after_seconds)
    details = {
        "limit": result.limit,
        "remaining": result.remaining,
        "reset_time": result.reset_at.isoformat(),
        "retry_after": retry_after,
        **(extra_details or {}),
    }

    response = JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "success": False,
            "error": "Rate limit exceeded",
            "message": message,
            "code": "RATE_LIMIT_EXCEEDED",
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id,
        },
    )
    add_rate_limit_headers(response, result)
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Request-ID"] = request_id
    return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware enforcing a rate limit policy on every request.

    Rejected requests receive a 429 with Retry-After; admitted responses
    carry X-RateLimit-* headers. With backoff enabled, identifiers that
    keep getting rejected are checked against an escalating window.
    """

    # Paths that bypass rate limiting
    BYPASS_PATHS = {
        "/health",
        "/docs",
        "/redoc",
        "/openapi.json",
    }

    def __init__(
        self,
        app,
        policy: RateLimitPolicy | None = None,
        policy_name: str = "general",
        limiter: SlidingWindowLimiter | None = None,
        enable_backoff: bool = False,
        bypass_admin: bool = False,
        bypass_paths: set[str] | None = None,
        skip_if: Callable[[RequestInfo], bool] | None = None,
        message: str = DEFAULT_MESSAGE,
    ) -> None:
        """
        Initialize rate limit middleware.

        Args:
            app: FastAPI application
            policy: Policy to enforce (overrides policy_name)
            policy_name: Built-in policy name
            limiter: Limiter instance (defaults to the process-wide one)
            enable_backoff: Escalate windows for repeat offenders
            bypass_admin: Let admin requests through unchecked
            bypass_paths: Paths that are never rate limited
            skip_if: Predicate for requests that should not be counted
            message: Message for the 429 body
        """
        super().__init__(app)
        self._policy = policy or get_policy(policy_name)
        self._limiter = limiter
        self._enable_backoff = enable_backoff
        self._bypass_admin = bypass_admin
        self._bypass_paths = bypass_paths if bypass_paths is not None else self.BYPASS_PATHS
        self._skip_if = skip_if
        self._message = message

    @property
    def limiter(self) -> SlidingWindowLimiter:
        return self._limiter or get_rate_limiter()

    def _should_skip(self, info: RequestInfo) -> bool:
        if info.path in self._bypass_paths:
            return True
        if self._skip_if is not None and self._skip_if(info):
            return True
        if self._bypass_admin and is_admin_request(info):
            logger.info("Admin bypass detected, skipping rate limit")
            return True
        return False

    def _blocked_response(
        self,
        identifier: str,
        result: RateLimitResult,
        request_id: str,
    ) -> JSONResponse:
        logger.warning(f"Rejected blocked identifier {identifier} (request {request_id})")
        return rate_limit_response(
            result, request_id, self._message, extra_details={"blocked": True}
        )

    async def _check_backoff(
        self,
        info: RequestInfo,
        request_id: str,
    ) -> JSONResponse | None:
        """
        Reject repeat offenders still inside their escalated window.

        The escalated window is counted under one backoff key per
        identifier, so it keeps its events as the window grows.
        """
        identifier = resolve_identifier(info, self._policy)
        backoff = self.limiter.backoff
        backoff_ms = backoff.current_backoff(identifier, self._policy.window_ms)
        if backoff_ms <= self._policy.window_ms:
            return None

        escalated = self._policy.with_window(backoff_ms)
        result = await self.limiter.check_rate_limit(info, escalated, scope="backoff")
        if result.admitted:
            return None
        if result.blocked:
            return self._blocked_response(identifier, result, request_id)

        logger.warning(
            f"Backoff window of {backoff_ms}ms applied to {identifier} "
            f"on {info.method} {info.path} (request {request_id})"
        )
        return rate_limit_response(
            result,
            request_id,
            self._message,
            extra_details={
                "backoff_multiplier": math.ceil(backoff_ms / self._policy.window_ms),
                "violation_count": backoff.get_violation_count(identifier),
            },
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Check the policy, then forward or reject the request."""
        info = RequestInfo.from_request(request)
        if self._should_skip(info):
            return await call_next(request)

        request_id = str(uuid.uuid4())
        try:
            if self._enable_backoff:
                rejected = await self._check_backoff(info, request_id)
                if rejected is not None:
                    return rejected

            result = await self.limiter.check_rate_limit(info, self._policy)
        except Exception as e:
            logger.error(f"Rate limit middleware error, allowing request: {e}")
            return await call_next(request)

        if result.blocked:
            identifier = resolve_identifier(info, self._policy)
            return self._blocked_response(identifier, result, request_id)

        if not result.admitted:
            identifier = resolve_identifier(info, self._policy)
            if self._enable_backoff:
                self.limiter.backoff.calculate_backoff(identifier, self._policy.window_ms)
            logger.warning(
                f"Rate limit exceeded for {identifier} on {info.method} {info.path} "
                f"(limit {result.limit}, policy {self._policy.name}, request {request_id})"
            )
            return rate_limit_response(result, request_id, self._message)

        response = await call_next(request)
        add_rate_limit_headers(response, result)
        await self.limiter.complete_request(
            info, self._policy, succeeded=response.status_code < 400
        )
        return response
