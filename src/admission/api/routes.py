"""API routes for rate limit inspection."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from admission.limiter.identifier import RequestInfo, resolve_identifier
from admission.limiter.policy import BUILTIN_POLICIES, RateLimitPolicy, get_policy
from admission.limiter.registry import get_rate_limiter
from admission.middleware import is_admin_request

logger = logging.getLogger(__name__)
router = APIRouter()


def _lookup_policy(name: str) -> RateLimitPolicy:
    try:
        return get_policy(name)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/ratelimit/stats")
async def get_stats() -> dict[str, Any]:
    """Limiter statistics for dashboards and health checks."""
    stats = await get_rate_limiter().get_stats()
    return stats.to_dict()


@router.get("/ratelimit/policies")
async def list_policies() -> dict[str, Any]:
    """List built-in rate limit policies."""
    return {
        "policies": [policy.to_dict() for policy in BUILTIN_POLICIES.values()],
        "count": len(BUILTIN_POLICIES),
    }


@router.get("/ratelimit/status/{policy_name}")
async def get_status(policy_name: str, request: Request) -> dict[str, Any]:
    """Current window for the calling client, without consuming quota."""
    policy = _lookup_policy(policy_name)
    info = RequestInfo.from_request(request)
    result = await get_rate_limiter().get_rate_limit_status(info, policy)

    return {
        "policy": policy.name,
        "identifier": resolve_identifier(info, policy),
        **result.to_dict(),
    }


@router.delete("/ratelimit/status/{policy_name}")
async def reset_status(policy_name: str, request: Request) -> dict[str, Any]:
    """Clear the calling client's window for a policy."""
    policy = _lookup_policy(policy_name)
    info = RequestInfo.from_request(request)
    reset = await get_rate_limiter().reset_rate_limit(info, policy)

    return {
        "policy": policy.name,
        "identifier": resolve_identifier(info, policy),
        "reset": reset,
    }


def require_admin(request: Request) -> None:
    """Reject callers without the admin key or an admin user id."""
    if not is_admin_request(RequestInfo.from_request(request)):
        raise HTTPException(status_code=403, detail="Admin access required")


@router.get("/ratelimit/health")
async def get_health_report() -> dict[str, Any]:
    """Limiter health with issues and recommendations."""
    return await get_rate_limiter().health_report()


@router.get("/ratelimit/violations", dependencies=[Depends(require_admin)])
async def get_violations(top: int = Query(10, ge=1, le=100)) -> dict[str, Any]:
    """Identifiers currently accruing backoff, worst first."""
    return get_rate_limiter().backoff.violations_report(top=top)


@router.put("/ratelimit/blocks/{identifier}", dependencies=[Depends(require_admin)])
async def block_identifier(
    identifier: str,
    duration_ms: int = Query(..., gt=0),
) -> dict[str, Any]:
    """Reject every request from an identifier for duration_ms."""
    until = await get_rate_limiter().block_identifier(identifier, duration_ms)
    if until is None:
        raise HTTPException(status_code=503, detail="Rate limit store unavailable")

    return {"identifier": identifier, "blocked": True, "blocked_until": until.isoformat()}


@router.get("/ratelimit/blocks/{identifier}", dependencies=[Depends(require_admin)])
async def get_block(identifier: str) -> dict[str, Any]:
    until = await get_rate_limiter().get_block(identifier)
    return {
        "identifier": identifier,
        "blocked": until is not None,
        "blocked_until": until.isoformat() if until else None,
    }


@router.delete("/ratelimit/blocks/{identifier}", dependencies=[Depends(require_admin)])
async def unblock_identifier(identifier: str) -> dict[str, Any]:
    """Lift a block early."""
    unblocked = await get_rate_limiter().unblock_identifier(identifier)
    return {"identifier": identifier, "unblocked": unblocked}
