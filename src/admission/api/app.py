"""FastAPI application exposing rate limiter status."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI

from admission.api.routes import router as ratelimit_router
from admission.limiter.registry import (
    get_rate_limiter,
    initialize_rate_limiter,
    shutdown_rate_limiter,
)
from admission.middleware import RateLimitMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    # Startup
    logger.info("Starting admission control API...")
    limiter = await initialize_rate_limiter()
    logger.info(f"Rate limiter started with {limiter.store.name} store")
    yield
    # Shutdown
    logger.info("Shutting down admission control API...")
    await shutdown_rate_limiter()


def create_app(policy_name: str | None = None, enable_backoff: bool = False) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        policy_name: Built-in policy enforced on every route (None = no middleware)
        enable_backoff: Escalate windows for repeat offenders
    """
    app = FastAPI(
        title="Admission Control",
        description="Sliding window rate limiting with distributed fallback",
        version="0.1.0",
        lifespan=lifespan,
    )

    if policy_name:
        app.add_middleware(
            RateLimitMiddleware,
            policy_name=policy_name,
            enable_backoff=enable_backoff,
            bypass_admin=True,
        )
        logger.info(f"Rate limiting enabled with {policy_name} policy")

    app.include_router(ratelimit_router, prefix="/v1", tags=["ratelimit"])

    # Health check
    @app.get("/health")
    async def health_check():
        stats = await get_rate_limiter().get_stats()
        return {
            "status": "healthy",
            "version": "0.1.0",
            "rate_limiter": stats.to_dict(),
        }

    return app
