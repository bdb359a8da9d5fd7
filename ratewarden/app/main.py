from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ratewarden import __version__
from ratewarden.app.core.config import Settings, settings
from ratewarden.app.core.logging import get_logger, setup_logging
from ratewarden.app.exceptions import RateWardenError
from ratewarden.app.middleware.rate_limit import GUARD_STATE_KEY, RateLimitMiddleware
from ratewarden.app.services.rate_limit.guard import RateGuard


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        app_settings: Settings to use instead of the global instance

    Returns:
        Configured FastAPI application instance
    """
    cfg = app_settings or settings

    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        The application (not the guard) owns the Redis client: it is opened
        here and closed on shutdown.
        """
        redis_client = None
        if cfg.redis_enabled:
            redis_client = aioredis.from_url(
                cfg.redis_url,
                socket_timeout=cfg.redis_timeout_seconds,
                socket_connect_timeout=cfg.redis_timeout_seconds,
            )

        guard = RateGuard.from_settings(cfg, redis_client=redis_client)
        setattr(app.state, GUARD_STATE_KEY, guard)
        await guard.start()

        logger.info(
            "Application startup complete",
            extra={
                "backend": guard.backend.name,
                "window_ms": guard.window_ms,
                "tiers": guard.tiers.as_dict(),
            },
        )

        try:
            yield
        finally:
            await guard.close()
            if redis_client is not None:
                try:
                    await redis_client.aclose()
                except Exception as e:
                    logger.warning(f"Error closing Redis connection: {e}")
            logger.info("Application shutdown complete")

    app = FastAPI(
        title="ratewarden",
        description="Identity-aware, tier-based sliding-window rate limiting",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        RateLimitMiddleware,
        fail_closed=cfg.rate_limit_fail_closed,
        exempt_paths=cfg.rate_limit_exempt_paths,
        enabled=cfg.rate_limit_enabled,
    )

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Health check with backend kind, readiness and occupancy."""
        guard: Optional[RateGuard] = getattr(request.app.state, GUARD_STATE_KEY, None)
        if guard is None:
            return {"status": "starting", "components": {}}

        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        backend_status: dict[str, Any] = {"type": guard.backend.name}
        try:
            ready = await guard.is_ready()
            backend_status["status"] = "ok" if ready else "error"
            if ready:
                backend_status["stats"] = (await guard.get_stats()).to_dict()
            else:
                health_status["status"] = "degraded"
        except RateWardenError as e:
            health_status["status"] = "degraded"
            backend_status["status"] = "error"
            backend_status["error"] = e.message[:100]
        health_status["components"]["backend"] = backend_status
        return health_status

    @app.get("/api/ping")
    async def ping(request: Request) -> dict[str, Any]:
        """Demo protected route echoing the admission the middleware made."""
        admission = getattr(request.state, "rate_limit", None)
        if admission is None:
            return {"status": "ok", "tier": None}
        return {
            "status": "ok",
            "tier": admission.tier,
            "identity_source": admission.identity_source.value,
            "remaining": admission.decision.remaining,
        }

    @app.exception_handler(RateWardenError)
    async def ratewarden_error_handler(request: Request, exc: RateWardenError) -> JSONResponse:
        """Handle RateWardenError raised from routes."""
        logger.error(f"{type(exc).__name__}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "message": exc.message},
        )

    return app


# Create the application instance
app = create_app()
