"""FastAPI application factory.

create_app() returns a configured FastAPI instance. The lifespan wires the
in-process runtime (presence registry, job-status board, identity client)
and tears it down again; middleware, CORS and routers are registered here.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parley import __version__
from parley.api import api_router
from parley.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "parley.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from parley.realtime.job_status import InMemoryJobStatusBoard, RedisJobStatusBoard
    from parley.realtime.presence import PresenceRegistry
    from parley.realtime.redis_client import close_redis, init_redis
    from parley.realtime.runtime import Runtime
    from parley.services.identity import IdentityResolver

    redis = None
    try:
        redis = await init_redis()
        logger.info("parley.redis_connected", url=settings.redis_url)
    except Exception as e:
        # Redis is optional; single-process mode keeps job flags in memory
        logger.warning("parley.redis_unavailable", error=str(e))

    if settings.job_status_backend == "redis" and redis is not None:
        job_status = RedisJobStatusBoard(redis)
    else:
        if settings.job_status_backend == "redis":
            logger.warning("parley.job_status_fallback", backend="memory")
        job_status = InMemoryJobStatusBoard()

    identity = IdentityResolver(
        settings.identity_service_url, timeout=settings.identity_timeout_seconds
    )
    app.state.runtime = Runtime(
        registry=PresenceRegistry(identity),
        job_status=job_status,
        identity=identity,
    )

    yield

    # Shutdown
    logger.info("parley.shutdown")

    runtime = app.state.runtime
    for connection in runtime.registry.connections():
        await connection.close(code=1001, reason="Server shutting down")

    await identity.aclose()
    await close_redis()

    from parley.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Parley",
        description="Real-time wage negotiation and presence for the labor marketplace",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler

    from parley.middleware.rate_limit import RateLimitMiddleware
    from parley.middleware.request_id import RequestIdMiddleware
    from parley.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RateLimitMiddleware, rpm=settings.rate_limit_rpm)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from parley.realtime.gateway import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: parley.main:app)
app = create_app()
