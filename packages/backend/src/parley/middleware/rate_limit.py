"""Rate limiting middleware — fixed one-minute windows counted in Redis.

Key per client and minute: parley:rl:{ip}:{minute}. The health check is
never limited. Without Redis (single-process dev, tests) limiting is
skipped entirely, and a Redis error mid-request lets the request through.
"""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = structlog.get_logger()

EXEMPT_PATHS = ("/api/v1/health",)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting per IP per minute."""

    def __init__(self, app, rpm: int = 100):
        super().__init__(app)
        self.rpm = rpm

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        from parley.realtime.redis_client import get_redis

        try:
            redis = get_redis()
        except RuntimeError:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        key = f"parley:rl:{client_ip}:{int(time.time() // 60)}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)
        except Exception as e:
            logger.warning("rate_limit.redis_error", error=str(e))
            return await call_next(request)

        if count > self.rpm:
            logger.info("rate_limit.exceeded", client_ip=client_ip, count=count)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.rpm - count))
        return response
