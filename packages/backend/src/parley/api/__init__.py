"""API route aggregation.

All routers registered here get mounted in main.py. Auth is applied at the
include_router level; only the health check is open.
"""

from fastapi import APIRouter, Depends

from parley.api.connections import router as connections_router
from parley.api.health import router as health_router
from parley.api.jobs import router as jobs_router
from parley.api.negotiations import router as negotiations_router
from parley.auth.dependencies import get_current_user

_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes — no auth required
api_router.include_router(health_router, tags=["health"])

# Protected routes — require a valid JWT
api_router.include_router(negotiations_router, tags=["negotiations"], dependencies=_auth)
api_router.include_router(jobs_router, tags=["jobs", "notifications"], dependencies=_auth)
api_router.include_router(connections_router, tags=["connections"], dependencies=_auth)
