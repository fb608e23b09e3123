"""Health check endpoint.

Reports the server version, Postgres and Redis reachability, and how many
participants are connected to this process.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from parley import __version__
from parley.db.engine import engine
from parley.realtime.runtime import Runtime, get_runtime

router = APIRouter()


@router.get("/health")
async def health_check(runtime: Runtime = Depends(get_runtime)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["postgres"] = "ok"
    except Exception as e:
        checks["postgres"] = f"error: {e}"

    # Redis is optional: absent means the in-memory job board is in use
    from parley.realtime.redis_client import get_redis

    try:
        await get_redis().ping()
        checks["redis"] = "ok"
    except RuntimeError:
        checks["redis"] = "disabled"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v in ("ok", "disabled") for k, v in checks.items() if k != "version"
    ) else "degraded"

    stats = runtime.registry.stats()
    return {
        "status": status,
        **checks,
        "connections": {
            "workers": stats["connected_workers"],
            "requesters": stats["connected_requesters"],
        },
    }
