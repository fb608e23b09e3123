"""Connection administration routes — who is online, test pushes, kicks."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from parley.api.deps import connection_manager
from parley.schemas.negotiation import ROLES
from parley.schemas.notification import (
    ConnectionStatusRead,
    DisconnectRequest,
    TestNotification,
)
from parley.services.connections import ConnectionManager

router = APIRouter()


@router.get("/connections/check/{user_id}", response_model=ConnectionStatusRead)
async def check_connection(
    user_id: str,
    mgr: ConnectionManager = Depends(connection_manager),
):
    return mgr.check(user_id)


@router.get("/connections/stats")
async def connection_stats(mgr: ConnectionManager = Depends(connection_manager)):
    """Connected counts plus the participants behind them."""
    return mgr.stats()


@router.get("/connections/users")
async def connected_users(
    role: Optional[str] = Query(None, description="worker or requester"),
    mgr: ConnectionManager = Depends(connection_manager),
):
    if role is not None and role not in ROLES:
        raise HTTPException(status_code=422, detail=f"Unknown role: {role}")
    users = mgr.connected(role)
    return {"role": role, "count": len(users), "users": users}


@router.post("/connections/test/{user_id}")
async def send_test_notification(
    user_id: str,
    body: Optional[TestNotification] = Body(None),
    mgr: ConnectionManager = Depends(connection_manager),
):
    """Push a test frame. 404 if the participant is not connected."""
    body = body or TestNotification()
    result = await mgr.send_test(user_id, body.message, body.type)
    if not result.connected:
        raise HTTPException(status_code=404, detail="Participant not connected")
    return {
        "success": result.accepted,
        "acknowledged": result.acknowledged,
        "error": result.error,
    }


@router.delete("/connections/{user_id}")
async def disconnect_user(
    user_id: str,
    body: Optional[DisconnectRequest] = Body(None),
    mgr: ConnectionManager = Depends(connection_manager),
):
    """Force-close a participant's connections. Idempotent."""
    reason = body.reason if body else "Admin disconnect"
    result = await mgr.disconnect(user_id, reason)
    return result.to_dict()
