"""Shared route dependencies.

Routes get their services from here so tests can swap the durable store
(app.dependency_overrides[get_store]) and the runtime (app.state.runtime).
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from parley.db.engine import get_db
from parley.db.store import NegotiationStore, SqlNegotiationStore
from parley.realtime.runtime import Runtime, get_runtime
from parley.services.connections import ConnectionManager
from parley.services.fanout import NotificationFanout
from parley.services.negotiation import NegotiationService


def get_store(db: AsyncSession = Depends(get_db)) -> NegotiationStore:
    return SqlNegotiationStore(db)


def negotiation_service(
    store: NegotiationStore = Depends(get_store),
    runtime: Runtime = Depends(get_runtime),
) -> NegotiationService:
    return runtime.negotiation(store)


def connection_manager(runtime: Runtime = Depends(get_runtime)) -> ConnectionManager:
    return runtime.connections()


def notification_fanout(runtime: Runtime = Depends(get_runtime)) -> NotificationFanout:
    return runtime.fanout()
