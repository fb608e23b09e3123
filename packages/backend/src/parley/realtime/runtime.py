"""Runtime — the long-lived, in-process pieces of one server.

The presence registry, job-status board and identity client live as long
as the process. Services that need the durable store are built per request
(REST) or per event (WebSocket) around a fresh store, so every operation
gets its own session.

The runtime is created in the app lifespan and stored on app.state;
tests build one directly with fakes.
"""

from contextlib import AbstractAsyncContextManager
from typing import Callable, Optional

import structlog
from fastapi import Request, WebSocket

from parley.config import settings
from parley.db.store import NegotiationStore, sql_store_scope
from parley.realtime.job_status import BOOKED, JobStatusBoard
from parley.realtime.presence import PresenceRegistry
from parley.services.connections import ConnectionManager
from parley.services.delivery import DeliveryEngine
from parley.services.fanout import NotificationFanout
from parley.services.identity import IdentityResolver
from parley.services.negotiation import NegotiationService

logger = structlog.get_logger()

JOB_STATUS_EVENT = "jobStatusUpdate"

StoreScope = Callable[[], AbstractAsyncContextManager[NegotiationStore]]


class Runtime:
    def __init__(
        self,
        registry: PresenceRegistry,
        job_status: JobStatusBoard,
        identity: Optional[IdentityResolver] = None,
        open_store: StoreScope = sql_store_scope,
        ack_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.job_status = job_status
        self.identity = identity
        self.open_store = open_store
        self.ack_timeout = (
            settings.ack_timeout_seconds if ack_timeout is None else ack_timeout
        )

    # ─── Service factories ───────────────────────────────

    def delivery(self, store: Optional[NegotiationStore] = None) -> DeliveryEngine:
        return DeliveryEngine(self.registry, store, ack_timeout=self.ack_timeout)

    def negotiation(self, store: NegotiationStore) -> NegotiationService:
        return NegotiationService(
            store, self.job_status, self.delivery(store), identity=self.identity
        )

    def fanout(self) -> NotificationFanout:
        return NotificationFanout(self.delivery(), identity=self.identity)

    def connections(self) -> ConnectionManager:
        return ConnectionManager(self.registry, self.delivery())

    # ─── Job booking ─────────────────────────────────────

    async def book_job(self, correlation_id: str, notify: bool = True) -> int:
        """Flag a correlation id as booked and tell every connected client.

        Returns the number of connections that accepted the update.
        """
        await self.job_status.mark_booked(correlation_id)
        sent = 0
        if notify:
            sent = await self.connections().broadcast(
                JOB_STATUS_EVENT,
                {"correlation_id": correlation_id, "status": BOOKED},
            )
        logger.info("jobs.booked", correlation_id=correlation_id, notified=sent)
        return sent


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency — the runtime wired up in the app lifespan."""
    return runtime_from_state(request.app.state)


def get_ws_runtime(websocket: WebSocket) -> Runtime:
    return runtime_from_state(websocket.app.state)


def runtime_from_state(state) -> Runtime:
    runtime = getattr(state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Runtime not initialized. Is the app lifespan running?")
    return runtime
