"""Connection management — the administrative view of the presence registry.

Operators (and the REST API) use this to see who is online, push a test
frame to a participant, or force a disconnect. Everything here reads or
mutates the in-process registry; nothing is persisted.
"""

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from parley.db.models import utcnow
from parley.realtime.connection import ConnectionSendError
from parley.realtime.presence import PresenceRegistry
from parley.services.delivery import DeliveryEngine, PushResult

logger = structlog.get_logger()

TEST_EVENT = "testNotification"
DISCONNECT_EVENT = "forceDisconnect"


@dataclass
class DisconnectResult:
    success: bool
    message: str
    connections: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "connections": self.connections,
        }


class ConnectionManager:
    def __init__(self, registry: PresenceRegistry, delivery: DeliveryEngine):
        self.registry = registry
        self.delivery = delivery

    def check(self, participant_id: str) -> dict[str, Any]:
        """Is this participant online, and as which role(s)?"""
        as_worker = self.registry.is_connected(participant_id, role="worker")
        as_requester = self.registry.is_connected(participant_id, role="requester")
        role = "worker" if as_worker else "requester" if as_requester else None
        return {
            "participant_id": participant_id,
            "is_connected": as_worker or as_requester,
            "role": role,
            "connected_as_worker": as_worker,
            "connected_as_requester": as_requester,
            "timestamp": utcnow(),
        }

    def stats(self) -> dict[str, Any]:
        return {**self.registry.stats(), "timestamp": utcnow()}

    def connected(self, role: Optional[str] = None) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.registry.records(role)]

    async def send_test(
        self,
        participant_id: str,
        message: Optional[str] = None,
        kind: str = "test",
    ) -> PushResult:
        payload = {
            "message": message or "Test notification",
            "type": kind,
            "timestamp": utcnow().isoformat(),
        }
        result = await self.delivery.push(participant_id, TEST_EVENT, payload)
        logger.info(
            "connections.test_sent",
            participant_id=participant_id,
            accepted=result.accepted,
            acknowledged=result.acknowledged,
        )
        return result

    async def disconnect(
        self, participant_id: str, reason: str = "Admin disconnect"
    ) -> DisconnectResult:
        """Close every connection the participant holds. Idempotent."""
        records = self.registry.records_for(participant_id)
        if not records:
            return DisconnectResult(success=False, message="Participant not connected")

        closed = 0
        for connection in {r.connection.id: r.connection for r in records}.values():
            # Registry first: a send failure below must not leave a stale entry
            self.registry.unregister(connection)
            try:
                await connection.emit(DISCONNECT_EVENT, {"reason": reason})
            except ConnectionSendError as e:
                logger.debug(
                    "connections.disconnect_notice_failed",
                    connection_id=connection.id,
                    error=str(e),
                )
            await connection.close(code=1000, reason=reason)
            closed += 1

        logger.info(
            "connections.disconnected",
            participant_id=participant_id,
            connections=closed,
            reason=reason,
        )
        return DisconnectResult(
            success=True,
            message=f"Disconnected {closed} connection(s)",
            connections=closed,
        )

    async def broadcast(
        self,
        event: str,
        payload: dict[str, Any],
        exclude: Optional[str] = None,
    ) -> int:
        """Push a frame to every live connection. Returns how many accepted it."""
        sent = 0
        for connection in self.registry.connections():
            if exclude is not None and connection.id == exclude:
                continue
            try:
                await connection.emit(event, payload)
                sent += 1
            except ConnectionSendError as e:
                logger.warning(
                    "connections.broadcast_failed",
                    connection_id=connection.id,
                    event=event,
                    error=str(e),
                )
        return sent
