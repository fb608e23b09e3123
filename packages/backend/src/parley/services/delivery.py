"""Delivery engine — push a message to its recipient's live connection.

Two layers:
- push(): ephemeral frames (match notifications, test payloads, typing).
  Looks the participant up in the presence registry and emits.
- deliver(): a persisted negotiation message. Same push, plus the
  delivered_at stamp in the durable store when the transport accepts it.

Transport acceptance and application acknowledgment are reported
separately. Only acceptance decides `delivered`; a missing ack within
ack_timeout is logged and surfaces as acknowledged=False.

A recipient who is not connected gets nothing pushed: the message is
already durable, is returned by history, and flush_pending() pushes it the
next time the recipient registers. That is what queued=True means.

One message reaches one connection. When the receiver is registered under
both roles, deliver() pushes only to the counterpart role of the sender (a
requester's message goes to the worker connection) and falls back to the
other role only when that one is absent. The other device sees the message
through history.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog

from parley.db.models import NegotiationMessage, utcnow
from parley.db.store import NegotiationStore
from parley.realtime.connection import ConnectionSendError
from parley.realtime.presence import PresenceRegistry
from parley.schemas.negotiation import MessageRead, counterpart_role

logger = structlog.get_logger()

NEGOTIATION_EVENT = "negotiationMessage"


@dataclass
class PushResult:
    connected: bool
    accepted: bool = False
    acknowledged: bool = False
    error: Optional[str] = None


@dataclass
class DeliveryResult:
    delivered: bool
    queued: bool = False
    acknowledged: bool = False
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None


def message_payload(message: NegotiationMessage) -> dict[str, Any]:
    return MessageRead.model_validate(message).model_dump(mode="json")


class DeliveryEngine:
    """Pushes frames through the presence registry and records delivery."""

    def __init__(
        self,
        registry: PresenceRegistry,
        store: Optional[NegotiationStore] = None,
        ack_timeout: float = 1.0,
    ):
        self.registry = registry
        self.store = store
        self.ack_timeout = ack_timeout

    async def push(
        self,
        participant_id: str,
        event: str,
        payload: dict[str, Any],
        role: Optional[str] = None,
        prefer: Optional[str] = None,
    ) -> PushResult:
        """Emit one frame to a participant's connection, if they have one."""
        record = self.registry.lookup(participant_id, role=role, prefer=prefer)
        if record is None:
            return PushResult(connected=False, error="Participant not connected")

        try:
            acknowledged = await record.connection.emit(
                event, payload, ack_timeout=self.ack_timeout
            )
        except ConnectionSendError as e:
            logger.warning(
                "delivery.transport_failed",
                participant_id=participant_id,
                connection_id=record.connection.id,
                event=event,
                error=str(e),
            )
            return PushResult(connected=True, error=str(e))

        if not acknowledged:
            logger.info(
                "delivery.ack_missing",
                participant_id=participant_id,
                event=event,
                ack_timeout=self.ack_timeout,
            )
        return PushResult(connected=True, accepted=True, acknowledged=acknowledged)

    async def deliver(self, message: NegotiationMessage) -> DeliveryResult:
        """Push a persisted negotiation message to its receiver."""
        result = await self.push(
            message.receiver_id,
            NEGOTIATION_EVENT,
            message_payload(message),
            prefer=counterpart_role(message.sender_role),
        )

        if not result.connected:
            logger.info(
                "delivery.recipient_offline",
                message_id=message.id,
                receiver_id=message.receiver_id,
            )
            return DeliveryResult(delivered=False, queued=True)

        if not result.accepted:
            return DeliveryResult(delivered=False, error=result.error)

        delivered_at = utcnow()
        if self.store is not None:
            await self.store.mark_delivered(message.id, delivered_at)
        message.delivered_at = delivered_at

        logger.info(
            "delivery.delivered",
            message_id=message.id,
            receiver_id=message.receiver_id,
            acknowledged=result.acknowledged,
        )
        return DeliveryResult(
            delivered=True,
            acknowledged=result.acknowledged,
            delivered_at=delivered_at,
        )

    async def flush_pending(self, participant_id: str, limit: int = 100) -> int:
        """Push stored messages the participant missed while offline.

        Called right after a successful registration. Stops at the first
        transport failure; whatever is left stays queued for next time.
        Returns the number delivered.
        """
        if self.store is None:
            return 0

        pending = await self.store.undelivered_for(participant_id, limit=limit)
        delivered = 0
        for message in pending:
            result = await self.deliver(message)
            if not result.delivered:
                break
            delivered += 1

        if pending:
            logger.info(
                "delivery.outbox_flushed",
                participant_id=participant_id,
                pending=len(pending),
                delivered=delivered,
            )
        return delivered
