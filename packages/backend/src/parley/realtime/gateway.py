"""WebSocket gateway — the realtime surface for requesters and workers.

Clients connect to /ws?token=JWT and exchange JSON frames:

    client → server   {"event": "sendNegotiation", "data": {...}, "ref": "42"}
    server → client   {"event": "reply", "ref": "42", "data": {...}}
    server → client   {"event": "negotiationMessage", "data": {...}, "ack_id": "..."}
    client → server   {"event": "ack", "ack_id": "..."}

Each inbound frame is handled in its own task. Handlers push to other
connections and may wait for acks; the socket must keep reading meanwhile,
or an ack for a push to this same connection could never arrive.
When the socket drops, handlers still running are awaited rather than
cancelled, so a message that was being saved is saved.

A connection acts only as the participant it registered as. With a token,
that must be the token's subject. Negotiation events before registration
are refused.

Every handler is an outermost boundary: an unexpected exception is logged
and answered with a generic failure, and the connection stays open.
"""

import asyncio
import json
from typing import Any, Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from structlog.contextvars import bound_contextvars

from parley.config import settings
from parley.realtime.connection import ConnectionSendError, WebSocketConnection
from parley.realtime.runtime import Runtime, get_ws_runtime

logger = structlog.get_logger()
router = APIRouter()

SERVER_ERROR = {"success": False, "message": "Server error occurred"}
NOT_REGISTERED = {"success": False, "message": "Register before sending this event"}

REGISTER_EVENTS = {
    "registerWorker": "worker",
    "registerRequester": "requester",
}

# Events that act on behalf of the registered participant
REGISTERED_ONLY = frozenset({
    "sendNegotiation",
    "markMessageRead",
    "jobBooked",
    "newSearchData",
    "typing",
})


def _participant_id(data: Any) -> Optional[str]:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        value = data.get("participant_id") or data.get("user_id")
        return str(value) if value else None
    return None


class GatewaySession:
    """Per-connection state and event dispatch."""

    def __init__(
        self,
        connection: WebSocketConnection,
        runtime: Runtime,
        token: Optional[str] = None,
        subject: Optional[str] = None,
    ):
        self.connection = connection
        self.runtime = runtime
        self.token = token
        # Participant id the token was issued to; None when unauthenticated
        self.subject = subject
        self.participant_id: Optional[str] = None
        self.role: Optional[str] = None
        self.display_name: Optional[str] = None
        self._handlers = {
            "registerWorker": self._on_register,
            "registerRequester": self._on_register,
            "sendNegotiation": self._on_send_negotiation,
            "markMessageRead": self._on_mark_read,
            "jobBooked": self._on_job_booked,
            "newSearchData": self._on_new_search_data,
            "typing": self._on_typing,
            "ping": self._on_ping,
        }

    async def handle_frame(self, raw: str) -> Optional[dict[str, Any]]:
        """Handle one inbound frame. Returns the frame to send back, if any."""
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            return {"event": "error", "data": {"success": False, "message": "Invalid JSON"}}
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            return {"event": "error", "data": {"success": False, "message": "Invalid frame"}}

        event = frame["event"]
        if event == "ack":
            self.connection.resolve_ack(str(frame.get("ack_id", "")), frame.get("data"))
            return None

        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("gateway.unknown_event", event=event)
            return self._reply(frame, {"success": False, "message": f"Unknown event: {event}"})
        if event in REGISTERED_ONLY and self.participant_id is None:
            logger.warning("gateway.unregistered_event", event=event)
            return self._reply(frame, dict(NOT_REGISTERED))

        try:
            result = await handler(event, frame.get("data"))
        except Exception:
            logger.exception(
                "gateway.handler_error",
                event=event,
                participant_id=self.participant_id,
            )
            result = dict(SERVER_ERROR)

        if result is None:
            return None
        if event == "ping":
            return result
        return self._reply(frame, result)

    @staticmethod
    def _reply(frame: dict, data: dict[str, Any]) -> dict[str, Any]:
        return {"event": "reply", "ref": frame.get("ref"), "data": data}

    # ─── Handlers ────────────────────────────────────────

    async def _on_register(self, event: str, data: Any) -> dict[str, Any]:
        role = REGISTER_EVENTS[event]
        participant_id = _participant_id(data)
        if self.subject and participant_id and participant_id != self.subject:
            logger.warning(
                "gateway.subject_mismatch",
                participant_id=participant_id,
                subject=self.subject,
            )
            return {"success": False, "message": "Token does not match participant"}
        result = await self.runtime.registry.register(
            participant_id, role, self.connection, self.token
        )
        if not result.ok:
            return result.to_dict()

        self.participant_id = participant_id
        self.role = role
        self.display_name = result.display_name

        # Push whatever arrived while this participant was offline. The
        # registration stands even if this fails; the outbox is retried on
        # the next registration.
        flushed = 0
        try:
            async with self.runtime.open_store() as store:
                flushed = await self.runtime.delivery(store).flush_pending(
                    participant_id, limit=settings.outbox_flush_limit
                )
        except Exception:
            logger.exception("gateway.outbox_flush_failed", participant_id=participant_id)
        reply = result.to_dict()
        reply["pending_delivered"] = flushed
        return reply

    async def _on_send_negotiation(self, event: str, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            data = {}
        sender_id = data.get("sender_id")
        if sender_id and sender_id != self.participant_id:
            logger.warning(
                "gateway.sender_mismatch",
                participant_id=self.participant_id,
                sender_id=sender_id,
            )
            return {
                "success": False,
                "message": "sender_id does not match the registered participant",
            }
        # The sender is whoever registered on this connection
        data = {
            **data,
            "sender_id": self.participant_id,
            "sender_role": self.role,
            "sender_name": self.display_name,
        }
        async with self.runtime.open_store() as store:
            result = await self.runtime.negotiation(store).submit(data)
        return result.to_dict()

    async def _on_mark_read(self, event: str, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            return {"success": False, "message": "message_ids are required"}
        message_ids = data.get("message_ids")
        if message_ids is None and data.get("message_id") is not None:
            message_ids = [data["message_id"]]
        if not message_ids:
            return {"success": False, "message": "message_ids are required"}
        try:
            ids = [int(i) for i in message_ids]
        except (TypeError, ValueError):
            return {"success": False, "message": "message_ids must be integers"}

        # Only the registered participant's own inbox can be marked read
        async with self.runtime.open_store() as store:
            modified = await self.runtime.negotiation(store).mark_read(
                ids, self.participant_id
            )
        return {"success": True, "modified_count": modified}

    async def _on_job_booked(self, event: str, data: Any) -> dict[str, Any]:
        correlation_id = data.get("correlation_id") if isinstance(data, dict) else None
        if not correlation_id:
            return {"success": False, "message": "correlation_id is required"}
        notified = await self.runtime.book_job(str(correlation_id))
        return {"success": True, "correlation_id": correlation_id, "notified": notified}

    async def _on_new_search_data(self, event: str, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            return {"success": False, "message": "Invalid search data"}
        report = await self.runtime.fanout().dispatch(data, token=self.token)
        return report.to_dict()

    async def _on_typing(self, event: str, data: Any) -> None:
        if not isinstance(data, dict) or not data.get("receiver_id"):
            return None
        await self.runtime.delivery().push(
            str(data["receiver_id"]),
            "userTyping",
            {
                "sender_id": self.participant_id,
                "correlation_id": data.get("correlation_id"),
                "is_typing": bool(data.get("is_typing", True)),
            },
        )
        return None

    async def _on_ping(self, event: str, data: Any) -> dict[str, Any]:
        return {"event": "pong", "data": data}

    def close(self) -> None:
        removed = self.runtime.registry.unregister(self.connection)
        logger.info(
            "gateway.session_closed",
            participant_id=self.participant_id,
            registrations=len(removed),
        )


@router.websocket("/ws")
async def negotiation_websocket(websocket: WebSocket):
    """Realtime endpoint for negotiation clients.

    Authentication: JWT as ?token= query param. In development mode,
    unauthenticated connections are allowed.
    """
    # ── Authentication ──────────────────────────────────────
    token = websocket.query_params.get("token")

    if not token and settings.environment != "development":
        await websocket.close(code=4001, reason="Authentication required")
        return

    subject = None
    if token:
        from parley.auth.jwt import TokenError, verify_token

        try:
            subject = verify_token(token)["sub"]
        except TokenError:
            await websocket.close(code=4001, reason="Invalid or expired token")
            return

    # ── Connection accepted ─────────────────────────────────
    runtime = get_ws_runtime(websocket)
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    session = GatewaySession(connection, runtime, token, subject=subject)
    tasks: set[asyncio.Task] = set()

    async def handle(raw: str) -> None:
        reply = await session.handle_frame(raw)
        if reply is not None:
            try:
                await connection.send_frame(reply)
            except ConnectionSendError:
                logger.debug("gateway.reply_dropped", event=reply.get("event"))

    with bound_contextvars(connection_id=connection.id):
        logger.info("gateway.connected")
        try:
            while True:
                raw = await websocket.receive_text()
                task = asyncio.create_task(handle(raw))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except WebSocketDisconnect as e:
            logger.info("gateway.disconnected", code=e.code)
        finally:
            session.close()
            # Releases handlers waiting on acks from this socket
            await connection.close()
            # In-flight handlers may be mid-save; let them finish
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
                # A registration may have completed while draining
                runtime.registry.unregister(connection)
