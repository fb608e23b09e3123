"""Connection handles — the transport the delivery engine pushes through.

A Connection is whatever a participant registered with. The registry and
delivery engine only depend on this interface, so tests substitute an
in-memory fake and no live WebSocket is needed.

Frames pushed to clients:
    {"event": "negotiationMessage", "data": {...}, "ack_id": "..."}

A client acknowledges by sending back {"event": "ack", "ack_id": "..."}.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

logger = structlog.get_logger()

# Resolves acks still pending when the connection closes
_CLOSED = object()


class ConnectionSendError(Exception):
    """Raised when the transport refuses a frame (closed socket, broken pipe)."""


class Connection(ABC):
    """A live, addressable connection to one client device."""

    def __init__(self, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    async def emit(
        self,
        event: str,
        data: dict[str, Any],
        ack_timeout: Optional[float] = None,
    ) -> bool:
        """Push one frame.

        Returns True if the client acknowledged within ack_timeout, False if
        no ack was requested or none arrived in time. Raises
        ConnectionSendError when the transport does not accept the frame.
        """

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"


class WebSocketConnection(Connection):
    """Connection over a Starlette/FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        super().__init__(connection_id)
        self.websocket = websocket
        self._pending_acks: dict[str, asyncio.Future] = {}
        self._send_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return (
            self.websocket.client_state != WebSocketState.CONNECTED
            or self.websocket.application_state != WebSocketState.CONNECTED
        )

    async def send_frame(self, frame: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionSendError("connection is closed")
        try:
            # Starlette websockets are not safe for concurrent sends
            async with self._send_lock:
                await self.websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ConnectionSendError(str(e) or type(e).__name__) from e

    async def emit(self, event, data, ack_timeout=None):
        frame: dict[str, Any] = {"event": event, "data": data}
        future: Optional[asyncio.Future] = None
        if ack_timeout:
            ack_id = uuid.uuid4().hex
            frame["ack_id"] = ack_id
            future = asyncio.get_running_loop().create_future()
            self._pending_acks[ack_id] = future

        try:
            await self.send_frame(frame)
            if future is None:
                return False
            try:
                result = await asyncio.wait_for(future, timeout=ack_timeout)
                return result is not _CLOSED
            except asyncio.TimeoutError:
                return False
        finally:
            if future is not None:
                self._pending_acks.pop(frame["ack_id"], None)

    def resolve_ack(self, ack_id: str, payload: Any = None) -> bool:
        """Complete a pending ack. Returns False for unknown or late acks."""
        future = self._pending_acks.get(ack_id)
        if future is None or future.done():
            return False
        future.set_result(payload)
        return True

    async def close(self, code=1000, reason=""):
        for future in self._pending_acks.values():
            if not future.done():
                future.set_result(_CLOSED)
        self._pending_acks.clear()
        if self.websocket.client_state == WebSocketState.CONNECTED:
            try:
                await self.websocket.close(code=code, reason=reason)
            except RuntimeError:
                logger.debug("connection.already_closed", connection_id=self.id)
