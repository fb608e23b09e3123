"""Presence registry — who is reachable right now, and on which connection.

Two independent namespaces, one per role. A participant may hold an entry
in both at once (same person logged in as requester on one device and as
worker on another); that is allowed, not deduplicated.

Entries are removed by connection handle, never by participant id: when a
device reconnects, the new connection replaces the old entry, and the old
connection's late disconnect must not evict the new one.

The registry lives on app.state and is passed to whoever needs it. Nothing
here is persisted; a restart starts empty.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from parley.db.models import utcnow
from parley.realtime.connection import Connection
from parley.schemas.negotiation import ROLES
from parley.services.identity import IdentityResolutionError, IdentityResolver

logger = structlog.get_logger()


@dataclass
class ConnectionRecord:
    participant_id: str
    role: str
    connection: Connection
    display_name: str
    connected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "role": self.role,
            "connection_id": self.connection.id,
            "display_name": self.display_name,
            "connected_at": self.connected_at.isoformat(),
        }


@dataclass
class RegistrationResult:
    ok: bool
    display_name: Optional[str] = None
    role: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        if not self.ok:
            return {"success": False, "message": self.error}
        return {
            "success": True,
            "message": "Successfully registered",
            "display_name": self.display_name,
            "role": self.role,
        }


class PresenceRegistry:
    """Participant id → live connection, partitioned by role."""

    def __init__(self, identity: Optional[IdentityResolver] = None):
        self.identity = identity
        self._namespaces: dict[str, dict[str, ConnectionRecord]] = {
            role: {} for role in ROLES
        }
        # connection id → {(role, participant_id)} for O(1) unregister
        self._by_connection: dict[str, set[tuple[str, str]]] = {}

    # ─── Registration ────────────────────────────────────

    async def register(
        self,
        participant_id: str,
        role: str,
        connection: Connection,
        token: Optional[str] = None,
    ) -> RegistrationResult:
        """Resolve the participant's identity and record the connection.

        An unresolvable identity is a hard failure: nothing is recorded and
        the connection cannot be used for negotiation.
        """
        if not participant_id:
            logger.warning("presence.invalid_registration", connection_id=connection.id)
            return RegistrationResult(ok=False, error="Invalid participant id")
        if role not in ROLES:
            return RegistrationResult(ok=False, error=f"Unknown role: {role}")
        if self.identity is None:
            return RegistrationResult(ok=False, error="Identity service unavailable")

        try:
            participant = await self.identity.resolve_one(participant_id, token)
        except IdentityResolutionError as e:
            logger.warning(
                "presence.registration_failed",
                participant_id=participant_id,
                role=role,
                error=str(e),
            )
            return RegistrationResult(ok=False, error=str(e))

        if participant.role and participant.role != role:
            # One account may hold both roles; the mismatch is only recorded
            logger.warning(
                "presence.role_mismatch",
                participant_id=participant_id,
                role=role,
                account_role=participant.role,
            )
        self.add(participant_id, role, connection, participant.display_name)
        return RegistrationResult(ok=True, display_name=participant.display_name, role=role)

    def add(
        self,
        participant_id: str,
        role: str,
        connection: Connection,
        display_name: str,
    ) -> ConnectionRecord:
        """Record an already-identified connection, replacing any previous one."""
        namespace = self._namespaces[role]
        previous = namespace.get(participant_id)
        if previous is not None and previous.connection is not connection:
            keys = self._by_connection.get(previous.connection.id)
            if keys is not None:
                keys.discard((role, participant_id))
                if not keys:
                    del self._by_connection[previous.connection.id]

        record = ConnectionRecord(
            participant_id=participant_id,
            role=role,
            connection=connection,
            display_name=display_name,
        )
        namespace[participant_id] = record
        self._by_connection.setdefault(connection.id, set()).add((role, participant_id))

        logger.info(
            "presence.registered",
            participant_id=participant_id,
            role=role,
            connection_id=connection.id,
            connected=len(namespace),
        )
        return record

    def unregister(self, connection: Connection) -> list[ConnectionRecord]:
        """Drop every entry held by this connection. Stale handles are a no-op."""
        removed: list[ConnectionRecord] = []
        for role, participant_id in self._by_connection.pop(connection.id, set()):
            namespace = self._namespaces[role]
            record = namespace.get(participant_id)
            if record is not None and record.connection is connection:
                del namespace[participant_id]
                removed.append(record)

        if removed:
            logger.info(
                "presence.unregistered",
                connection_id=connection.id,
                participants=[r.participant_id for r in removed],
                remaining_workers=len(self._namespaces["worker"]),
                remaining_requesters=len(self._namespaces["requester"]),
            )
        return removed

    # ─── Queries ─────────────────────────────────────────

    def lookup(
        self,
        participant_id: str,
        role: Optional[str] = None,
        prefer: Optional[str] = None,
    ) -> Optional[ConnectionRecord]:
        """Find a participant's connection.

        With `role`, only that namespace is consulted. Otherwise `prefer` is
        tried first, then workers, then requesters.
        """
        if role is not None:
            return self._namespaces.get(role, {}).get(participant_id)

        order = [prefer] if prefer in ROLES else []
        order += [r for r in ("worker", "requester") if r not in order]
        for r in order:
            record = self._namespaces[r].get(participant_id)
            if record is not None:
                return record
        return None

    def records_for(self, participant_id: str) -> list[ConnectionRecord]:
        """All entries for a participant, across both namespaces."""
        return [
            ns[participant_id]
            for ns in self._namespaces.values()
            if participant_id in ns
        ]

    def is_connected(self, participant_id: str, role: Optional[str] = None) -> bool:
        return self.lookup(participant_id, role=role) is not None

    def records(self, role: Optional[str] = None) -> list[ConnectionRecord]:
        if role is not None:
            return list(self._namespaces[role].values())
        return [r for ns in self._namespaces.values() for r in ns.values()]

    def connections(self) -> list[Connection]:
        """Distinct live connections, each listed once."""
        seen: dict[str, Connection] = {}
        for record in self.records():
            seen.setdefault(record.connection.id, record.connection)
        return list(seen.values())

    def stats(self) -> dict:
        workers = self.records("worker")
        requesters = self.records("requester")
        return {
            "total_connections": len(workers) + len(requesters),
            "connected_workers": len(workers),
            "connected_requesters": len(requesters),
            "workers": [r.to_dict() for r in workers],
            "requesters": [r.to_dict() for r in requesters],
        }
