"""Identity resolution — display name, role and contact from the user service.

The user service owns profiles; this service only ever asks for them.
One batch endpoint, called with the caller's own bearer token:

    POST {identity_service_url}/api/users/batch   {"userIds": [...]}

A failed or partial lookup aborts only the registration or fan-out batch
that asked for it.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpx
import structlog

logger = structlog.get_logger()


class IdentityResolutionError(Exception):
    """Raised when the identity service cannot resolve a participant."""


@dataclass
class Participant:
    participant_id: str
    display_name: str
    role: Optional[str] = None
    contact: Optional[str] = None


def _parse_user(raw: dict[str, Any], fallback_id: Optional[str]) -> Optional[Participant]:
    participant_id = raw.get("_id") or raw.get("id") or raw.get("userId") or fallback_id
    name = raw.get("name") or raw.get("displayName")
    if not participant_id or not name:
        return None
    return Participant(
        participant_id=str(participant_id),
        display_name=name,
        role=raw.get("role") or raw.get("userType"),
        contact=raw.get("phoneNumber") or raw.get("contact"),
    )


class IdentityResolver:
    """Batch lookups against the external user service over httpx."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout
        )

    async def resolve(
        self, participant_ids: Iterable[str], token: Optional[str] = None
    ) -> dict[str, Participant]:
        """Resolve ids to participants. Unknown ids are absent from the result.

        Raises IdentityResolutionError on transport or HTTP failure.
        """
        ids = [pid for pid in dict.fromkeys(participant_ids) if pid]
        if not ids:
            return {}

        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            resp = await self._client.post(
                "/api/users/batch", json={"userIds": ids}, headers=headers
            )
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("identity.lookup_failed", ids=ids, error=str(e))
            raise IdentityResolutionError("Failed to fetch user information") from e

        users = payload.get("users", []) if isinstance(payload, dict) else payload
        if not isinstance(users, list):
            raise IdentityResolutionError("Unexpected identity service response")

        resolved: dict[str, Participant] = {}
        for position, raw in enumerate(users):
            if not isinstance(raw, dict):
                continue
            # Single-id lookups may come back without an id field
            fallback = ids[position] if len(ids) == 1 else None
            participant = _parse_user(raw, fallback)
            if participant:
                resolved[participant.participant_id] = participant
        return resolved

    async def resolve_one(
        self, participant_id: str, token: Optional[str] = None
    ) -> Participant:
        """Resolve a single participant or raise IdentityResolutionError."""
        resolved = await self.resolve([participant_id], token)
        participant = resolved.get(participant_id)
        if participant is None:
            raise IdentityResolutionError(
                "User information is incomplete or missing name"
            )
        return participant

    async def aclose(self) -> None:
        await self._client.aclose()
