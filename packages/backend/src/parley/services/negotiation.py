"""Negotiation service — the message and conversation state machine.

Every submitted message goes through, in order:
1. field rules on NegotiationSubmission (first violation wins)
2. job-status gate: a booked correlation id takes no more messages
3. conversation gate: completed/cancelled/expired conversations are closed
4. persist (message + conversation bump, one commit)
5. delivery attempt

Persistence happens before delivery and delivery never rolls it back: a
recipient who is offline still finds the message in history.

Conversation states:
  active → completed | cancelled | expired   (all terminal)
"""

import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog

from parley.config import settings
from parley.db.models import NegotiationConversation, NegotiationMessage, utcnow
from parley.db.store import NegotiationStore
from parley.realtime.job_status import JobStatusBoard
from parley.schemas.negotiation import (
    CLOSED_CONVERSATION_STATUSES,
    CONVERSATION_STATUSES,
)
from parley.services.delivery import DeliveryEngine, DeliveryResult
from parley.services.identity import IdentityResolutionError, IdentityResolver
from parley.services.validation import parse_submission

logger = structlog.get_logger()


class ConversationNotFoundError(Exception):
    """Raised when a conversation does not exist."""


class NotAParticipantError(Exception):
    """Raised when someone outside the conversation tries to change it."""


class ConversationClosedError(Exception):
    """Raised when completing a conversation that was cancelled or expired."""


# ═══════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════


@dataclass
class SubmitResult:
    success: bool
    message: str
    code: Optional[str] = None
    message_id: Optional[int] = None
    conversation_id: Optional[int] = None
    delivery: Optional[DeliveryResult] = None

    @classmethod
    def rejected(cls, reason: str, code: str) -> "SubmitResult":
        return cls(success=False, message=reason, code=code)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "code": self.code,
            "message_id": self.message_id,
            "conversation_id": self.conversation_id,
            "delivered": False,
            "queued": False,
            "acknowledged": False,
            "delivered_at": None,
            "error": None,
        }
        if self.delivery is not None:
            data.update(
                delivered=self.delivery.delivered,
                queued=self.delivery.queued,
                acknowledged=self.delivery.acknowledged,
                delivered_at=(
                    self.delivery.delivered_at.isoformat()
                    if self.delivery.delivered_at
                    else None
                ),
                error=self.delivery.error,
            )
        return data


@dataclass
class ActiveConversation:
    correlation_id: str
    counterparty_id: str
    last_message: NegotiationMessage
    unread_count: int = 0


@dataclass
class HistoryEntry:
    message: NegotiationMessage
    receiver_name: Optional[str] = None


def _closed_reason(status: str) -> str:
    if status == "completed":
        return "This negotiation has already been completed."
    if status == "cancelled":
        return "This negotiation has been cancelled."
    return "This negotiation has expired."


def generate_notification_id(sender_id: str, receiver_id: str) -> str:
    millis = int(utcnow().timestamp() * 1000)
    return f"{sender_id}_{receiver_id}_{millis}_{uuid.uuid4().hex[:9]}"


# ═══════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════


class NegotiationService:
    """Validates, persists and threads negotiation messages."""

    def __init__(
        self,
        store: NegotiationStore,
        job_status: JobStatusBoard,
        delivery: DeliveryEngine,
        identity: Optional[IdentityResolver] = None,
        max_body_length: Optional[int] = None,
    ):
        self.store = store
        self.job_status = job_status
        self.delivery = delivery
        self.identity = identity
        self.max_body_length = max_body_length or settings.max_message_length

    # ─── Submit ──────────────────────────────────────────

    async def submit(self, data: Mapping[str, Any]) -> SubmitResult:
        """Run one message through the state machine. Never raises."""
        try:
            return await self._submit(data)
        except Exception:
            logger.exception(
                "negotiation.submit_error",
                sender_id=(data or {}).get("sender_id"),
                correlation_id=(data or {}).get("correlation_id"),
            )
            return SubmitResult.rejected("Server error occurred", "server_error")

    async def _submit(self, data: Mapping[str, Any]) -> SubmitResult:
        submission, violations = parse_submission(data, self.max_body_length)
        if violations:
            first = violations[0]
            logger.warning(
                "negotiation.rejected",
                reason=first.message,
                field=first.field,
                sender_id=(data or {}).get("sender_id"),
            )
            return SubmitResult.rejected(first.message, "validation")

        if await self.job_status.is_booked(submission.correlation_id):
            logger.warning(
                "negotiation.rejected_booked",
                correlation_id=submission.correlation_id,
            )
            return SubmitResult.rejected("This job has expired.", "job_booked")

        conv = await self.store.get_conversation(
            submission.sender_id, submission.receiver_id, submission.correlation_id
        )
        if conv is not None and conv.status in CLOSED_CONVERSATION_STATUSES:
            logger.warning(
                "negotiation.rejected_closed",
                conversation_id=conv.id,
                status=conv.status,
            )
            return SubmitResult.rejected(
                _closed_reason(conv.status), "conversation_closed"
            )

        notification_id = submission.notification_id or generate_notification_id(
            submission.sender_id, submission.receiver_id
        )
        message, conv = await self.store.record_message(
            submission,
            notification_id=notification_id,
            sender_name=submission.sender_name or "Unknown",
        )
        logger.info(
            "negotiation.submitted",
            message_id=message.id,
            conversation_id=conv.id,
            sender_id=submission.sender_id,
            receiver_id=submission.receiver_id,
            correlation_id=submission.correlation_id,
            message_count=conv.message_count,
        )

        delivery = await self.delivery.deliver(message)
        if delivery.delivered:
            text = "Message delivered"
        elif delivery.queued:
            text = "Recipient offline; message saved"
        else:
            text = "Message saved but delivery failed"

        return SubmitResult(
            success=True,
            message=text,
            message_id=message.id,
            conversation_id=conv.id,
            delivery=delivery,
        )

    # ─── Read receipts ───────────────────────────────────

    async def mark_read(self, message_ids: list[int], reader_id: str) -> int:
        """Mark messages addressed to reader_id as read. Returns modified count.

        Ids that don't exist, belong to someone else or are already read are
        skipped, so repeating the call modifies nothing.
        """
        if not message_ids or not reader_id:
            return 0
        modified = await self.store.mark_read(list(message_ids), reader_id, utcnow())
        logger.debug(
            "negotiation.marked_read",
            reader_id=reader_id,
            requested=len(message_ids),
            modified=modified,
        )
        return modified

    async def unread_count(self, participant_id: str) -> int:
        return await self.store.unread_count(participant_id)

    # ─── Completion ──────────────────────────────────────

    async def complete_conversation(
        self,
        conversation_id: int,
        final_wage: Optional[float],
        completed_by: str,
    ) -> NegotiationConversation:
        """Close a conversation as agreed.

        Raises:
            ConversationNotFoundError: no such conversation
            NotAParticipantError: completed_by is not one of the two parties
            ConversationClosedError: conversation was cancelled or expired
        """
        conv = await self.store.get_conversation_by_id(conversation_id)
        if conv is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return await self._complete(conv, final_wage, completed_by)

    async def complete_by_correlation(
        self,
        correlation_id: str,
        final_wage: Optional[float],
        completed_by: str,
    ) -> NegotiationConversation:
        """Complete completed_by's conversation for a correlation id.

        When the participant negotiated with several counterparties on the
        same job, the most recently active conversation is the one closed.
        """
        conversations = await self.store.conversations_for_correlation(
            correlation_id, participant_id=completed_by
        )
        if not conversations:
            raise ConversationNotFoundError(
                f"No conversation for {correlation_id} involving {completed_by}"
            )
        open_ones = [c for c in conversations if c.status == "active"]
        return await self._complete(
            (open_ones or conversations)[0], final_wage, completed_by
        )

    async def _complete(
        self,
        conv: NegotiationConversation,
        final_wage: Optional[float],
        completed_by: str,
    ) -> NegotiationConversation:
        if completed_by not in conv.participant_ids:
            raise NotAParticipantError(
                f"{completed_by} is not a participant of conversation {conv.id}"
            )
        if conv.status in ("cancelled", "expired"):
            raise ConversationClosedError(
                f"Conversation {conv.id} is {conv.status} and cannot be completed"
            )
        if final_wage is not None and final_wage < 0:
            raise ValueError("final_wage cannot be negative")

        conv = await self.store.complete_conversation(
            conv.id, final_wage, completed_by, utcnow()
        )
        logger.info(
            "negotiation.completed",
            conversation_id=conv.id,
            correlation_id=conv.correlation_id,
            final_wage=float(conv.final_wage) if conv.final_wage is not None else None,
            completed_by=completed_by,
        )
        return conv

    async def update_conversation_status(self, correlation_id: str, status: str) -> int:
        """Set every conversation on a correlation id to status (e.g. expired)."""
        if status not in CONVERSATION_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        updated = await self.store.set_conversation_status(correlation_id, status)
        logger.info(
            "negotiation.status_updated",
            correlation_id=correlation_id,
            status=status,
            conversations=updated,
        )
        return updated

    # ─── Queries ─────────────────────────────────────────

    async def history(
        self,
        id_a: str,
        id_b: str,
        correlation_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        token: Optional[str] = None,
    ) -> list[HistoryEntry]:
        """Messages between two participants, oldest first, names joined in.

        Names come from the stored sender_name first. A participant who has
        not sent anything in the page is looked up in the identity service
        when one is configured; a failed lookup leaves the name empty.
        """
        messages = await self.store.history(
            id_a,
            id_b,
            correlation_id=correlation_id,
            limit=limit or settings.history_default_limit,
            offset=offset,
        )
        names = {m.sender_id: m.sender_name for m in messages}
        missing = [pid for pid in (id_a, id_b) if pid not in names]
        if messages and missing and self.identity is not None:
            try:
                resolved = await self.identity.resolve(missing, token)
            except IdentityResolutionError:
                resolved = {}
            names.update({pid: p.display_name for pid, p in resolved.items()})

        return [
            HistoryEntry(message=m, receiver_name=names.get(m.receiver_id))
            for m in messages
        ]

    async def active_conversations(self, participant_id: str) -> list[ActiveConversation]:
        """One entry per (correlation id, counterparty): latest message + unread count.

        Only conversations still active are listed; most recent first.
        """
        messages = await self.store.recent_messages_for(participant_id, "active")

        groups: dict[tuple[str, str], ActiveConversation] = {}
        for message in messages:  # newest first
            other = (
                message.receiver_id
                if message.sender_id == participant_id
                else message.sender_id
            )
            key = (message.correlation_id, other)
            entry = groups.get(key)
            if entry is None:
                entry = groups[key] = ActiveConversation(
                    correlation_id=message.correlation_id,
                    counterparty_id=other,
                    last_message=message,
                )
            if message.receiver_id == participant_id and not message.is_read:
                entry.unread_count += 1

        return list(groups.values())

    async def stats(self) -> dict:
        return await self.store.stats()
