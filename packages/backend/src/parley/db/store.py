"""Durable store for negotiation messages and conversations.

NegotiationStore is the seam between the state machine and the database:
indexed queries by pair, correlation id and read flag, plus per-row atomic
field updates (message_count increment, completion fields). No operation
needs a multi-row transaction beyond "insert message + bump its
conversation", which happens in one commit.

SqlNegotiationStore is the PostgreSQL implementation. Every mutating call
commits and appends an audit event in the same transaction.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from parley.db.models import (
    NegotiationConversation,
    NegotiationMessage,
    participant_pair,
    utcnow,
)
from parley.events.store import EventStore
from parley.events.types import (
    CONVERSATION_COMPLETED,
    CONVERSATION_CREATED,
    CONVERSATION_STATUS_CHANGED,
    MESSAGE_RECORDED,
    MESSAGES_READ,
)
from parley.schemas.negotiation import NegotiationSubmission


class NegotiationStore(ABC):
    """Queries and atomic updates the negotiation state machine relies on."""

    # ─── Conversations ───────────────────────────────────

    @abstractmethod
    async def get_conversation(
        self, id_a: str, id_b: str, correlation_id: str
    ) -> Optional[NegotiationConversation]:
        """Conversation for a pair (either order) and correlation id."""

    @abstractmethod
    async def get_conversation_by_id(
        self, conversation_id: int
    ) -> Optional[NegotiationConversation]:
        ...

    @abstractmethod
    async def conversations_for_correlation(
        self, correlation_id: str, participant_id: Optional[str] = None
    ) -> list[NegotiationConversation]:
        """Conversations for a correlation id, most recent activity first."""

    @abstractmethod
    async def complete_conversation(
        self,
        conversation_id: int,
        final_wage: Optional[float],
        completed_by: str,
        at: datetime,
    ) -> NegotiationConversation:
        """Mark completed. A None final_wage keeps the stored value."""

    @abstractmethod
    async def set_conversation_status(self, correlation_id: str, status: str) -> int:
        """Bulk status change for every conversation on a correlation id."""

    # ─── Messages ────────────────────────────────────────

    @abstractmethod
    async def record_message(
        self,
        submission: NegotiationSubmission,
        *,
        notification_id: str,
        sender_name: str,
    ) -> tuple[NegotiationMessage, NegotiationConversation]:
        """Persist a message and create/bump its conversation in one commit."""

    @abstractmethod
    async def mark_delivered(self, message_id: int, at: datetime) -> None:
        ...

    @abstractmethod
    async def mark_read(
        self, message_ids: list[int], reader_id: str, at: datetime
    ) -> int:
        """Flag unread messages addressed to reader_id. Returns modified count."""

    @abstractmethod
    async def history(
        self,
        id_a: str,
        id_b: str,
        correlation_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NegotiationMessage]:
        """Most recent messages of a pair, returned oldest first."""

    @abstractmethod
    async def recent_messages_for(
        self, participant_id: str, conversation_status: str = "active"
    ) -> list[NegotiationMessage]:
        """Messages sent or received by a participant, newest first."""

    @abstractmethod
    async def undelivered_for(
        self, participant_id: str, limit: int = 100
    ) -> list[NegotiationMessage]:
        """Active-conversation messages never delivered to a participant, oldest first."""

    @abstractmethod
    async def unread_count(self, participant_id: str) -> int:
        ...

    @abstractmethod
    async def stats(self) -> dict:
        ...


def _pair_clause(id_a: str, id_b: str):
    return or_(
        and_(
            NegotiationMessage.sender_id == id_a,
            NegotiationMessage.receiver_id == id_b,
        ),
        and_(
            NegotiationMessage.sender_id == id_b,
            NegotiationMessage.receiver_id == id_a,
        ),
    )


class SqlNegotiationStore(NegotiationStore):
    """NegotiationStore backed by PostgreSQL via async SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventStore(db)

    # ─── Conversations ───────────────────────────────────

    async def get_conversation(self, id_a, id_b, correlation_id):
        a, b = participant_pair(id_a, id_b)
        result = await self.db.execute(
            select(NegotiationConversation).where(
                NegotiationConversation.participant_a == a,
                NegotiationConversation.participant_b == b,
                NegotiationConversation.correlation_id == correlation_id,
            )
        )
        return result.scalars().first()

    async def get_conversation_by_id(self, conversation_id):
        return await self.db.get(
            NegotiationConversation, conversation_id, populate_existing=True
        )

    async def conversations_for_correlation(self, correlation_id, participant_id=None):
        query = (
            select(NegotiationConversation)
            .where(NegotiationConversation.correlation_id == correlation_id)
            .order_by(NegotiationConversation.last_message_at.desc())
        )
        if participant_id:
            query = query.where(
                or_(
                    NegotiationConversation.participant_a == participant_id,
                    NegotiationConversation.participant_b == participant_id,
                )
            )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _create_conversation(
        self, submission: NegotiationSubmission, at: datetime
    ) -> NegotiationConversation:
        a, b = participant_pair(submission.sender_id, submission.receiver_id)
        if submission.sender_role == "requester":
            requester_id, worker_id = submission.sender_id, submission.receiver_id
        else:
            requester_id, worker_id = submission.receiver_id, submission.sender_id

        conv = NegotiationConversation(
            participant_a=a,
            participant_b=b,
            correlation_id=submission.correlation_id,
            requester_id=requester_id,
            worker_id=worker_id,
            description=submission.description,
            initial_wage=submission.wage,
            status="active",
            message_count=0,
            last_message_at=at,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(conv)
                await self.db.flush()
        except IntegrityError:
            # Both parties sent their first message at the same time
            existing = await self.get_conversation(
                submission.sender_id, submission.receiver_id, submission.correlation_id
            )
            if existing is None:
                raise
            return existing

        await self.events.append(
            stream_id=f"conversation:{conv.id}",
            event_type=CONVERSATION_CREATED,
            data={
                "correlation_id": conv.correlation_id,
                "requester_id": requester_id,
                "worker_id": worker_id,
                "initial_wage": float(submission.wage),
            },
        )
        return conv

    async def complete_conversation(self, conversation_id, final_wage, completed_by, at):
        conv = await self.get_conversation_by_id(conversation_id)
        values = {
            "status": "completed",
            "completed_at": func.coalesce(NegotiationConversation.completed_at, at),
            "completed_by": func.coalesce(
                NegotiationConversation.completed_by, completed_by
            ),
        }
        if final_wage is not None:
            values["final_wage"] = final_wage

        await self.db.execute(
            update(NegotiationConversation)
            .where(NegotiationConversation.id == conversation_id)
            .values(**values)
        )
        await self.db.execute(
            update(NegotiationMessage)
            .where(
                _pair_clause(conv.participant_a, conv.participant_b),
                NegotiationMessage.correlation_id == conv.correlation_id,
            )
            .values(conversation_status="completed")
        )
        await self.events.append(
            stream_id=f"conversation:{conversation_id}",
            event_type=CONVERSATION_COMPLETED,
            data={"final_wage": final_wage, "completed_by": completed_by},
            metadata={"actor_id": completed_by, "correlation_id": conv.correlation_id},
        )
        await self.db.commit()
        return await self.get_conversation_by_id(conversation_id)

    async def set_conversation_status(self, correlation_id, status):
        values = {"status": status}
        if status == "completed":
            values["completed_at"] = func.coalesce(
                NegotiationConversation.completed_at, utcnow()
            )
        result = await self.db.execute(
            update(NegotiationConversation)
            .where(NegotiationConversation.correlation_id == correlation_id)
            .values(**values)
        )
        await self.db.execute(
            update(NegotiationMessage)
            .where(NegotiationMessage.correlation_id == correlation_id)
            .values(conversation_status=status)
        )
        await self.events.append(
            stream_id=f"job:{correlation_id}",
            event_type=CONVERSATION_STATUS_CHANGED,
            data={"status": status, "conversations": result.rowcount},
        )
        await self.db.commit()
        return result.rowcount

    # ─── Messages ────────────────────────────────────────

    async def record_message(self, submission, *, notification_id, sender_name):
        now = utcnow()
        conv = await self.get_conversation(
            submission.sender_id, submission.receiver_id, submission.correlation_id
        )
        if conv is None:
            conv = await self._create_conversation(submission, now)

        # Atomic increment — concurrent submissions never lose a count
        await self.db.execute(
            update(NegotiationConversation)
            .where(NegotiationConversation.id == conv.id)
            .values(
                message_count=NegotiationConversation.message_count + 1,
                last_message_at=now,
            )
        )

        msg = NegotiationMessage(
            notification_id=notification_id,
            sender_id=submission.sender_id,
            receiver_id=submission.receiver_id,
            correlation_id=submission.correlation_id,
            body=submission.body.strip(),
            sender_role=submission.sender_role,
            sender_name=sender_name,
            wage=submission.wage,
            status=submission.status,
            conversation_status="active",
            is_read=False,
            created_at=now,
        )
        self.db.add(msg)
        await self.db.flush()

        await self.events.append(
            stream_id=f"conversation:{conv.id}",
            event_type=MESSAGE_RECORDED,
            data={
                "message_id": msg.id,
                "sender_id": submission.sender_id,
                "receiver_id": submission.receiver_id,
                "wage": float(submission.wage),
                "status": submission.status,
            },
            metadata={"correlation_id": submission.correlation_id},
        )

        await self.db.commit()
        conv = await self.get_conversation_by_id(conv.id)
        return msg, conv

    async def mark_delivered(self, message_id, at):
        await self.db.execute(
            update(NegotiationMessage)
            .where(NegotiationMessage.id == message_id)
            .values(delivered_at=at)
        )
        await self.db.commit()

    async def mark_read(self, message_ids, reader_id, at):
        if not message_ids:
            return 0
        result = await self.db.execute(
            update(NegotiationMessage)
            .where(
                NegotiationMessage.id.in_(message_ids),
                NegotiationMessage.receiver_id == reader_id,
                NegotiationMessage.is_read.is_(False),
            )
            .values(is_read=True, read_at=at)
        )
        modified = result.rowcount or 0
        if modified:
            await self.events.append(
                stream_id=f"participant:{reader_id}",
                event_type=MESSAGES_READ,
                data={"message_ids": list(message_ids), "modified": modified},
            )
        await self.db.commit()
        return modified

    async def history(self, id_a, id_b, correlation_id=None, limit=50, offset=0):
        query = (
            select(NegotiationMessage)
            .where(_pair_clause(id_a, id_b))
            .order_by(NegotiationMessage.created_at.desc(), NegotiationMessage.id.desc())
            .limit(limit)
            .offset(offset)
        )
        if correlation_id:
            query = query.where(NegotiationMessage.correlation_id == correlation_id)
        result = await self.db.execute(query)
        messages = list(result.scalars().all())
        messages.reverse()  # chronological order
        return messages

    async def recent_messages_for(self, participant_id, conversation_status="active"):
        result = await self.db.execute(
            select(NegotiationMessage)
            .where(
                or_(
                    NegotiationMessage.sender_id == participant_id,
                    NegotiationMessage.receiver_id == participant_id,
                ),
                NegotiationMessage.conversation_status == conversation_status,
            )
            .order_by(NegotiationMessage.created_at.desc(), NegotiationMessage.id.desc())
        )
        return list(result.scalars().all())

    async def undelivered_for(self, participant_id, limit=100):
        result = await self.db.execute(
            select(NegotiationMessage)
            .where(
                NegotiationMessage.receiver_id == participant_id,
                NegotiationMessage.delivered_at.is_(None),
                NegotiationMessage.conversation_status == "active",
            )
            .order_by(NegotiationMessage.created_at, NegotiationMessage.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def unread_count(self, participant_id):
        result = await self.db.execute(
            select(func.count(NegotiationMessage.id)).where(
                NegotiationMessage.receiver_id == participant_id,
                NegotiationMessage.is_read.is_(False),
            )
        )
        return result.scalar_one()

    async def stats(self):
        result = await self.db.execute(
            select(NegotiationConversation.status, func.count(NegotiationConversation.id))
            .group_by(NegotiationConversation.status)
        )
        conversations = {status: count for status, count in result.all()}
        total = await self.db.execute(select(func.count(NegotiationMessage.id)))
        unread = await self.db.execute(
            select(func.count(NegotiationMessage.id)).where(
                NegotiationMessage.is_read.is_(False)
            )
        )
        return {
            "conversations": conversations,
            "messages": total.scalar_one(),
            "unread_messages": unread.scalar_one(),
        }


@asynccontextmanager
async def sql_store_scope() -> AsyncIterator[NegotiationStore]:
    """Open a session-backed store for one realtime event."""
    from parley.db.engine import async_session_factory

    async with async_session_factory() as session:
        yield SqlNegotiationStore(session)
