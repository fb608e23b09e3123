"""SQLAlchemy ORM models — single source of truth for the database schema.

Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Alembic auto-generates migrations by comparing these models to the actual DB.

Participant ids are opaque strings owned by the identity service; nothing
here has a foreign key to a users table.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ══════════════════════════════════════════════════════════════
# Event log
# ══════════════════════════════════════════════════════════════


class Event(Base):
    """Immutable event log — audit trail for every negotiation state change.

    stream_id examples: "conversation:42", "job:search-17"
    type examples: "negotiation.message_recorded", "negotiation.completed"
    """

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_stream", "stream_id", "id"),
        Index("idx_events_type", "type"),
        Index("idx_events_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    meta: Mapped[dict] = mapped_column(
        "metadata", JSONB, nullable=False, server_default="{}"
    )  # actor_id, correlation_id
    # Note: Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ══════════════════════════════════════════════════════════════
# Negotiation
# ══════════════════════════════════════════════════════════════


class NegotiationMessage(Base):
    """One bargaining message between a requester and a worker.

    Immutable except for status, read and delivery tracking. Never deleted.
    conversation_status mirrors the owning conversation so that "active"
    listings can be answered from this table alone.
    """

    __tablename__ = "negotiation_messages"
    __table_args__ = (
        Index("idx_negotiation_messages_pair", "sender_id", "receiver_id"),
        Index("idx_negotiation_messages_correlation", "correlation_id", "created_at"),
        Index("idx_negotiation_messages_unread", "receiver_id", "is_read"),
        Index("idx_negotiation_messages_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[str] = mapped_column(
        String(200), unique=True, nullable=False
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    receiver_id: Mapped[str] = mapped_column(String(64), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    sender_role: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # requester, worker
    sender_name: Mapped[str] = mapped_column(
        String(200), nullable=False, default="Unknown"
    )
    wage: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, accepted, rejected, counter, expired
    conversation_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )  # active, completed, cancelled, expired
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    read_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class NegotiationConversation(Base):
    """The negotiation thread between one requester and one worker for one job.

    Created lazily on the first message for a pair + correlation id.
    The pair is stored sorted (participant_a < participant_b) so that
    either direction of a message finds the same row.

    Statuses: active → completed | cancelled | expired (all terminal)
    """

    __tablename__ = "negotiation_conversations"
    __table_args__ = (
        UniqueConstraint(
            "participant_a", "participant_b", "correlation_id",
            name="uq_negotiation_conversations_pair_correlation",
        ),
        Index("idx_negotiation_conversations_correlation", "correlation_id", "status"),
        Index("idx_negotiation_conversations_parties", "requester_id", "worker_id"),
        Index("idx_negotiation_conversations_recent", "status", "last_message_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_a: Mapped[str] = mapped_column(String(64), nullable=False)
    participant_b: Mapped[str] = mapped_column(String(64), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(200), nullable=False)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    worker_id: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    initial_wage: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    final_wage: Mapped[Optional[float]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )  # active, completed, cancelled, expired
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    @property
    def participant_ids(self) -> tuple[str, str]:
        return (self.participant_a, self.participant_b)


def participant_pair(id_a: str, id_b: str) -> tuple[str, str]:
    """Canonical (sorted) ordering of a participant pair."""
    return (id_a, id_b) if id_a <= id_b else (id_b, id_a)
