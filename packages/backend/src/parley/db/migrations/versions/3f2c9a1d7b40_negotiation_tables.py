"""Negotiation messages, conversations and the event log

Conversations are keyed by the sorted participant pair plus correlation
id; the unique constraint is what makes lazy creation safe when both
parties send their first message at the same moment.

Revision ID: 3f2c9a1d7b40
Revises:
Create Date: 2026-10-19 09:12:44.118230
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f2c9a1d7b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ─── Event log ───────────────────────────────────────
    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('stream_id', sa.String(length=200), nullable=False),
        sa.Column('type', sa.String(length=100), nullable=False),
        sa.Column('data', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), server_default='{}', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_events_stream', 'events', ['stream_id', 'id'])
    op.create_index('idx_events_type', 'events', ['type'])
    op.create_index('idx_events_created', 'events', ['created_at'])

    # ─── Messages ────────────────────────────────────────
    op.create_table(
        'negotiation_messages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('notification_id', sa.String(length=200), nullable=False),
        sa.Column('sender_id', sa.String(length=64), nullable=False),
        sa.Column('receiver_id', sa.String(length=64), nullable=False),
        sa.Column('correlation_id', sa.String(length=200), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('sender_role', sa.String(length=20), nullable=False),
        sa.Column('sender_name', sa.String(length=200), nullable=False),
        sa.Column('wage', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('conversation_status', sa.String(length=20), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('notification_id'),
    )
    op.create_index('idx_negotiation_messages_pair', 'negotiation_messages', ['sender_id', 'receiver_id'])
    op.create_index('idx_negotiation_messages_correlation', 'negotiation_messages', ['correlation_id', 'created_at'])
    op.create_index('idx_negotiation_messages_unread', 'negotiation_messages', ['receiver_id', 'is_read'])
    op.create_index('idx_negotiation_messages_created', 'negotiation_messages', ['created_at'])

    # ─── Conversations ───────────────────────────────────
    op.create_table(
        'negotiation_conversations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('participant_a', sa.String(length=64), nullable=False),
        sa.Column('participant_b', sa.String(length=64), nullable=False),
        sa.Column('correlation_id', sa.String(length=200), nullable=False),
        sa.Column('requester_id', sa.String(length=64), nullable=False),
        sa.Column('worker_id', sa.String(length=64), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('initial_wage', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('final_wage', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('message_count', sa.Integer(), nullable=False),
        sa.Column('last_message_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'participant_a', 'participant_b', 'correlation_id',
            name='uq_negotiation_conversations_pair_correlation',
        ),
    )
    op.create_index('idx_negotiation_conversations_correlation', 'negotiation_conversations', ['correlation_id', 'status'])
    op.create_index('idx_negotiation_conversations_parties', 'negotiation_conversations', ['requester_id', 'worker_id'])
    op.create_index('idx_negotiation_conversations_recent', 'negotiation_conversations', ['status', 'last_message_at'])


def downgrade() -> None:
    op.drop_table('negotiation_conversations')
    op.drop_table('negotiation_messages')
    op.drop_table('events')
