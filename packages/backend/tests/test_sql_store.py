"""Tests for SqlNegotiationStore against PostgreSQL.

Each test runs in a rolled-back transaction (see conftest.db_session) and
is skipped when the database is unreachable.
"""

import pytest

from parley.db.models import utcnow
from parley.db.store import SqlNegotiationStore
from parley.events.store import EventStore
from parley.schemas.negotiation import NegotiationSubmission


def _submission(sender="req-1", receiver="wrk-1", body="500?", wage=500, **extra):
    return NegotiationSubmission(
        sender_id=sender,
        receiver_id=receiver,
        correlation_id=extra.pop("correlation_id", "job-1"),
        body=body,
        wage=wage,
        sender_role="requester" if sender.startswith("req") else "worker",
        **extra,
    )


async def _record(store, n, **kwargs):
    return await store.record_message(
        _submission(**kwargs), notification_id=f"n-{n}", sender_name="Rita"
    )


@pytest.mark.asyncio
async def test_record_creates_and_bumps_conversation(db_session):
    store = SqlNegotiationStore(db_session)
    msg, conv = await _record(store, 1)
    assert conv.message_count == 1
    assert conv.requester_id == "req-1"
    assert conv.participant_ids == ("req-1", "wrk-1")

    _, conv = await _record(store, 2, sender="wrk-1", receiver="req-1", wage=550)
    assert conv.message_count == 2
    assert float(conv.initial_wage) == 500

    events = await EventStore(db_session).read_stream(f"conversation:{conv.id}")
    assert [e.type for e in events] == [
        "negotiation.conversation_created",
        "negotiation.message_recorded",
        "negotiation.message_recorded",
    ]


@pytest.mark.asyncio
async def test_history_and_unread(db_session):
    store = SqlNegotiationStore(db_session)
    first, _ = await _record(store, 1, body="a")
    await _record(store, 2, body="b")
    await _record(store, 3, body="c", correlation_id="job-2")

    history = await store.history("wrk-1", "req-1", correlation_id="job-1")
    assert [m.body for m in history] == ["a", "b"]
    assert len(await store.history("wrk-1", "req-1")) == 3

    assert await store.unread_count("wrk-1") == 3
    assert await store.mark_read([first.id], "wrk-1", utcnow()) == 1
    assert await store.mark_read([first.id], "wrk-1", utcnow()) == 0
    assert await store.unread_count("wrk-1") == 2


@pytest.mark.asyncio
async def test_complete_preserves_first_completion(db_session):
    store = SqlNegotiationStore(db_session)
    _, conv = await _record(store, 1)

    done = await store.complete_conversation(conv.id, 550, "req-1", utcnow())
    assert done.status == "completed"
    assert float(done.final_wage) == 550
    first_at = done.completed_at

    again = await store.complete_conversation(conv.id, None, "wrk-1", utcnow())
    assert float(again.final_wage) == 550
    assert again.completed_by == "req-1"
    assert again.completed_at == first_at

    assert await store.recent_messages_for("req-1", "active") == []
    assert len(await store.recent_messages_for("req-1", "completed")) == 1


@pytest.mark.asyncio
async def test_outbox_and_delivery(db_session):
    store = SqlNegotiationStore(db_session)
    msg, _ = await _record(store, 1)
    assert [m.id for m in await store.undelivered_for("wrk-1")] == [msg.id]

    await store.mark_delivered(msg.id, utcnow())
    assert await store.undelivered_for("wrk-1") == []


@pytest.mark.asyncio
async def test_status_change_and_stats(db_session):
    store = SqlNegotiationStore(db_session)
    await _record(store, 1, receiver="wrk-1")
    await _record(store, 2, receiver="wrk-2")

    assert await store.set_conversation_status("job-1", "expired") == 2
    stats = await store.stats()
    assert stats["conversations"].get("expired", 0) >= 2
    assert stats["messages"] >= 2

    convs = await store.conversations_for_correlation("job-1", participant_id="wrk-2")
    assert [c.worker_id for c in convs] == ["wrk-2"]
