"""Tests for the negotiation state machine.

Covers the submit gates (validation, booked job, closed conversation),
persistence-before-delivery, read receipts, completion and listings.
"""

import pytest

from fakes import FakeConnection
from parley.services.delivery import DeliveryEngine
from parley.services.negotiation import (
    ConversationClosedError,
    ConversationNotFoundError,
    NegotiationService,
    NotAParticipantError,
)


@pytest.fixture()
def svc(registry, store, job_status, identity):
    delivery = DeliveryEngine(registry, store, ack_timeout=0.01)
    return NegotiationService(store, job_status, delivery, identity=identity)


def _msg(sender="req-1", receiver="wrk-1", correlation_id="job-1", wage=500, **extra):
    return {
        "sender_id": sender,
        "receiver_id": receiver,
        "correlation_id": correlation_id,
        "body": extra.pop("body", f"{wage} works for me"),
        "wage": wage,
        "sender_role": "requester" if sender.startswith("req") else "worker",
        "sender_name": extra.pop("sender_name", None),
        **extra,
    }


# ═══════════════════════════════════════════════════════════
# Submit
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_scenario_offer_offline_complete_reject(svc, registry, store):
    """Worker online → delivered; worker gone → queued; completed → closed."""
    worker_conn = FakeConnection()
    await registry.register("wrk-1", "worker", worker_conn)
    await registry.register("req-1", "requester", FakeConnection())

    first = await svc.submit(_msg(wage=500))
    assert first.success
    assert first.delivery.delivered
    conv = await store.get_conversation("req-1", "wrk-1", "job-1")
    assert conv.message_count == 1
    assert conv.status == "active"
    assert conv.requester_id == "req-1" and conv.worker_id == "wrk-1"

    registry.unregister(worker_conn)
    second = await svc.submit(_msg(wage=520))
    assert second.success
    assert not second.delivery.delivered
    assert second.delivery.queued
    assert conv.message_count == 2
    assert store.messages[second.message_id].delivered_at is None

    completed = await svc.complete_by_correlation("job-1", 550, "req-1")
    assert completed.status == "completed"
    assert completed.final_wage == 550

    third = await svc.submit(_msg(wage=560))
    assert not third.success
    assert third.code == "conversation_closed"
    assert "already been completed" in third.message
    assert len(store.messages) == 2


@pytest.mark.asyncio
async def test_validation_failure_persists_nothing(svc, store):
    result = await svc.submit(_msg(receiver="req-1"))
    assert not result.success
    assert result.code == "validation"
    assert result.message == "Cannot send messages to yourself"
    assert store.messages == {}


@pytest.mark.asyncio
async def test_malformed_optional_field_is_a_validation_rejection(svc, store):
    result = await svc.submit(_msg(sender_name=123))
    assert not result.success
    assert result.code == "validation"
    assert "sender_name" in result.message
    assert store.messages == {}


@pytest.mark.asyncio
async def test_booked_job_rejects_any_message(svc, store, job_status):
    await job_status.mark_booked("job-1")
    result = await svc.submit(_msg())
    assert not result.success
    assert result.code == "job_booked"
    assert result.message == "This job has expired."
    assert store.messages == {}


@pytest.mark.asyncio
async def test_closed_check_is_per_pair(svc, store):
    await svc.submit(_msg(receiver="wrk-1"))
    await svc.complete_by_correlation("job-1", 500, "req-1")

    # Another worker on the same job still negotiates
    result = await svc.submit(_msg(receiver="wrk-2"))
    assert result.success


@pytest.mark.asyncio
async def test_cancelled_and_expired_reasons(svc):
    await svc.submit(_msg())
    await svc.update_conversation_status("job-1", "expired")
    result = await svc.submit(_msg())
    assert result.message == "This negotiation has expired."

    await svc.update_conversation_status("job-1", "cancelled")
    result = await svc.submit(_msg())
    assert result.message == "This negotiation has been cancelled."


@pytest.mark.asyncio
async def test_message_count_tracks_both_directions(svc, store):
    for i in range(3):
        await svc.submit(_msg(wage=100 + i))
        await svc.submit(_msg(sender="wrk-1", receiver="req-1", wage=200 + i))

    conv = await store.get_conversation("wrk-1", "req-1", "job-1")
    assert conv.message_count == 6
    assert len(store.conversations) == 1


@pytest.mark.asyncio
async def test_sender_name_defaults_to_unknown(svc, store):
    result = await svc.submit(_msg())
    assert store.messages[result.message_id].sender_name == "Unknown"


@pytest.mark.asyncio
async def test_store_failure_becomes_server_error(svc, store, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("database down")

    monkeypatch.setattr(store, "record_message", boom)
    result = await svc.submit(_msg())
    assert not result.success
    assert result.code == "server_error"
    assert result.message == "Server error occurred"


@pytest.mark.asyncio
async def test_delivery_failure_keeps_message(svc, registry, store):
    await registry.register("wrk-1", "worker", FakeConnection(fail=True))
    result = await svc.submit(_msg())
    assert result.success
    assert result.message == "Message saved but delivery failed"
    assert result.message_id in store.messages


# ═══════════════════════════════════════════════════════════
# Read receipts
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_mark_read_only_receiver_and_idempotent(svc):
    a = await svc.submit(_msg(body="one"))
    b = await svc.submit(_msg(body="two"))
    ids = [a.message_id, b.message_id, 9999]

    assert await svc.mark_read(ids, "req-1") == 0  # sender can't mark
    assert await svc.unread_count("wrk-1") == 2
    assert await svc.mark_read(ids, "wrk-1") == 2
    assert await svc.mark_read(ids, "wrk-1") == 0
    assert await svc.unread_count("wrk-1") == 0


# ═══════════════════════════════════════════════════════════
# Completion
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_complete_is_idempotent(svc):
    result = await svc.submit(_msg())
    first = await svc.complete_conversation(result.conversation_id, 550, "wrk-1")
    completed_at = first.completed_at

    again = await svc.complete_conversation(result.conversation_id, 550, "req-1")
    assert again.status == "completed"
    assert again.final_wage == 550
    assert again.completed_at == completed_at
    assert again.completed_by == "wrk-1"


@pytest.mark.asyncio
async def test_complete_without_wage_keeps_previous(svc):
    result = await svc.submit(_msg())
    await svc.complete_conversation(result.conversation_id, 550, "req-1")
    conv = await svc.complete_conversation(result.conversation_id, None, "req-1")
    assert conv.final_wage == 550


@pytest.mark.asyncio
async def test_complete_errors(svc):
    with pytest.raises(ConversationNotFoundError):
        await svc.complete_conversation(404, 100, "req-1")

    result = await svc.submit(_msg())
    with pytest.raises(NotAParticipantError):
        await svc.complete_conversation(result.conversation_id, 100, "req-2")
    with pytest.raises(ValueError):
        await svc.complete_conversation(result.conversation_id, -1, "req-1")

    await svc.update_conversation_status("job-1", "cancelled")
    with pytest.raises(ConversationClosedError):
        await svc.complete_conversation(result.conversation_id, 100, "req-1")


@pytest.mark.asyncio
async def test_complete_by_correlation_picks_most_recent(svc, store):
    await svc.submit(_msg(receiver="wrk-1"))
    latest = await svc.submit(_msg(receiver="wrk-2"))

    conv = await svc.complete_by_correlation("job-1", 600, "req-1")
    assert conv.id == latest.conversation_id
    assert (await store.get_conversation("req-1", "wrk-1", "job-1")).status == "active"

    with pytest.raises(ConversationNotFoundError):
        await svc.complete_by_correlation("job-9", 600, "req-1")


@pytest.mark.asyncio
async def test_update_status_rejects_unknown(svc):
    with pytest.raises(ValueError):
        await svc.update_conversation_status("job-1", "paused")


# ═══════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_history_oldest_first_with_names(svc):
    await svc.submit(_msg(body="offer", sender_name="Rita Requester"))
    await svc.submit(
        _msg(sender="wrk-1", receiver="req-1", body="counter", sender_name="Walt Worker")
    )

    entries = await svc.history("wrk-1", "req-1", correlation_id="job-1")
    assert [e.message.body for e in entries] == ["offer", "counter"]
    assert entries[0].receiver_name == "Walt Worker"
    assert entries[1].receiver_name == "Rita Requester"


@pytest.mark.asyncio
async def test_history_resolves_silent_party_name(svc, identity):
    await svc.submit(_msg(sender_name="Rita Requester"))
    [entry] = await svc.history("req-1", "wrk-1")
    assert entry.receiver_name == "Walt Worker"
    assert identity.calls[-1] == ["wrk-1"]


@pytest.mark.asyncio
async def test_history_paginates_from_newest(svc):
    for i in range(5):
        await svc.submit(_msg(body=f"m{i}"))

    page = await svc.history("req-1", "wrk-1", limit=2)
    assert [e.message.body for e in page] == ["m3", "m4"]
    page = await svc.history("req-1", "wrk-1", limit=2, offset=2)
    assert [e.message.body for e in page] == ["m1", "m2"]


@pytest.mark.asyncio
async def test_active_conversations_groups_and_filters(svc):
    await svc.submit(_msg(receiver="wrk-1", correlation_id="job-1", body="a"))
    await svc.submit(_msg(receiver="wrk-1", correlation_id="job-1", body="b"))
    await svc.submit(_msg(receiver="wrk-2", correlation_id="job-1", body="c"))
    await svc.submit(_msg(receiver="wrk-1", correlation_id="job-2", body="d"))
    await svc.complete_by_correlation("job-2", 500, "req-1")

    listing = await svc.active_conversations("req-1")
    assert [(c.correlation_id, c.counterparty_id) for c in listing] == [
        ("job-1", "wrk-2"),
        ("job-1", "wrk-1"),
    ]
    assert listing[1].last_message.body == "b"

    worker_view = await svc.active_conversations("wrk-1")
    assert len(worker_view) == 1
    assert worker_view[0].unread_count == 2


@pytest.mark.asyncio
async def test_stats(svc):
    await svc.submit(_msg(receiver="wrk-1"))
    await svc.submit(_msg(receiver="wrk-2"))
    await svc.complete_by_correlation("job-1", 500, "wrk-2")

    stats = await svc.stats()
    assert stats["conversations"] == {"active": 1, "completed": 1}
    assert stats["messages"] == 2
    assert stats["unread_messages"] == 2
