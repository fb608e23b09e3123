"""Tests for the negotiation REST routes."""

import pytest

from fakes import FakeConnection


def _msg(sender="req-1", receiver="wrk-1", **extra):
    return {
        "sender_id": sender,
        "receiver_id": receiver,
        "correlation_id": "job-1",
        "body": "How about 500?",
        "wage": 500,
        "sender_role": "requester" if sender.startswith("req") else "worker",
        "sender_name": "Rita Requester" if sender.startswith("req") else "Walt Worker",
        **extra,
    }


@pytest.mark.asyncio
async def test_submit_delivered(client, registry):
    conn = FakeConnection()
    await registry.register("wrk-1", "worker", conn)

    r = await client.post("/api/v1/negotiations/messages", json=_msg())
    assert r.status_code == 201
    data = r.json()
    assert data["success"] is True
    assert data["delivered"] is True
    assert data["delivered_at"] is not None
    assert conn.events("negotiationMessage")[0]["body"] == "How about 500?"


@pytest.mark.asyncio
async def test_submit_queued_when_offline(client):
    r = await client.post("/api/v1/negotiations/messages", json=_msg())
    assert r.status_code == 201
    assert r.json()["queued"] is True
    assert r.json()["delivered"] is False


@pytest.mark.asyncio
async def test_submit_rejections_map_to_status_codes(client, job_status):
    r = await client.post("/api/v1/negotiations/messages", json=_msg(wage=-10))
    assert r.status_code == 400
    assert r.json()["message"] == "Valid wage is required"

    await job_status.mark_booked("job-1")
    r = await client.post("/api/v1/negotiations/messages", json=_msg())
    assert r.status_code == 409
    assert r.json()["code"] == "job_booked"


@pytest.mark.asyncio
async def test_submit_malformed_optional_field_is_400(client):
    r = await client.post(
        "/api/v1/negotiations/messages", json=_msg(notification_id=5)
    )
    assert r.status_code == 400
    assert r.json()["code"] == "validation"


@pytest.mark.asyncio
async def test_history_and_mark_read(client):
    first = (await client.post("/api/v1/negotiations/messages", json=_msg())).json()
    await client.post(
        "/api/v1/negotiations/messages",
        json=_msg(sender="wrk-1", receiver="req-1", body="600", wage=600),
    )

    r = await client.get("/api/v1/negotiations/req-1/wrk-1", params={"correlation_id": "job-1"})
    assert r.status_code == 200
    history = r.json()
    assert [m["wage"] for m in history] == [500, 600]
    assert history[0]["receiver_name"] == "Walt Worker"

    r = await client.get("/api/v1/negotiations/wrk-1/unread-count")
    assert r.json()["unread_count"] == 1

    r = await client.put(
        "/api/v1/negotiations/wrk-1/messages/read",
        json={"message_ids": [first["message_id"]]},
    )
    assert r.json() == {"modified_count": 1}
    r = await client.put(
        "/api/v1/negotiations/wrk-1/messages/read",
        json={"message_ids": [first["message_id"]]},
    )
    assert r.json() == {"modified_count": 0}


@pytest.mark.asyncio
async def test_mark_read_requires_ids(client):
    r = await client.put("/api/v1/negotiations/wrk-1/messages/read", json={"message_ids": []})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_active_conversations(client):
    await client.post("/api/v1/negotiations/messages", json=_msg())
    r = await client.get("/api/v1/negotiations/wrk-1/conversations")
    assert r.status_code == 200
    [conv] = r.json()
    assert conv["counterparty_id"] == "req-1"
    assert conv["unread_count"] == 1
    assert conv["last_message"]["wage"] == 500


@pytest.mark.asyncio
async def test_complete_conversation_routes(client):
    sent = (await client.post("/api/v1/negotiations/messages", json=_msg())).json()
    url = f"/api/v1/negotiations/conversations/{sent['conversation_id']}/complete"

    r = await client.put(url, json={"completed_by": "req-2", "final_wage": 550})
    assert r.status_code == 403

    r = await client.put(url, json={"completed_by": "req-1", "final_wage": 550})
    assert r.status_code == 200
    assert r.json()["status"] == "completed"
    assert r.json()["final_wage"] == 550

    r = await client.put(
        "/api/v1/negotiations/conversations/999/complete",
        json={"completed_by": "req-1"},
    )
    assert r.status_code == 404

    r = await client.post("/api/v1/negotiations/messages", json=_msg())
    assert r.status_code == 409
    assert r.json()["message"] == "This negotiation has already been completed."


@pytest.mark.asyncio
async def test_complete_by_job_and_status(client):
    await client.post("/api/v1/negotiations/messages", json=_msg())

    r = await client.put(
        "/api/v1/negotiations/jobs/job-1/status", json={"status": "cancelled"}
    )
    assert r.json() == {"correlation_id": "job-1", "status": "cancelled", "updated": 1}

    r = await client.put(
        "/api/v1/negotiations/jobs/job-1/complete", json={"completed_by": "req-1"}
    )
    assert r.status_code == 409

    r = await client.put(
        "/api/v1/negotiations/jobs/job-1/status", json={"status": "paused"}
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_negative_final_wage_rejected(client):
    sent = (await client.post("/api/v1/negotiations/messages", json=_msg())).json()
    r = await client.put(
        f"/api/v1/negotiations/conversations/{sent['conversation_id']}/complete",
        json={"completed_by": "req-1", "final_wage": -1},
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_stats(client):
    await client.post("/api/v1/negotiations/messages", json=_msg())
    r = await client.get("/api/v1/negotiations/stats")
    assert r.json() == {
        "conversations": {"active": 1},
        "messages": 1,
        "unread_messages": 1,
    }


@pytest.mark.asyncio
async def test_routes_require_auth(client):
    from parley.auth.dependencies import get_current_user
    from parley.main import app

    del app.dependency_overrides[get_current_user]
    r = await client.get("/api/v1/negotiations/stats")
    assert r.status_code == 401
