"""Tests for job booking and match notification routes."""

import pytest

from fakes import FakeConnection


@pytest.mark.asyncio
async def test_book_job_blocks_negotiation(client, registry):
    watcher = FakeConnection()
    await registry.register("wrk-1", "worker", watcher)

    r = await client.post("/api/v1/jobs/job-1/booked")
    assert r.status_code == 200
    assert r.json()["notified"] == 1
    assert watcher.events("jobStatusUpdate") == [
        {"correlation_id": "job-1", "status": "booked"}
    ]

    r = await client.post("/api/v1/negotiations/messages", json={
        "sender_id": "req-1",
        "receiver_id": "wrk-1",
        "correlation_id": "job-1",
        "body": "still there?",
        "wage": 10,
        "sender_role": "requester",
    })
    assert r.status_code == 409
    assert r.json()["message"] == "This job has expired."


@pytest.mark.asyncio
async def test_book_job_quietly(client, registry):
    watcher = FakeConnection()
    await registry.register("wrk-1", "worker", watcher)
    r = await client.post("/api/v1/jobs/job-1/booked", json={"notify": False})
    assert r.json()["notified"] == 0
    assert watcher.frames == []


@pytest.mark.asyncio
async def test_match_notifications(client, registry):
    conn = FakeConnection()
    await registry.register("wrk-1", "worker", conn)

    r = await client.post("/api/v1/notifications/match", json={
        "correlation_id": "search-1",
        "requester_id": "req-1",
        "wage": 300,
        "candidates": [{"worker_id": "wrk-1", "distance": 3}, {"distance": 1}],
    })
    assert r.status_code == 200
    report = r.json()
    assert report["sent_count"] == 1
    assert report["total_count"] == 2
    assert conn.events("matchNotification")[0]["requester_name"] == "Rita Requester"


@pytest.mark.asyncio
async def test_match_with_unknown_requester(client):
    r = await client.post("/api/v1/notifications/match", json={
        "correlation_id": "search-1",
        "requester_id": "ghost",
        "candidates": [{"worker_id": "wrk-1"}],
    })
    assert r.status_code == 502
    assert r.json()["success"] is False


@pytest.mark.asyncio
async def test_match_requires_correlation_id(client):
    r = await client.post("/api/v1/notifications/match", json={"requester_id": "req-1"})
    assert r.status_code == 422
