"""Tests for the parley admin CLI against a mocked API."""

import json

import httpx
import pytest
from click.testing import CliRunner

from parley.cli import main as cli


@pytest.fixture()
def api(monkeypatch):
    """Route CLI requests to a handler; returns the list of seen requests."""
    seen: list[httpx.Request] = []
    responses: dict[tuple[str, str], httpx.Response] = {}

    def handler(request: httpx.Request):
        seen.append(request)
        return responses.get(
            (request.method, request.url.path), httpx.Response(404, json={"detail": "nope"})
        )

    monkeypatch.setattr(
        cli,
        "_client",
        lambda: httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://api.test"
        ),
    )
    return seen, responses


def test_stats(api):
    seen, responses = api
    responses[("GET", "/api/v1/connections/stats")] = httpx.Response(
        200, json={"connected_workers": 2, "connected_requesters": 1}
    )
    responses[("GET", "/api/v1/negotiations/stats")] = httpx.Response(
        200,
        json={"conversations": {"active": 3}, "messages": 9, "unread_messages": 4},
    )

    result = CliRunner().invoke(cli.main, ["stats"])
    assert result.exit_code == 0, result.output
    assert "workers:     2" in result.output
    assert "messages:    9" in result.output


def test_book(api):
    seen, responses = api
    responses[("POST", "/api/v1/jobs/job-1/booked")] = httpx.Response(
        200, json={"success": True, "notified": 3}
    )

    result = CliRunner().invoke(cli.main, ["book", "job-1", "--quiet"])
    assert result.exit_code == 0, result.output
    assert "3 connection(s) notified" in result.output
    assert json.loads(seen[0].content) == {"notify": False}


def test_complete_reports_api_error(api):
    result = CliRunner().invoke(cli.main, ["complete", "7", "--by", "req-1"])
    assert result.exit_code == 1
    assert "Error 404: nope" in result.output


def test_disconnect(api):
    seen, responses = api
    responses[("DELETE", "/api/v1/connections/wrk-1")] = httpx.Response(
        200, json={"success": False, "message": "Participant not connected"}
    )
    result = CliRunner().invoke(cli.main, ["disconnect", "wrk-1"])
    assert result.exit_code == 0
    assert "Participant not connected" in result.output
