"""Parley CLI — inspect and operate a running negotiation server.

Usage:
    parley stats                                  # Connected participants + conversation counts
    parley connections --role worker              # Who is online
    parley history alice bob --job job-42         # Message history between two participants
    parley conversations alice                    # Active conversations of a participant
    parley complete 17 --by alice --wage 120      # Close a conversation as agreed
    parley disconnect bob --reason "maintenance"  # Force-close a participant's connections
    parley book job-42                            # Mark a job booked; blocks further bargaining

Talks to the REST API at PARLEY_API_URL with the bearer token in PARLEY_TOKEN.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("PARLEY_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Parley backend."""
    headers = {}
    token = os.environ.get("PARLEY_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Inside an already running loop (CliRunner in async tests) the coroutine
    is run on a worker thread instead.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _check(r: httpx.Response) -> dict | list:
    """Return the JSON body, or print the API's error and exit 1."""
    if r.is_error:
        try:
            detail = r.json().get("detail") or r.json().get("message")
        except (ValueError, AttributeError):
            detail = r.text
        click.secho(f"Error {r.status_code}: {detail}", fg="red", err=True)
        sys.exit(1)
    return r.json()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k, "-"))[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


def _status_color(status: str) -> str:
    colors = {
        "active": "green",
        "completed": "cyan",
        "cancelled": "red",
        "expired": "red",
        "pending": "yellow",
        "accepted": "green",
        "rejected": "red",
        "counter": "magenta",
    }
    return colors.get(status, "white")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="parley")
def main():
    """Parley — real-time wage negotiation admin."""


# ---------------------------------------------------------------------------
# parley stats
# ---------------------------------------------------------------------------


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def stats(as_json: bool):
    """Connected participants and conversation counts."""
    _run(_stats_impl(as_json))


async def _stats_impl(as_json: bool):
    async with _client() as c:
        connections = _check(await c.get("/api/v1/connections/stats"))
        negotiations = _check(await c.get("/api/v1/negotiations/stats"))

    if as_json:
        click.echo(_pretty_json({"connections": connections, "negotiations": negotiations}))
        return

    click.secho("Connections", bold=True)
    click.echo(f"  workers:     {connections['connected_workers']}")
    click.echo(f"  requesters:  {connections['connected_requesters']}")
    click.echo()
    click.secho("Conversations", bold=True)
    for status, count in sorted(negotiations["conversations"].items()):
        click.echo(f"  {click.style(status, fg=_status_color(status)):22s} {count}")
    click.echo(f"  messages:    {negotiations['messages']}")
    click.echo(f"  unread:      {negotiations['unread_messages']}")


# ---------------------------------------------------------------------------
# parley connections
# ---------------------------------------------------------------------------


@main.command()
@click.option("--role", type=click.Choice(["worker", "requester"]), help="Filter by role")
def connections(role: Optional[str]):
    """List connected participants."""
    _run(_connections_impl(role))


async def _connections_impl(role: Optional[str]):
    params = {"role": role} if role else {}
    async with _client() as c:
        data = _check(await c.get("/api/v1/connections/users", params=params))

    if not data["users"]:
        click.echo("Nobody connected.")
        return

    click.secho(f"Connected ({data['count']}):", bold=True)
    _print_table(data["users"], [
        ("PARTICIPANT", "participant_id", 24),
        ("ROLE", "role", 10),
        ("NAME", "display_name", 20),
        ("SINCE", "connected_at", 25),
    ])


# ---------------------------------------------------------------------------
# parley history
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.argument("other_user_id")
@click.option("--job", "correlation_id", help="Restrict to one job (correlation id)")
@click.option("--limit", default=50, show_default=True)
def history(user_id: str, other_user_id: str, correlation_id: Optional[str], limit: int):
    """Message history between two participants, oldest first."""
    _run(_history_impl(user_id, other_user_id, correlation_id, limit))


async def _history_impl(
    user_id: str, other_user_id: str, correlation_id: Optional[str], limit: int
):
    params: dict = {"limit": limit}
    if correlation_id:
        params["correlation_id"] = correlation_id
    async with _client() as c:
        messages = _check(
            await c.get(f"/api/v1/negotiations/{user_id}/{other_user_id}", params=params)
        )

    if not messages:
        click.echo("No messages.")
        return

    for m in messages:
        status = click.style(m["status"], fg=_status_color(m["status"]))
        read = "" if m["is_read"] else click.style(" (unread)", fg="yellow")
        click.echo(
            f"  [{m['created_at'][:19]}] {m['sender_name']} → "
            f"{m.get('receiver_name') or m['receiver_id']}  {m['wage']:.2f}  {status}{read}"
        )
        click.echo(f"      {m['body']}")


# ---------------------------------------------------------------------------
# parley conversations
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
def conversations(user_id: str):
    """Active conversations of a participant, most recent first."""
    _run(_conversations_impl(user_id))


async def _conversations_impl(user_id: str):
    async with _client() as c:
        data = _check(await c.get(f"/api/v1/negotiations/{user_id}/conversations"))

    if not data:
        click.echo("No active conversations.")
        return

    rows = [
        {
            "correlation_id": d["correlation_id"],
            "counterparty_id": d["counterparty_id"],
            "wage": f"{d['last_message']['wage']:.2f}",
            "body": d["last_message"]["body"],
            "unread": d["unread_count"],
        }
        for d in data
    ]
    _print_table(rows, [
        ("JOB", "correlation_id", 16),
        ("WITH", "counterparty_id", 20),
        ("WAGE", "wage", 10),
        ("UNREAD", "unread", 6),
        ("LAST MESSAGE", "body", 40),
    ])


# ---------------------------------------------------------------------------
# parley complete
# ---------------------------------------------------------------------------


@main.command()
@click.argument("conversation_id", type=int)
@click.option("--by", "completed_by", required=True, help="Participant completing it")
@click.option("--wage", "final_wage", type=float, help="Agreed wage (keeps prior value if omitted)")
def complete(conversation_id: int, completed_by: str, final_wage: Optional[float]):
    """Close a conversation as agreed."""
    _run(_complete_impl(conversation_id, completed_by, final_wage))


async def _complete_impl(conversation_id: int, completed_by: str, final_wage: Optional[float]):
    body: dict = {"completed_by": completed_by}
    if final_wage is not None:
        body["final_wage"] = final_wage
    async with _client() as c:
        conv = _check(
            await c.put(
                f"/api/v1/negotiations/conversations/{conversation_id}/complete",
                json=body,
            )
        )
    wage = conv["final_wage"] if conv["final_wage"] is not None else conv["initial_wage"]
    click.secho(
        f"Conversation #{conv['id']} completed at {wage:.2f} by {conv['completed_by']}",
        fg="green",
    )


# ---------------------------------------------------------------------------
# parley disconnect
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.option("--reason", default="Admin disconnect", show_default=True)
def disconnect(user_id: str, reason: str):
    """Force-close every connection a participant holds."""
    _run(_disconnect_impl(user_id, reason))


async def _disconnect_impl(user_id: str, reason: str):
    async with _client() as c:
        result = _check(
            await c.request("DELETE", f"/api/v1/connections/{user_id}", json={"reason": reason})
        )
    color = "green" if result["success"] else "yellow"
    click.secho(result["message"], fg=color)


# ---------------------------------------------------------------------------
# parley book
# ---------------------------------------------------------------------------


@main.command()
@click.argument("correlation_id")
@click.option("--quiet", is_flag=True, help="Don't broadcast the status update")
def book(correlation_id: str, quiet: bool):
    """Mark a job booked. Further negotiation on it is rejected."""
    _run(_book_impl(correlation_id, quiet))


async def _book_impl(correlation_id: str, quiet: bool):
    async with _client() as c:
        result = _check(
            await c.post(f"/api/v1/jobs/{correlation_id}/booked", json={"notify": not quiet})
        )
    click.secho(
        f"Job {correlation_id} booked; {result['notified']} connection(s) notified",
        fg="green",
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
