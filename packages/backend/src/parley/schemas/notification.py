"""Pydantic schemas for match fan-out and connection administration."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from parley.db.models import utcnow


# ─── Match fan-out ───────────────────────────────────────

class MatchCandidate(BaseModel):
    """One matched worker. Validated per record so one bad entry can't sink a batch."""
    worker_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    distance: float = Field(default=0, ge=0)
    skills: list[str] = Field(default_factory=list)


class MatchBatch(BaseModel):
    """A requester's match event: one job, many candidate workers.

    `candidates` stays untyped here on purpose: each entry is validated
    as a MatchCandidate on its own during dispatch.
    """
    correlation_id: str = Field(..., min_length=1)
    requester_id: str = Field(..., min_length=1)
    requester_name: Optional[str] = None
    wage: float = Field(default=0, ge=0)
    description: str = Field(default="Job request", max_length=500)
    candidates: list[Any] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class MatchNotification(BaseModel):
    """What a candidate worker receives as a `matchNotification` frame."""
    notification_id: str
    correlation_id: str
    sender_id: str
    receiver_id: str
    sender_role: str = "requester"
    requester_id: str
    requester_name: Optional[str]
    worker_id: str
    worker_name: Optional[str]
    wage: float
    description: str
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class CandidateResultRead(BaseModel):
    worker_id: Optional[str]
    worker_name: Optional[str] = None
    success: bool
    acknowledged: bool = False
    notification_id: Optional[str] = None
    error: Optional[str] = None


class FanoutReportRead(BaseModel):
    success: bool
    sent_count: int
    total_count: int
    results: list[CandidateResultRead]
    error: Optional[str] = None


# ─── Connections ─────────────────────────────────────────

class ConnectionStatusRead(BaseModel):
    participant_id: str
    is_connected: bool
    role: Optional[str]
    connected_as_worker: bool
    connected_as_requester: bool
    timestamp: datetime


class TestNotification(BaseModel):
    message: Optional[str] = None
    type: str = Field(default="test", min_length=1, max_length=50)


class DisconnectRequest(BaseModel):
    reason: str = "Admin disconnect"


class JobBooked(BaseModel):
    notify: bool = True
