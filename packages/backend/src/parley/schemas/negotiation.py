"""Pydantic schemas for negotiation messages and conversations.

Separate schemas for submit/read keep the wire format explicit:
- NegotiationSubmission: an inbound message and all of its field rules
- MessageRead / ConversationRead: what the API and push frames return
- MarkRead / CompleteConversation / ConversationStatusUpdate: admin bodies
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator
from pydantic_core import PydanticCustomError

ROLES = ("requester", "worker")
MESSAGE_STATUSES = ("pending", "accepted", "rejected", "counter", "expired")
CONVERSATION_STATUSES = ("active", "completed", "cancelled", "expired")
DEFAULT_MAX_BODY_LENGTH = 1000

# A conversation in one of these states accepts no further messages.
CLOSED_CONVERSATION_STATUSES = frozenset({"completed", "cancelled", "expired"})

Role = Literal["requester", "worker"]
MessageStatus = Literal["pending", "accepted", "rejected", "counter", "expired"]
ConversationStatus = Literal["active", "completed", "cancelled", "expired"]


def counterpart_role(role: str) -> str:
    return "worker" if role == "requester" else "requester"


# ─── Submission ──────────────────────────────────────────

class NegotiationSubmission(BaseModel):
    """A negotiation message. `status` tags the kind: offer, counter, accept...

    Carries every field rule for a submission. Build it through
    services.validation.parse_submission so the body limit comes from
    settings and rejections read the same on the API and the gateway.
    """

    sender_id: str = Field(..., min_length=1)
    receiver_id: str = Field(..., min_length=1)
    correlation_id: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    # strict: "100" and True are not wages
    wage: float = Field(..., ge=0, strict=True, allow_inf_nan=False)
    sender_role: Role
    sender_name: Optional[str] = Field(default=None, max_length=200)
    status: MessageStatus = "pending"
    description: Optional[str] = Field(default=None, max_length=500)
    notification_id: Optional[str] = Field(default=None, max_length=200)

    @field_validator("body")
    @classmethod
    def body_within_limits(cls, value: str, info: ValidationInfo) -> str:
        if not value.strip():
            raise PydanticCustomError("body_empty", "Message cannot be empty")
        limit = (info.context or {}).get("max_body_length", DEFAULT_MAX_BODY_LENGTH)
        if len(value) > limit:
            raise PydanticCustomError(
                "body_too_long",
                "Message too long (max {max_length} characters)",
                {"max_length": limit},
            )
        return value.strip()

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, value):
        return "pending" if value is None else value

    @model_validator(mode="after")
    def not_to_self(self) -> "NegotiationSubmission":
        if self.sender_id == self.receiver_id:
            raise PydanticCustomError("self_message", "Cannot send messages to yourself")
        return self


class SubmitResponse(BaseModel):
    success: bool
    message: str
    code: Optional[str] = None
    message_id: Optional[int] = None
    conversation_id: Optional[int] = None
    delivered: bool = False
    queued: bool = False
    acknowledged: bool = False
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None


# ─── Read models ─────────────────────────────────────────

class MessageRead(BaseModel):
    id: int
    notification_id: str
    sender_id: str
    receiver_id: str
    correlation_id: str
    body: str
    sender_role: str
    sender_name: str
    wage: float
    status: str
    conversation_status: str
    is_read: bool
    delivered_at: Optional[datetime]
    read_at: Optional[datetime]
    created_at: datetime

    model_config = {"from_attributes": True}


class HistoryEntryRead(MessageRead):
    """A message with both parties' display names joined in."""
    receiver_name: Optional[str] = None


class ConversationRead(BaseModel):
    id: int
    participant_a: str
    participant_b: str
    correlation_id: str
    requester_id: str
    worker_id: str
    description: Optional[str]
    initial_wage: float
    final_wage: Optional[float]
    status: str
    message_count: int
    last_message_at: datetime
    completed_at: Optional[datetime]
    completed_by: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class ActiveConversationRead(BaseModel):
    correlation_id: str
    counterparty_id: str
    last_message: MessageRead
    unread_count: int


# ─── Admin bodies ────────────────────────────────────────

class MarkRead(BaseModel):
    message_ids: list[int] = Field(..., min_length=1)


class MarkReadResponse(BaseModel):
    modified_count: int


class CompleteConversation(BaseModel):
    """Completion request. Omitting final_wage keeps the prior value."""
    completed_by: str = Field(..., min_length=1)
    final_wage: Optional[float] = Field(None, ge=0)


class ConversationStatusUpdate(BaseModel):
    status: ConversationStatus


class ConversationStatusResult(BaseModel):
    correlation_id: str
    status: str
    updated: int
