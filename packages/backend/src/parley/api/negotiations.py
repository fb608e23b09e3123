"""Negotiation API routes.

The HTTP face of the negotiation state machine. Submissions go through the
same NegotiationService.submit() as the realtime gateway, so rejection
reasons are identical on both surfaces; here they also get a status code:

    validation           → 400
    job_booked           → 409
    conversation_closed  → 409
    server_error         → 500
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from parley.auth.dependencies import CurrentIdentity, get_current_user
from parley.api.deps import negotiation_service
from parley.schemas.negotiation import (
    ActiveConversationRead,
    CompleteConversation,
    ConversationRead,
    ConversationStatusResult,
    ConversationStatusUpdate,
    HistoryEntryRead,
    MarkRead,
    MarkReadResponse,
    MessageRead,
    SubmitResponse,
)
from parley.services.negotiation import (
    ConversationClosedError,
    ConversationNotFoundError,
    NegotiationService,
    NotAParticipantError,
)

router = APIRouter()

REJECTION_STATUS = {
    "validation": 400,
    "job_booked": 409,
    "conversation_closed": 409,
    "server_error": 500,
}


def _completion_error(e: Exception) -> HTTPException:
    if isinstance(e, ConversationNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, NotAParticipantError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ConversationClosedError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=422, detail=str(e))


# ═══════════════════════════════════════════════════════════
# Messages
# ═══════════════════════════════════════════════════════════


@router.post("/negotiations/messages", response_model=SubmitResponse, status_code=201)
async def submit_message(
    body: dict[str, Any] = Body(...),
    svc: NegotiationService = Depends(negotiation_service),
):
    """Submit an offer, counter-offer, acceptance or rejection."""
    result = await svc.submit(body)
    if not result.success:
        return JSONResponse(
            status_code=REJECTION_STATUS.get(result.code, 400),
            content=result.to_dict(),
        )
    return result.to_dict()


@router.get("/negotiations/stats")
async def negotiation_stats(svc: NegotiationService = Depends(negotiation_service)):
    """Conversation counts by status, message and unread totals."""
    return await svc.stats()


@router.get(
    "/negotiations/{user_id}/conversations",
    response_model=list[ActiveConversationRead],
)
async def active_conversations(
    user_id: str,
    svc: NegotiationService = Depends(negotiation_service),
):
    """Active conversations of a participant, most recent first."""
    conversations = await svc.active_conversations(user_id)
    return [
        ActiveConversationRead(
            correlation_id=c.correlation_id,
            counterparty_id=c.counterparty_id,
            last_message=MessageRead.model_validate(c.last_message),
            unread_count=c.unread_count,
        )
        for c in conversations
    ]


@router.get("/negotiations/{user_id}/unread-count")
async def unread_count(
    user_id: str,
    svc: NegotiationService = Depends(negotiation_service),
):
    return {"participant_id": user_id, "unread_count": await svc.unread_count(user_id)}


@router.put("/negotiations/{user_id}/messages/read", response_model=MarkReadResponse)
async def mark_read(
    user_id: str,
    body: MarkRead,
    svc: NegotiationService = Depends(negotiation_service),
):
    """Mark messages addressed to user_id as read. Safe to repeat."""
    modified = await svc.mark_read(body.message_ids, user_id)
    return MarkReadResponse(modified_count=modified)


@router.get(
    "/negotiations/{user_id}/{other_user_id}",
    response_model=list[HistoryEntryRead],
)
async def history(
    user_id: str,
    other_user_id: str,
    correlation_id: Optional[str] = Query(None, description="Restrict to one job"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    svc: NegotiationService = Depends(negotiation_service),
    identity: CurrentIdentity = Depends(get_current_user),
):
    """Message history between two participants, oldest first."""
    entries = await svc.history(
        user_id,
        other_user_id,
        correlation_id=correlation_id,
        limit=limit,
        offset=offset,
        token=identity.token,
    )
    return [
        HistoryEntryRead(
            **MessageRead.model_validate(e.message).model_dump(),
            receiver_name=e.receiver_name,
        )
        for e in entries
    ]


# ═══════════════════════════════════════════════════════════
# Conversations
# ═══════════════════════════════════════════════════════════


@router.put(
    "/negotiations/conversations/{conversation_id}/complete",
    response_model=ConversationRead,
)
async def complete_conversation(
    conversation_id: int,
    body: CompleteConversation,
    svc: NegotiationService = Depends(negotiation_service),
):
    """Close a conversation as agreed. Repeating it is harmless."""
    try:
        return await svc.complete_conversation(
            conversation_id, body.final_wage, body.completed_by
        )
    except (
        ConversationNotFoundError,
        NotAParticipantError,
        ConversationClosedError,
        ValueError,
    ) as e:
        raise _completion_error(e)


@router.put(
    "/negotiations/jobs/{correlation_id}/complete",
    response_model=ConversationRead,
)
async def complete_by_correlation(
    correlation_id: str,
    body: CompleteConversation,
    svc: NegotiationService = Depends(negotiation_service),
):
    """Complete the caller's conversation for a job."""
    try:
        return await svc.complete_by_correlation(
            correlation_id, body.final_wage, body.completed_by
        )
    except (
        ConversationNotFoundError,
        NotAParticipantError,
        ConversationClosedError,
        ValueError,
    ) as e:
        raise _completion_error(e)


@router.put(
    "/negotiations/jobs/{correlation_id}/status",
    response_model=ConversationStatusResult,
)
async def update_status(
    correlation_id: str,
    body: ConversationStatusUpdate,
    svc: NegotiationService = Depends(negotiation_service),
):
    """Set every conversation of a job to a status (e.g. expired)."""
    try:
        updated = await svc.update_conversation_status(correlation_id, body.status)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return ConversationStatusResult(
        correlation_id=correlation_id, status=body.status, updated=updated
    )
