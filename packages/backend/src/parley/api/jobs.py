"""Job events from the matching side: bookings and match batches."""

from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from parley.auth.dependencies import CurrentIdentity, get_current_user
from parley.realtime.runtime import Runtime, get_runtime
from parley.api.deps import notification_fanout
from parley.schemas.notification import FanoutReportRead, JobBooked, MatchBatch
from parley.services.fanout import NotificationFanout

router = APIRouter()


@router.post("/jobs/{correlation_id}/booked")
async def job_booked(
    correlation_id: str,
    body: Optional[JobBooked] = Body(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Flag a job as booked. Further negotiation on it is rejected."""
    notify = body.notify if body else True
    notified = await runtime.book_job(correlation_id, notify=notify)
    return {
        "success": True,
        "correlation_id": correlation_id,
        "status": "booked",
        "notified": notified,
    }


@router.post("/notifications/match", response_model=FanoutReportRead)
async def notify_matches(
    batch: MatchBatch,
    fanout: NotificationFanout = Depends(notification_fanout),
    identity: CurrentIdentity = Depends(get_current_user),
):
    """Push a match notification to every candidate worker in the batch.

    Per-candidate failures are reported in `results`. A requester whose
    name cannot be resolved fails the whole batch with 502.
    """
    report = await fanout.dispatch(batch, token=identity.token)
    if not report.success:
        return JSONResponse(status_code=502, content=report.to_dict())
    return report.to_dict()
