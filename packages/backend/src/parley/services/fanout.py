"""Notification fan-out — one match event becomes one push per candidate.

A requester's search produces a batch: one job, many matched workers.
Each candidate is handled on its own: its record is validated, a
MatchNotification is built, and the delivery engine pushes it. A bad
record or a failed push yields a failed entry in the report; it never
stops the rest of the batch.

Notification ids are derived from (worker, requester, batch timestamp),
so dispatching the same batch twice produces the same ids and clients
can drop duplicates.

Match notifications are not persisted. A worker who is offline simply
isn't notified; the requester sees that in the per-candidate results.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from parley.schemas.notification import MatchBatch, MatchCandidate, MatchNotification
from parley.services.delivery import DeliveryEngine
from parley.services.identity import IdentityResolutionError, IdentityResolver

logger = structlog.get_logger()

MATCH_EVENT = "matchNotification"


@dataclass
class CandidateResult:
    worker_id: Optional[str]
    success: bool
    worker_name: Optional[str] = None
    acknowledged: bool = False
    notification_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class FanoutReport:
    success: bool
    results: list[CandidateResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def sent_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def total_count(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "sent_count": self.sent_count,
            "total_count": self.total_count,
            "results": [r.__dict__ for r in self.results],
            "error": self.error,
        }


def notification_id_for(worker_id: str, requester_id: str, batch: MatchBatch) -> str:
    millis = int(batch.timestamp.timestamp() * 1000)
    return f"{worker_id}_{requester_id}_{millis}"


class NotificationFanout:
    """Turns match batches into per-worker notifications."""

    def __init__(
        self,
        delivery: DeliveryEngine,
        identity: Optional[IdentityResolver] = None,
    ):
        self.delivery = delivery
        self.identity = identity

    async def dispatch(
        self, batch: MatchBatch | dict, token: Optional[str] = None
    ) -> FanoutReport:
        """Notify every candidate in a batch. Returns per-candidate results."""
        if not isinstance(batch, MatchBatch):
            try:
                batch = MatchBatch.model_validate(batch)
            except ValidationError as e:
                logger.error("fanout.invalid_batch", errors=e.errors(include_url=False))
                return FanoutReport(success=False, error="Invalid search data")

        requester_name = batch.requester_name
        if not requester_name and self.identity is not None:
            try:
                requester = await self.identity.resolve_one(batch.requester_id, token)
            except IdentityResolutionError as e:
                logger.error(
                    "fanout.requester_unresolved",
                    requester_id=batch.requester_id,
                    correlation_id=batch.correlation_id,
                    error=str(e),
                )
                return FanoutReport(success=False, error=str(e))
            requester_name = requester.display_name

        logger.info(
            "fanout.dispatching",
            correlation_id=batch.correlation_id,
            requester_id=batch.requester_id,
            candidates=len(batch.candidates),
        )

        results = await asyncio.gather(
            *(
                self._notify(raw, batch, requester_name)
                for raw in batch.candidates
            )
        )
        report = FanoutReport(success=True, results=list(results))

        logger.info(
            "fanout.completed",
            correlation_id=batch.correlation_id,
            sent=report.sent_count,
            failed=report.total_count - report.sent_count,
        )
        return report

    async def _notify(
        self, raw: Any, batch: MatchBatch, requester_name: Optional[str]
    ) -> CandidateResult:
        worker_id = raw.get("worker_id") if isinstance(raw, dict) else None
        try:
            candidate = MatchCandidate.model_validate(raw)
        except ValidationError:
            logger.warning("fanout.invalid_candidate", candidate=raw)
            return CandidateResult(
                worker_id=worker_id if isinstance(worker_id, str) else None,
                success=False,
                error="Invalid candidate data",
            )

        try:
            notification = MatchNotification(
                notification_id=notification_id_for(
                    candidate.worker_id, batch.requester_id, batch
                ),
                correlation_id=batch.correlation_id,
                sender_id=batch.requester_id,
                receiver_id=candidate.worker_id,
                requester_id=batch.requester_id,
                requester_name=requester_name,
                worker_id=candidate.worker_id,
                worker_name=candidate.name,
                wage=batch.wage,
                description=batch.description,
                timestamp=batch.timestamp,
                metadata={"distance": candidate.distance, "skills": candidate.skills},
            )
            pushed = await self.delivery.push(
                candidate.worker_id,
                MATCH_EVENT,
                notification.model_dump(mode="json"),
                role="worker",
            )
        except Exception as e:
            logger.exception(
                "fanout.candidate_error",
                worker_id=candidate.worker_id,
                correlation_id=batch.correlation_id,
            )
            return CandidateResult(
                worker_id=candidate.worker_id,
                worker_name=candidate.name,
                success=False,
                error=str(e),
            )

        return CandidateResult(
            worker_id=candidate.worker_id,
            worker_name=candidate.name,
            success=pushed.accepted,
            acknowledged=pushed.acknowledged,
            notification_id=notification.notification_id,
            error=pushed.error,
        )
