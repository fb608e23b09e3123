"""Pure validation of incoming negotiation messages.

The field rules live on NegotiationSubmission. This module runs the model
and turns pydantic errors into Violations, ordered the way clients are
told about them. State checks (booked job, closed conversation) happen
afterwards in the negotiation service.

Order: required fields → body → wage → self-messaging → everything else.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from parley.schemas.negotiation import (
    DEFAULT_MAX_BODY_LENGTH,
    MESSAGE_STATUSES,
    NegotiationSubmission,
)

REQUIRED_FIELDS = ("sender_id", "receiver_id", "body", "correlation_id")


@dataclass(frozen=True)
class Violation:
    field: str
    message: str


def _ranked(error: dict[str, Any]) -> tuple[int, Violation]:
    loc = error["loc"]
    kind = error["type"]

    # Model-level rule: the only one is sender != receiver
    if not loc:
        return 3, Violation("receiver_id", error["msg"])

    field = str(loc[0])
    if field in REQUIRED_FIELDS:
        if kind in ("missing", "string_too_short") or (
            kind == "string_type" and error.get("input") is None
        ):
            return 0, Violation(field, f"{field} is required")
        if kind == "string_type":
            return 0, Violation(field, f"{field} must be a string")
    if field == "body":
        return 1, Violation(field, error["msg"])
    if field == "wage":
        return 2, Violation(field, "Valid wage is required")
    if field == "sender_role":
        return 4, Violation(field, "sender_role must be 'requester' or 'worker'")
    if field == "status":
        return 4, Violation(
            field, f"status must be one of: {', '.join(MESSAGE_STATUSES)}"
        )
    return 4, Violation(field, f"Invalid {field}: {error['msg']}")


def parse_submission(
    data: Mapping[str, Any] | None,
    max_body_length: int = DEFAULT_MAX_BODY_LENGTH,
) -> tuple[Optional[NegotiationSubmission], list[Violation]]:
    """Build the submission, or return its violations in check order."""
    if not data:
        return None, [Violation("data", "No data provided")]
    try:
        submission = NegotiationSubmission.model_validate(
            dict(data), context={"max_body_length": max_body_length}
        )
    except ValidationError as e:
        ranked = sorted(
            (_ranked(error) for error in e.errors()), key=lambda item: item[0]
        )
        return None, [violation for _, violation in ranked]
    return submission, []


def validate_submission(
    data: Mapping[str, Any] | None,
    max_body_length: int = DEFAULT_MAX_BODY_LENGTH,
) -> list[Violation]:
    """Return the rule violations for a negotiation message, in check order."""
    return parse_submission(data, max_body_length)[1]
