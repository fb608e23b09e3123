"""Tests for submission validation — the field rules, in check order."""

from parley.services.validation import parse_submission, validate_submission


def _msg(**overrides):
    data = {
        "sender_id": "req-1",
        "receiver_id": "wrk-1",
        "correlation_id": "job-1",
        "body": "Can you do 100?",
        "wage": 100,
        "sender_role": "requester",
    }
    data.update(overrides)
    return data


def _first(data, **kwargs):
    violations = validate_submission(data, **kwargs)
    return violations[0].message if violations else None


def test_valid_message_has_no_violations():
    assert validate_submission(_msg()) == []


def test_no_data():
    assert _first(None) == "No data provided"
    assert _first({}) == "No data provided"


def test_missing_required_field_short_circuits():
    data = _msg()
    del data["correlation_id"]
    violations = validate_submission(data)
    assert [v.field for v in violations] == ["correlation_id"]
    assert violations[0].message == "correlation_id is required"


def test_whitespace_body_is_empty():
    assert _first(_msg(body="   ")) == "Message cannot be empty"


def test_body_length_boundary():
    assert _first(_msg(body="x" * 1000)) is None
    assert _first(_msg(body="x" * 1001)) == "Message too long (max 1000 characters)"


def test_custom_max_length():
    assert _first(_msg(body="x" * 11), max_body_length=10) == (
        "Message too long (max 10 characters)"
    )


def test_wage_rules():
    assert _first(_msg(wage=0)) is None
    assert _first(_msg(wage=12.5)) is None
    assert _first(_msg(wage=-1)) == "Valid wage is required"
    assert _first(_msg(wage="100")) == "Valid wage is required"
    assert _first(_msg(wage=True)) == "Valid wage is required"
    assert _first(_msg(wage=float("nan"))) == "Valid wage is required"
    data = _msg()
    del data["wage"]
    assert _first(data) == "Valid wage is required"


def test_self_messaging_rejected():
    assert _first(_msg(receiver_id="req-1")) == "Cannot send messages to yourself"


def test_first_violation_follows_check_order():
    assert _first(_msg(body="  ", wage=-5, receiver_id="req-1")) == "Message cannot be empty"
    assert _first(_msg(wage=-5, receiver_id="req-1")) == "Valid wage is required"
    violations = validate_submission(_msg(body="  ", wage=-5))
    assert [v.field for v in violations] == ["body", "wage"]


def test_required_before_body():
    violations = validate_submission(_msg(sender_id="", body="  "))
    assert violations[0].message == "sender_id is required"


def test_role_and_status_tags():
    assert _first(_msg(sender_role="admin")) is not None
    assert _first(_msg(status="counter")) is None
    assert _first(_msg(status="haggling")) is not None


def test_malformed_optional_fields_are_violations():
    for field, value in (
        ("sender_name", 123),
        ("notification_id", 5),
        ("description", ["x"]),
    ):
        violations = validate_submission(_msg(**{field: value}))
        assert [v.field for v in violations] == [field]


def test_null_status_defaults_to_pending():
    submission, violations = parse_submission(_msg(status=None))
    assert violations == []
    assert submission.status == "pending"


def test_parse_strips_body():
    submission, _ = parse_submission(_msg(body="  Deal at 120  "))
    assert submission.body == "Deal at 120"
