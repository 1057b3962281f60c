"""Timeout sweep and delegation expiry tasks."""
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from app.core.config import WorkflowRules
from app.db.base import utcnow
from app.models.approval import ApprovalAction
from app.services.audit import log
from app.services.events import EventType
from app.services.rules import RuleValidator
from app.workers.escalation_tasks import (
    check_approval_timeouts,
    collect_timed_out_steps,
    expire_delegations,
    timed_out_events,
)


@pytest.fixture
def validator():
    return RuleValidator(WorkflowRules(approval_timeout_days=30))


@pytest.fixture
def two_level_request(db, directory, engine):
    first, second = directory.user("Ava", role="APPROVER"), directory.user("Bo", role="APPROVER")
    requester = directory.user("Raj")
    directory.user_rule("LEAVE", 1, first)
    directory.user_rule("LEAVE", 2, second)
    created = engine.create_workflow(db, "LEAVE", "ANNUAL", {}, requester.id)
    return created, first


def test_only_overdue_waiting_steps_are_collected(db, validator, two_level_request):
    created, _ = two_level_request
    waiting = next(s for s in created.steps if s.sequence == 1)

    assert collect_timed_out_steps(db, validator, utcnow() + timedelta(days=5)) == []
    overdue = collect_timed_out_steps(db, validator, utcnow() + timedelta(days=31))
    assert [s.id for s in overdue] == [waiting.id]


def test_already_reported_steps_are_skipped(db, validator, two_level_request):
    created, _ = two_level_request
    step = next(s for s in created.steps if s.sequence == 1)
    log(db, EventType.STEP_TIMED_OUT.value, "approval_step", step.id)
    db.commit()

    assert collect_timed_out_steps(db, validator, utcnow() + timedelta(days=31)) == []


def test_closed_requests_are_not_swept(db, engine, validator, two_level_request):
    created, first = two_level_request
    step = next(s for s in created.steps if s.sequence == 1)
    engine.process_approval(db, created.request.id, step.id, ApprovalAction.REJECT, first.id,
                            expected_version=1, notes="No")

    assert collect_timed_out_steps(db, validator, utcnow() + timedelta(days=31)) == []


def test_timed_out_events_describe_step(two_level_request):
    created, first = two_level_request
    step = next(s for s in created.steps if s.sequence == 1)
    now = utcnow()

    (event,) = timed_out_events([step], 30, now)

    assert event.type == EventType.STEP_TIMED_OUT
    assert event.entity_id == step.id
    assert event.payload["approver_id"] == first.id
    assert event.payload["timeout_days"] == 30
    assert event.occurred_at == now


def test_sweep_task_publishes_and_reports_count(db):
    bus = MagicMock()
    step = MagicMock(id="s1", request_id="r1", sequence=1, approver_id="u1", created_at=utcnow())
    with patch("app.db.session.SessionLocal", return_value=db), \
         patch("app.workers.escalation_tasks.collect_timed_out_steps", return_value=[step]), \
         patch("app.workers.event_tasks.build_event_bus", return_value=bus):
        result = check_approval_timeouts()

    assert result == {"timed_out": 1}
    (events,), _ = bus.publish.call_args
    assert [e.type for e in events] == [EventType.STEP_TIMED_OUT]


def test_sweep_task_reports_errors_instead_of_raising():
    with patch("app.db.session.SessionLocal", side_effect=RuntimeError("db down")):
        result = check_approval_timeouts()
    assert result["status"] == "error"


def test_expire_task_runs_cleanup(db, directory, now):
    a, b = directory.user("Ann"), directory.user("Ben")
    directory.delegation(a, b, start=now - timedelta(days=5), end=utcnow() - timedelta(minutes=1))
    bus = MagicMock()
    with patch("app.db.session.SessionLocal", return_value=db), \
         patch("app.workers.event_tasks.build_event_bus", return_value=bus):
        result = expire_delegations()

    assert result == {"expired": 1}
    (events,), _ = bus.publish.call_args
    assert [e.type for e in events] == [EventType.DELEGATION_EXPIRED]
