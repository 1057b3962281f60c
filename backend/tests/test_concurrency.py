"""Optimistic version guard: CAS semantics and race outcomes in the engine.

The last test interleaves two sessions on a file-backed database to show two
siblings approving at once advance their level exactly once.
"""
import pytest
from sqlalchemy import update

from app.core.exceptions import ConflictError
from app.models.approval import ApprovalAction, ApprovalStep, StepStatus
from app.models.approval_matrix import ApproverType
from app.models.request import RequestStatus
from app.services.concurrency import ConcurrencyGuard


class RacingGuard(ConcurrencyGuard):
    """Lets another writer commit a change to the row just before our UPDATE."""

    def __init__(self, db):
        self.db = db
        self.raced = False

    def apply(self, db, entity, expected_version, **values):
        if not self.raced:
            self.raced = True
            model = entity.__class__
            self.db.execute(
                update(model).where(model.id == entity.id).values(version=model.version + 1)
            )
        return super().apply(db, entity, expected_version, **values)


@pytest.fixture
def user_step(db, directory):
    approver = directory.user("Ava", role="APPROVER")
    requester = directory.user("Raj")
    directory.user_rule("LEAVE", 1, approver)
    return approver, requester


def test_apply_bumps_version_once(db, engine, user_step):
    approver, requester = user_step
    step = engine.create_workflow(db, "LEAVE", "ANNUAL", {}, requester.id).steps[0]

    ConcurrencyGuard().apply(db, step, 1, notes="checked")
    db.commit()

    assert step.version == 2
    assert step.notes == "checked"


def test_apply_with_stale_version_conflicts(db, engine, user_step):
    approver, requester = user_step
    step = engine.create_workflow(db, "LEAVE", "ANNUAL", {}, requester.id).steps[0]
    guard = ConcurrencyGuard()
    guard.apply(db, step, 1, notes="first")

    with pytest.raises(ConflictError) as exc_info:
        guard.apply(db, step, 1, notes="second")

    assert exc_info.value.violations[0].rule == "version_conflict"
    db.rollback()


def test_check_compares_loaded_version(user_step, db, engine):
    approver, requester = user_step
    step = engine.create_workflow(db, "LEAVE", "ANNUAL", {}, requester.id).steps[0]

    ConcurrencyGuard().check(step, 1)
    with pytest.raises(ConflictError):
        ConcurrencyGuard().check(step, 2)


def test_same_stale_version_twice_one_success_one_conflict(db, engine, user_step):
    approver, requester = user_step
    created = engine.create_workflow(db, "LEAVE", "ANNUAL", {}, requester.id)
    step = created.steps[0]

    outcomes = []
    for _ in range(2):
        try:
            engine.process_approval(db, created.request.id, step.id, ApprovalAction.APPROVE,
                                     approver.id, expected_version=1)
            outcomes.append("ok")
        except ConflictError:
            outcomes.append("conflict")

    assert sorted(outcomes) == ["conflict", "ok"]
    final = engine.load_steps(db, created.request.id)[0]
    assert final.status == StepStatus.APPROVED
    assert final.version == 2


def test_lost_race_rolls_back_whole_decision(db, make_engine, user_step, recorder):
    approver, requester = user_step
    setup = make_engine()
    created = setup.create_workflow(db, "LEAVE", "ANNUAL", {}, requester.id)
    recorder.clear()

    racer = make_engine()
    racer.guard = RacingGuard(db)

    with pytest.raises(ConflictError):
        racer.process_approval(db, created.request.id, created.steps[0].id, ApprovalAction.APPROVE,
                               approver.id, expected_version=1)

    step = db.get(ApprovalStep, created.steps[0].id, populate_existing=True)
    assert step.status == StepStatus.WAITING
    assert step.version == 1  # the racing write was rolled back with ours
    request = setup.get_request(db, created.request.id)
    assert request.status == RequestStatus.PENDING
    assert request.version == 1
    assert recorder.events == []


class InterleavingGuard(ConcurrencyGuard):
    """Runs another writer's full decision right after our version check passes."""

    def __init__(self, interleave):
        self.interleave = interleave

    def check(self, entity, expected_version):
        super().check(entity, expected_version)
        interleave, self.interleave = self.interleave, None
        if interleave is not None:
            interleave()


def test_concurrent_sibling_approvals_advance_the_level_once(
    two_sessions, make_directory, make_engine, recorder
):
    db_a, db_b = two_sessions
    directory = make_directory(db_a)
    team_lead = directory.position("TEAM_LEAD")
    lead_a = directory.holder("Lea", team_lead)
    lead_b = directory.holder("Leo", team_lead)
    director = directory.user("Dora", role="APPROVER")
    requester = directory.user("Tom")
    directory.rule("BUDGET", 1, ApproverType.POSITION, "TEAM_LEAD")
    directory.user_rule("BUDGET", 2, director)

    engine_a = make_engine()
    created = engine_a.create_workflow(db_a, "BUDGET", "Q3", {}, requester.id)
    request_id = created.request.id
    step_a = next(s for s in created.steps if s.approver_id == lead_a.id)
    step_b = next(s for s in created.steps if s.approver_id == lead_b.id)
    director_step = next(s for s in created.steps if s.sequence == 2)
    recorder.clear()

    engine_b = make_engine()
    engine_b.guard = InterleavingGuard(lambda: engine_a.process_approval(
        db_a, request_id, step_a.id, ApprovalAction.APPROVE, lead_a.id, expected_version=1,
    ))

    # Lea commits between Leo's read of the request and Leo's writes.
    with pytest.raises(ConflictError):
        engine_b.process_approval(db_b, request_id, step_b.id, ApprovalAction.APPROVE,
                                  lead_b.id, expected_version=1)

    request = engine_a.get_request(db_a, request_id)
    assert request.status == RequestStatus.IN_PROGRESS
    assert request.current_step == 1
    assert request.version == 2
    steps = {s.id: s for s in engine_a.load_steps(db_a, request_id)}
    assert steps[step_a.id].status == StepStatus.APPROVED
    assert steps[step_b.id].status == StepStatus.WAITING
    assert steps[step_b.id].version == 1
    assert steps[director_step.id].status == StepStatus.PENDING
    assert steps[director_step.id].version == 1

    result = engine_b.process_approval(db_b, request_id, step_b.id, ApprovalAction.APPROVE,
                                       lead_b.id, expected_version=1)

    assert result.request.current_step == 2
    assert result.request.version == 3
    director_after = next(s for s in result.steps if s.id == director_step.id)
    assert director_after.status == StepStatus.WAITING
    assert director_after.version == 2
    assert recorder.types.count("approval.step.activated") == 1
    assert recorder.types.count("approval.step.approved") == 2
