"""Approval workflow engine.

Two operations carry the workflow:

  create_workflow   resolve matrix rules -> expand approvers -> persist the
                    request and its steps in one transaction -> emit
                    ``workflow.started`` / ``request.created``.

  process_approval  load step + request -> version check -> business rules and
                    authority (direct approver or active delegation) -> guarded
                    step write -> cascade onto siblings and the request, all in
                    one transaction -> emit step / request / workflow events.

Every check runs before the first write. Every write goes through the
``ConcurrencyGuard``; the request row is version-bumped on each decision so
parallel decisions on the same request serialise on it and a level can only
advance once. Events are buffered and published after commit.
"""
import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import WorkflowRules
from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RuleViolation,
    ValidationFailedError,
    ValidationResult,
)
from app.db.base import utcnow
from app.models.approval import ACTION_RESULT_STATUS, ApprovalAction, ApprovalStep, StepStatus
from app.models.approval_matrix import ApprovalDelegation, ApprovalMatrixRule
from app.models.request import ApprovalRequest, RequestStatus
from app.services.approvers import ApproverExpander, DirectoryApproverExpander, approver_spec_for
from app.services.concurrency import ConcurrencyGuard
from app.services.delegation import DelegationResolver, covers
from app.services.events import EventBus, EventType, WorkflowEvent
from app.services.matrix import MatrixResolver
from app.services.rules import OPEN_STEP_STATUSES, RuleValidator

logger = logging.getLogger(__name__)

CLEARED_DECISION = {"action": None, "notes": None, "decided_at": None, "acted_by_id": None}


@dataclass
class WorkflowResult:
    request: ApprovalRequest
    steps: list[ApprovalStep]
    warnings: list[str] = field(default_factory=list)
    events: list[WorkflowEvent] = field(default_factory=list)


@dataclass(frozen=True)
class PlannedStep:
    rule: ApprovalMatrixRule
    approver_id: uuid.UUID


class WorkflowEngine:
    def __init__(
        self,
        rules: WorkflowRules | None = None,
        matrix: MatrixResolver | None = None,
        expander: ApproverExpander | None = None,
        validator: RuleValidator | None = None,
        delegations: DelegationResolver | None = None,
        guard: ConcurrencyGuard | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.rules = rules or WorkflowRules()
        self.matrix = matrix or MatrixResolver()
        self.expander = expander or DirectoryApproverExpander()
        self.validator = validator or RuleValidator(self.rules, clock)
        self.delegations = delegations or DelegationResolver(self.rules, clock)
        self.guard = guard or ConcurrencyGuard()
        self.bus = bus or EventBus()
        self._clock = clock

    # ─── Unit of work ───

    @contextmanager
    def _unit_of_work(self, db: Session) -> Iterator[list[WorkflowEvent]]:
        """Commit on success, roll back everything on any error, then publish.

        A unique-constraint violation (e.g. two creators drawing the same
        request number) surfaces as ``ConflictError``; the caller retries.
        """
        events: list[WorkflowEvent] = []
        try:
            yield events
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.warning("Unit of work hit a constraint violation: %s", exc.orig)
            raise ConflictError(
                "A concurrent change claimed the same unique value; retry the operation.",
                violations=[RuleViolation("integrity_conflict", str(exc.orig))],
            ) from exc
        except Exception:
            db.rollback()
            raise
        self.bus.publish(events)

    # ─── Queries ───

    def get_request(self, db: Session, request_id: uuid.UUID) -> ApprovalRequest:
        request = db.execute(
            select(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if request is None:
            raise NotFoundError(f"Request {request_id} not found.")
        return request

    def load_steps(self, db: Session, request_id: uuid.UUID) -> list[ApprovalStep]:
        return list(db.execute(
            select(ApprovalStep)
            .where(ApprovalStep.request_id == request_id)
            .order_by(ApprovalStep.sequence, ApprovalStep.created_at)
            .execution_options(populate_existing=True)
        ).scalars().all())

    def list_pending_approvals(
        self, db: Session, user_id: uuid.UUID, now: datetime | None = None
    ) -> list[ApprovalStep]:
        """WAITING steps the user may decide: their own plus those delegated to them."""
        now = now or self._clock()
        delegations = [
            d for d in db.execute(
                select(ApprovalDelegation).where(
                    ApprovalDelegation.delegate_id == user_id,
                    ApprovalDelegation.is_active.is_(True),
                )
            ).scalars().all()
            if covers(d, d.module, now)
        ]
        approver_ids = {user_id} | {d.delegator_id for d in delegations}

        rows = db.execute(
            select(ApprovalStep, ApprovalRequest.module)
            .join(ApprovalRequest, ApprovalStep.request_id == ApprovalRequest.id)
            .where(
                ApprovalStep.approver_id.in_(list(approver_ids)),
                ApprovalStep.status == StepStatus.WAITING.value,
                ApprovalStep.sequence == ApprovalRequest.current_step,
            )
            .order_by(ApprovalStep.created_at)
        ).all()

        pending = []
        for step, module in rows:
            if step.approver_id == user_id or any(
                d.delegator_id == step.approver_id and covers(d, module, now) for d in delegations
            ):
                pending.append(step)
        return pending

    # ─── Create ───

    def create_workflow(
        self,
        db: Session,
        module: str,
        request_type: str,
        details: dict[str, Any] | None,
        requester_id: uuid.UUID,
    ) -> WorkflowResult:
        """Start a workflow for a new request.

        Raises:
            NoApplicableRuleError: no matrix rule applies (nothing persisted).
            ValidationFailedError: required fields missing, too many levels,
                or no concrete approver for any level.
        """
        now = self._clock()
        details = dict(details or {})

        profile = self.expander.describe_requester(db, requester_id, now)
        rules = self.matrix.resolve(db, module, profile.role, profile.position, details)

        planned: list[PlannedStep] = []
        seen: set[tuple[uuid.UUID, int]] = set()
        for rule in rules:
            spec = approver_spec_for(rule.approver_type, rule.approver_value)
            approvers = self.expander.expand(db, spec, now)
            if not approvers:
                logger.info("Matrix rule %s (seq %s) expanded to no approvers; level is vacuous",
                            rule.id, rule.sequence)
            for approver_id in approvers:
                key = (approver_id, rule.sequence)
                if key not in seen:
                    seen.add(key)
                    planned.append(PlannedStep(rule, approver_id))

        open_requests = db.execute(
            select(func.count(ApprovalRequest.id)).where(
                ApprovalRequest.module == module,
                ApprovalRequest.requester_id == requester_id,
                ApprovalRequest.status.in_([RequestStatus.PENDING.value, RequestStatus.IN_PROGRESS.value]),
            )
        ).scalar() or 0

        check = self.validator.validate_request_creation(
            module, details, len({r.sequence for r in rules}), open_requests
        )
        if not planned:
            check.add("no_approvers", "No approver could be resolved for any approval level",
                      module=module)
        check.raise_for_errors()

        first_sequence = min(p.rule.sequence for p in planned)

        with self._unit_of_work(db) as events:
            request = ApprovalRequest(
                request_number=self._next_request_number(db, module, now),
                module=module,
                request_type=request_type,
                details=details,
                status=RequestStatus.PENDING.value,
                current_step=first_sequence,
                requester_id=requester_id,
                version=1,
            )
            db.add(request)
            db.flush()

            steps = [
                ApprovalStep(
                    request_id=request.id,
                    sequence=p.rule.sequence,
                    approver_id=p.approver_id,
                    approver_type=p.rule.approver_type,
                    matrix_rule_id=p.rule.id,
                    status=(StepStatus.WAITING if p.rule.sequence == first_sequence else StepStatus.PENDING).value,
                    version=1,
                )
                for p in sorted(planned, key=lambda p: p.rule.sequence)
            ]
            db.add_all(steps)
            db.flush()

            events.append(WorkflowEvent(
                EventType.REQUEST_CREATED, "request", request.id, requester_id,
                {"module": module, "request_type": request_type, "request_number": request.request_number},
            ))
            events.append(WorkflowEvent(
                EventType.WORKFLOW_STARTED, "request", request.id, requester_id,
                {"module": module, "total_steps": len(steps),
                 "levels": sorted({s.sequence for s in steps}),
                 "waiting_approvers": [s.approver_id for s in steps if s.sequence == first_sequence]},
            ))

        logger.info(
            "Workflow started: request=%s number=%s module=%s steps=%d",
            request.id, request.request_number, module, len(steps),
        )
        return WorkflowResult(request, steps, [w.message for w in check.warnings], events)

    def _next_request_number(self, db: Session, module: str, now: datetime) -> str:
        """``REQ-<MODULE>-<YYYYMM>-<NNNN>``, one past the highest number this month.

        Suffixes are zero-padded to four digits and only grow longer, so the
        highest number is the longest one, then the greatest string.
        """
        prefix = f"REQ-{module.upper()}-{now:%Y%m}-"
        number = ApprovalRequest.request_number
        last = db.execute(
            select(number)
            .where(number.startswith(prefix, autoescape=True))
            .order_by(func.length(number).desc(), number.desc())
            .limit(1)
        ).scalar()
        seq = int(last[len(prefix):]) + 1 if last else 1
        return f"{prefix}{seq:04d}"

    # ─── Process ───

    def process_approval(
        self,
        db: Session,
        request_id: uuid.UUID,
        step_id: uuid.UUID,
        action: ApprovalAction | str,
        acting_user_id: uuid.UUID,
        expected_version: int,
        notes: str | None = None,
    ) -> WorkflowResult:
        """Apply one approver decision and its cascade.

        Raises:
            NotFoundError: step or request missing, or step not in the request.
            ConflictError: ``expected_version`` is not the step's current version.
                Checked first, right after loading, so a stale call reports
                Conflict ahead of any validation or authority failure.
            ValidationFailedError: step not actionable, notes missing, RETURN at
                the first level, earlier levels still open.
            UnauthorizedError: acting user is neither the approver nor a current
                delegate, or is the requester approving their own request.
        """
        now = self._clock()
        step = db.execute(
            select(ApprovalStep)
            .where(ApprovalStep.id == step_id)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if step is None or step.request_id != request_id:
            raise NotFoundError(f"Approval step {step_id} not found in request {request_id}.")
        request = self.get_request(db, request_id)

        self.guard.check(step, expected_version)

        try:
            action = ApprovalAction(action)
        except ValueError:
            raise ValidationFailedError(f"Unknown action '{action}'.")

        steps = self.load_steps(db, request_id)
        first_sequence = min(s.sequence for s in steps)

        check = ValidationResult()
        check.merge(self.validator.validate_step_state(step, request))
        check.merge(self.validator.validate_action(action, notes, step, first_sequence))
        check.merge(self.validator.validate_sequence(step, steps))

        delegation = None
        if acting_user_id != step.approver_id:
            delegation = self.delegations.find_active(db, step.approver_id, acting_user_id, request.module, now)
        check.merge(self.validator.validate_authority(step, request, acting_user_id, delegation is not None))

        if self.validator.check_timeout(step, now):
            check.add("approval_timeout", "This approval request has exceeded the timeout period", "warning")
        if not check.valid:
            logger.warning("Decision refused: request=%s step=%s actor=%s rules=%s",
                           request.id, step.id, acting_user_id, [v.rule for v in check.errors])
        check.raise_for_errors()

        request_version = request.version
        with self._unit_of_work(db) as events:
            if action == ApprovalAction.RETURN:
                # Reset together with the rest of the request, in one bump.
                decision = {"status": StepStatus.PENDING.value, **CLEARED_DECISION}
            else:
                decision = {
                    "status": ACTION_RESULT_STATUS[action].value,
                    "action": action.value,
                    "notes": notes,
                    "acted_by_id": acting_user_id,
                    "decided_at": now,
                }
            self.guard.apply(db, step, expected_version, **decision)
            payload = {
                "request_id": request.id,
                "sequence": step.sequence,
                "approver_id": step.approver_id,
                "notes": notes,
                "on_behalf_of": step.approver_id if delegation else None,
                "delegation_id": delegation.id if delegation else None,
            }

            if action == ApprovalAction.APPROVE:
                events.append(WorkflowEvent(EventType.STEP_APPROVED, "approval_step", step.id, acting_user_id, payload))
                self._cascade_approve(db, request, request_version, acting_user_id, now, events)
            elif action == ApprovalAction.REJECT:
                events.append(WorkflowEvent(EventType.STEP_REJECTED, "approval_step", step.id, acting_user_id, payload))
                self._cascade_reject(db, request, request_version, step, acting_user_id, notes, now, events)
            else:
                events.append(WorkflowEvent(EventType.STEP_RETURNED, "approval_step", step.id, acting_user_id, payload))
                self._cascade_return(db, request, request_version, step, first_sequence, acting_user_id, notes, events)

        logger.info(
            "Approval decision: request=%s step=%s action=%s actor=%s%s -> request status=%s current_step=%s",
            request.id, step.id, action.value, acting_user_id,
            f" (for {step.approver_id})" if delegation else "",
            request.status, request.current_step,
        )
        return WorkflowResult(
            request, self.load_steps(db, request.id), [w.message for w in check.warnings], events
        )

    def _set_request_status(
        self,
        db: Session,
        request: ApprovalRequest,
        expected_version: int,
        target: RequestStatus,
        **values: Any,
    ) -> None:
        self.validator.validate_transition_path(request.status, target).raise_for_errors()
        self.guard.apply(db, request, expected_version, status=target.value, **values)

    def _cascade_approve(self, db, request, request_version, actor_id, now, events) -> None:
        current = request.current_step
        steps = self.load_steps(db, request.id)
        level = [s for s in steps if s.sequence == current]

        if not all(s.status == StepStatus.APPROVED for s in level):
            # Parallel siblings still open; record progress on the request row.
            if request.status != RequestStatus.IN_PROGRESS:
                self._set_request_status(db, request, request_version, RequestStatus.IN_PROGRESS)
            else:
                self.guard.apply(db, request, request_version)
            return

        later = sorted({s.sequence for s in steps if s.sequence > current})
        if later:
            next_sequence = later[0]
            activated = [s.id for s in steps if s.sequence == next_sequence and s.status == StepStatus.PENDING]
            self.guard.bump_many(
                db, ApprovalStep,
                ApprovalStep.request_id == request.id,
                ApprovalStep.sequence == next_sequence,
                ApprovalStep.status == StepStatus.PENDING.value,
                status=StepStatus.WAITING.value,
            )
            if request.status != RequestStatus.IN_PROGRESS:
                self.validator.validate_transition_path(request.status, RequestStatus.IN_PROGRESS).raise_for_errors()
            self.guard.apply(db, request, request_version,
                             status=RequestStatus.IN_PROGRESS.value, current_step=next_sequence)
            for step_id in activated:
                events.append(WorkflowEvent(EventType.STEP_ACTIVATED, "approval_step", step_id, None,
                                            {"request_id": request.id, "sequence": next_sequence}))
            return

        self._set_request_status(db, request, request_version, RequestStatus.APPROVED, completed_at=now)
        events.append(WorkflowEvent(EventType.REQUEST_APPROVED, "request", request.id, actor_id,
                                    {"completed_at": now}))
        events.append(WorkflowEvent(EventType.WORKFLOW_COMPLETED, "request", request.id, actor_id,
                                    {"result": "approved", "completed_at": now}))

    def _cascade_reject(self, db, request, request_version, step, actor_id, notes, now, events) -> None:
        skipped = [
            s for s in self.load_steps(db, request.id)
            if s.id != step.id and s.status in OPEN_STEP_STATUSES
        ]
        self.guard.bump_many(
            db, ApprovalStep,
            ApprovalStep.request_id == request.id,
            ApprovalStep.id != step.id,
            ApprovalStep.status.in_([s.value for s in OPEN_STEP_STATUSES]),
            status=StepStatus.SKIPPED.value,
        )
        self._set_request_status(db, request, request_version, RequestStatus.REJECTED, completed_at=now)

        for s in skipped:
            events.append(WorkflowEvent(EventType.STEP_SKIPPED, "approval_step", s.id, None,
                                        {"request_id": request.id, "sequence": s.sequence,
                                         "reason": "request rejected"}))
        events.append(WorkflowEvent(EventType.REQUEST_REJECTED, "request", request.id, actor_id,
                                    {"step_id": step.id, "reason": notes}))
        events.append(WorkflowEvent(EventType.WORKFLOW_COMPLETED, "request", request.id, actor_id,
                                    {"result": "rejected", "completed_at": now}))

    def _cascade_return(self, db, request, request_version, step, first_sequence, actor_id, notes, events) -> None:
        self.validator.validate_return_reset(request).raise_for_errors()
        logger.debug("Request %s %s -> %s -> %s", request.id, request.status,
                     RequestStatus.RETURNED.value, RequestStatus.PENDING.value)

        self.guard.bump_many(
            db, ApprovalStep,
            ApprovalStep.request_id == request.id,
            ApprovalStep.sequence == first_sequence,
            status=StepStatus.WAITING.value, **CLEARED_DECISION,
        )
        self.guard.bump_many(
            db, ApprovalStep,
            ApprovalStep.request_id == request.id,
            ApprovalStep.sequence != first_sequence,
            ApprovalStep.id != step.id,
            status=StepStatus.PENDING.value, **CLEARED_DECISION,
        )
        self.guard.apply(db, request, request_version,
                         status=RequestStatus.PENDING.value, current_step=first_sequence)
        events.append(WorkflowEvent(EventType.REQUEST_RETURNED, "request", request.id, actor_id,
                                    {"reason": notes, "current_step": first_sequence}))

    # ─── Cancel ───

    def cancel_request(
        self,
        db: Session,
        request_id: uuid.UUID,
        by_user_id: uuid.UUID,
        expected_version: int,
        reason: str | None = None,
    ) -> WorkflowResult:
        """Cancel an open request. Remaining steps are left as they are."""
        request = self.get_request(db, request_id)
        if request.requester_id != by_user_id:
            raise ForbiddenError("You can only cancel your own requests.")
        self.guard.check(request, expected_version)

        check = self.validator.validate_state_transition(request.status, RequestStatus.CANCELLED)
        check.raise_for_errors()

        now = self._clock()
        with self._unit_of_work(db) as events:
            self.guard.apply(
                db, request, expected_version,
                status=RequestStatus.CANCELLED.value, cancelled_at=now, cancel_reason=reason,
            )
            events.append(WorkflowEvent(EventType.REQUEST_CANCELLED, "request", request.id, by_user_id,
                                        {"reason": reason}))
            events.append(WorkflowEvent(EventType.WORKFLOW_COMPLETED, "request", request.id, by_user_id,
                                        {"result": "cancelled", "completed_at": now}))

        logger.info("Request %s cancelled by %s", request.id, by_user_id)
        return WorkflowResult(request, self.load_steps(db, request.id),
                              [w.message for w in check.warnings], events)
