"""Stateless business-rule checks for the approval workflow.

Nothing here touches the database: callers load what a check needs and the
validator answers with a ``ValidationResult``. Configuration comes from the
``WorkflowRules`` value injected at construction.
"""
import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from app.core.config import WorkflowRules
from app.core.exceptions import ValidationResult
from app.db.base import as_utc, utcnow
from app.models.approval import ApprovalAction, ApprovalStep, StepStatus
from app.models.request import ApprovalRequest, RequestStatus

logger = logging.getLogger(__name__)

STATE_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.DRAFT: frozenset({RequestStatus.PENDING, RequestStatus.CANCELLED}),
    RequestStatus.PENDING: frozenset({RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED}),
    RequestStatus.IN_PROGRESS: frozenset(
        {RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.CANCELLED}
    ),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

# Requests that still accept step decisions (and a return reset back to PENDING).
OPEN_REQUEST_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.IN_PROGRESS})

OPEN_STEP_STATUSES = frozenset({StepStatus.PENDING, StepStatus.WAITING})


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class RuleValidator:
    def __init__(self, rules: WorkflowRules | None = None, clock: Callable[[], datetime] = utcnow):
        self.rules = rules or WorkflowRules()
        self._clock = clock

    # ─── Request status ───

    def validate_state_transition(self, from_status: str, to_status: str) -> ValidationResult:
        result = ValidationResult()
        try:
            source, target = RequestStatus(from_status), RequestStatus(to_status)
        except ValueError:
            result.add("state_transition", f"Unknown request status in {from_status} -> {to_status}")
            return result

        allowed = STATE_TRANSITIONS.get(source)
        if allowed is None:
            result.add("state_transition", f"No transition rules defined for status: {source.value}",
                       from_status=source.value, to_status=target.value)
        elif target not in allowed:
            result.add(
                "state_transition",
                f"Invalid transition from {source.value} to {target.value}",
                from_status=source.value,
                to_status=target.value,
                allowed=sorted(s.value for s in allowed),
            )
        elif source == RequestStatus.IN_PROGRESS and target == RequestStatus.CANCELLED:
            result.add("state_transition", "Cancelling an in-progress request will notify all pending approvers",
                       "warning")
        return result

    def transition_path(self, from_status: str, to_status: str) -> list[RequestStatus]:
        """Statuses a request passes through to reach ``to_status``.

        A decision that finishes a request straight out of PENDING goes via
        IN_PROGRESS so that every hop is a legal transition.
        """
        source, target = RequestStatus(from_status), RequestStatus(to_status)
        if source == target:
            return []
        if source == RequestStatus.PENDING and target in (RequestStatus.APPROVED, RequestStatus.REJECTED):
            return [RequestStatus.IN_PROGRESS, target]
        return [target]

    def validate_transition_path(self, from_status: str, to_status: str) -> ValidationResult:
        result = ValidationResult()
        current = RequestStatus(from_status)
        for hop in self.transition_path(from_status, to_status):
            result.merge(self.validate_state_transition(current, hop))
            current = hop
        return result

    def validate_return_reset(self, request: ApprovalRequest) -> ValidationResult:
        result = ValidationResult()
        if RequestStatus(request.status) not in OPEN_REQUEST_STATUSES:
            result.add("state_transition", f"Cannot return a request in status {request.status}",
                       from_status=request.status, to_status=RequestStatus.RETURNED.value)
        return result

    # ─── Step decisions ───

    def allowed_actions(self, step: ApprovalStep, first_sequence: int = 1) -> list[ApprovalAction]:
        actions = [ApprovalAction.APPROVE, ApprovalAction.REJECT]
        # Nothing to return to from the first level.
        if step.sequence > 1 and step.sequence > first_sequence:
            actions.append(ApprovalAction.RETURN)
        return actions

    def validate_action(
        self,
        action: ApprovalAction,
        notes: str | None,
        step: ApprovalStep,
        first_sequence: int = 1,
    ) -> ValidationResult:
        result = ValidationResult()
        if action == ApprovalAction.REJECT and self.rules.require_rejection_notes and _blank(notes):
            result.add("rejection_notes", "Rejection requires notes", action=action.value)
        if action == ApprovalAction.RETURN and self.rules.require_return_notes and _blank(notes):
            result.add("return_notes", "Return action requires notes", action=action.value)

        allowed = self.allowed_actions(step, first_sequence)
        if action not in allowed:
            result.add(
                "invalid_action",
                f"Action {action.value} is not allowed for this step",
                action=action.value,
                sequence=step.sequence,
                allowed=[a.value for a in allowed],
            )
        return result

    def validate_step_state(self, step: ApprovalStep, request: ApprovalRequest) -> ValidationResult:
        result = ValidationResult()
        if RequestStatus(request.status) not in OPEN_REQUEST_STATUSES:
            result.add("request_status", f"Request is {request.status}; no further decisions are accepted",
                       request_status=request.status)
        if step.status != StepStatus.WAITING:
            result.add("step_status", f"Step is not awaiting a decision (current status: {step.status})",
                       step_id=step.id, status=step.status)
        if step.sequence != request.current_step:
            result.add("current_step", "This is not the current approval step",
                       step_sequence=step.sequence, current_step=request.current_step)
        return result

    def validate_sequence(self, step: ApprovalStep, steps: Iterable[ApprovalStep]) -> ValidationResult:
        """Earlier levels must be finished; parallel siblings produce a warning."""
        result = ValidationResult()
        steps = list(steps)

        if not self.rules.allow_skip_levels:
            incomplete = [
                s for s in steps
                if s.sequence < step.sequence and s.status in OPEN_STEP_STATUSES
            ]
            if incomplete:
                result.add(
                    "sequence_order",
                    "Previous approval steps must be completed first",
                    incomplete=[{"sequence": s.sequence, "status": s.status} for s in incomplete],
                )

        if self.rules.allow_parallel_approvals:
            open_siblings = [
                s for s in steps
                if s.sequence == step.sequence and s.id != step.id and s.status == StepStatus.WAITING
            ]
            if open_siblings:
                result.add("parallel_pending", f"{len(open_siblings)} parallel approval(s) pending at this level",
                           "warning", sequence=step.sequence)
        return result

    def validate_authority(
        self,
        step: ApprovalStep,
        request: ApprovalRequest,
        acting_user_id: uuid.UUID,
        delegated: bool = False,
    ) -> ValidationResult:
        result = ValidationResult()
        if step.approver_id != acting_user_id:
            if not delegated:
                result.add(
                    "approval_authority",
                    "User is not authorized to approve this step",
                    step_approver=step.approver_id,
                    acting_user=acting_user_id,
                )
            else:
                result.add("delegated_authority",
                           f"Acting on behalf of {step.approver_id} through delegation", "warning")

        if not self.rules.allow_self_approval and request.requester_id == acting_user_id:
            result.add("self_approval", "Self-approval is not allowed",
                       requester=request.requester_id, acting_user=acting_user_id)
        return result

    # ─── Request creation ───

    def validate_request_creation(
        self,
        module: str,
        details: dict[str, Any] | None,
        level_count: int,
        open_requests: int = 0,
    ) -> ValidationResult:
        result = ValidationResult()
        details = details or {}

        missing = [f for f in self.rules.required_fields_for(module) if _blank(details.get(f))]
        if missing:
            result.add("required_fields", "Missing required fields", missing_fields=missing)

        if level_count > self.rules.max_approval_steps:
            result.add(
                "max_approval_steps",
                f"Approval chain has {level_count} levels; the maximum is {self.rules.max_approval_steps}",
                levels=level_count,
            )

        if open_requests > 0:
            result.add("open_requests", f"You have {open_requests} pending request(s) in this module",
                       "warning", module=module)
        return result

    # ─── Escalation support ───

    def check_timeout(
        self,
        step: ApprovalStep,
        now: datetime | None = None,
        timeout_days: int | None = None,
    ) -> bool:
        """True once a step has been open longer than ``timeout_days`` (default from rules)."""
        now = as_utc(now) or self._clock()
        days = self.rules.approval_timeout_days if timeout_days is None else timeout_days
        return now - as_utc(step.created_at) > timedelta(days=days)
