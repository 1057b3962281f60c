"""Celery beat tasks: approval timeout sweep and delegation expiry.

The timeout sweep only reports. It emits ``approval.step.timed_out`` once per
step (an existing audit entry for the step suppresses repeats) and leaves the
step and its request untouched.
"""
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.base import utcnow
from app.models.approval import ApprovalStep, StepStatus
from app.models.audit import AuditLog
from app.models.request import ApprovalRequest, RequestStatus
from app.services.events import EventType, WorkflowEvent
from app.services.rules import RuleValidator
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def collect_timed_out_steps(
    db: Session, validator: RuleValidator, now: datetime | None = None
) -> list[ApprovalStep]:
    """WAITING steps on open requests that are past the timeout and not yet reported."""
    now = now or utcnow()
    waiting = db.execute(
        select(ApprovalStep)
        .join(ApprovalRequest, ApprovalStep.request_id == ApprovalRequest.id)
        .where(
            ApprovalStep.status == StepStatus.WAITING.value,
            ApprovalStep.sequence == ApprovalRequest.current_step,
            ApprovalRequest.status.in_([RequestStatus.PENDING.value, RequestStatus.IN_PROGRESS.value]),
        )
        .order_by(ApprovalStep.created_at)
    ).scalars().all()

    overdue = [s for s in waiting if validator.check_timeout(s, now)]
    if not overdue:
        return []

    reported = set(db.execute(
        select(AuditLog.entity_id).where(
            AuditLog.action == EventType.STEP_TIMED_OUT.value,
            AuditLog.entity_id.in_([s.id for s in overdue]),
        )
    ).scalars().all())
    return [s for s in overdue if s.id not in reported]


def timed_out_events(steps: list[ApprovalStep], timeout_days: int, now: datetime) -> list[WorkflowEvent]:
    return [
        WorkflowEvent(
            EventType.STEP_TIMED_OUT, "approval_step", s.id, None,
            {"request_id": s.request_id, "sequence": s.sequence, "approver_id": s.approver_id,
             "waiting_since": s.created_at, "timeout_days": timeout_days},
            occurred_at=now,
        )
        for s in steps
    ]


@celery_app.task(name="app.workers.escalation_tasks.check_approval_timeouts")
def check_approval_timeouts():
    """Report WAITING steps older than APPROVAL_TIMEOUT_DAYS. Runs hourly."""
    logger.info("check_approval_timeouts: starting sweep")
    try:
        from app.core.config import WorkflowRules
        from app.db.session import SessionLocal
        from app.workers.event_tasks import build_event_bus

        rules = WorkflowRules.from_settings()
        validator = RuleValidator(rules)
        now = utcnow()

        with SessionLocal() as db:
            steps = collect_timed_out_steps(db, validator, now)
            events = timed_out_events(steps, rules.approval_timeout_days, now)

        build_event_bus().publish(events)
        for s in steps:
            logger.warning("Approval step %s (request %s, seq %s) exceeded %d day timeout",
                           s.id, s.request_id, s.sequence, rules.approval_timeout_days)

        logger.info("check_approval_timeouts: complete: timed_out=%d", len(steps))
        return {"timed_out": len(steps)}

    except Exception as exc:
        logger.exception("check_approval_timeouts failed: %s", exc)
        return {"status": "error", "error": str(exc)}


@celery_app.task(name="app.workers.escalation_tasks.expire_delegations")
def expire_delegations():
    """Deactivate delegations whose window has ended. Runs daily."""
    logger.info("expire_delegations: starting")
    try:
        from app.core.config import WorkflowRules
        from app.db.session import SessionLocal
        from app.services.delegation import DelegationResolver, DelegationService
        from app.workers.event_tasks import build_event_bus

        service = DelegationService(
            DelegationResolver(WorkflowRules.from_settings()), bus=build_event_bus()
        )
        with SessionLocal() as db:
            expired = service.cleanup_expired(db)

        logger.info("expire_delegations: complete: expired=%d", expired)
        return {"expired": expired}

    except Exception as exc:
        logger.exception("expire_delegations failed: %s", exc)
        return {"status": "error", "error": str(exc)}
