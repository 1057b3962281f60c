"""Delegation of approval authority.

``DelegationResolver`` answers two questions:

* may user X act on a step assigned to user Y right now, in module M?
  (a direct, active, in-window delegation Y -> X scoped to M or to all modules)
* may a new delegation be created? (self-delegation, window, overlap, cycle
  and chain-depth checks, all aggregated before anything is written)

Delegation rows are user-editable data, so every graph traversal here is an
explicit level-by-level walk with a visited set and a hop counter capped at
``max_delegation_depth``.

``DelegationService`` wraps the resolver with the create / revoke / list /
expire operations and publishes events after commit.
"""
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.core.config import WorkflowRules
from app.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    ValidationFailedError,
    ValidationResult,
)
from app.db.base import as_utc, utcnow
from app.models.approval_matrix import ApprovalDelegation
from app.models.user import User
from app.services.concurrency import ConcurrencyGuard
from app.services.events import EventBus, EventType, WorkflowEvent

logger = logging.getLogger(__name__)


def windows_intersect(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open [start, end) intersection."""
    return as_utc(a_start) < as_utc(b_end) and as_utc(b_start) < as_utc(a_end)


def scopes_intersect(a: str | None, b: str | None) -> bool:
    """A null module scope covers every module."""
    return a is None or b is None or a == b


def covers(delegation: ApprovalDelegation, module: str | None, now: datetime) -> bool:
    return (
        delegation.is_active
        and as_utc(delegation.start_date) <= now < as_utc(delegation.end_date)
        and (delegation.module is None or delegation.module == module)
    )


class DelegationResolver:
    def __init__(self, rules: WorkflowRules | None = None, clock: Callable[[], datetime] = utcnow):
        self.rules = rules or WorkflowRules()
        self._clock = clock

    # ─── Authority ───

    def find_active(
        self,
        db: Session,
        delegator_id: uuid.UUID,
        delegate_id: uuid.UUID,
        module: str | None,
        now: datetime | None = None,
    ) -> ApprovalDelegation | None:
        now = as_utc(now) or self._clock()
        candidates = db.execute(
            select(ApprovalDelegation).where(
                ApprovalDelegation.delegator_id == delegator_id,
                ApprovalDelegation.delegate_id == delegate_id,
                ApprovalDelegation.is_active.is_(True),
            )
        ).scalars().all()
        return next((d for d in candidates if covers(d, module, now)), None)

    def is_authorized(
        self,
        db: Session,
        assigned_approver_id: uuid.UUID,
        acting_user_id: uuid.UUID,
        module: str | None,
        now: datetime | None = None,
    ) -> bool:
        if assigned_approver_id == acting_user_id:
            return True
        return self.find_active(db, assigned_approver_id, acting_user_id, module, now) is not None

    # ─── Creation checks ───

    def validate_new_delegation(
        self,
        db: Session,
        delegator_id: uuid.UUID,
        delegate_id: uuid.UUID,
        module: str | None,
        start: datetime,
        end: datetime,
        exclude_id: uuid.UUID | None = None,
    ) -> ValidationResult:
        result = ValidationResult()
        start, end = as_utc(start), as_utc(end)

        if delegator_id == delegate_id:
            result.add("self_delegation", "Cannot delegate to yourself",
                       delegator_id=delegator_id, delegate_id=delegate_id)
        if start >= end:
            result.add("delegation_dates", "End date must be after start date",
                       start_date=start, end_date=end)
        if not result.valid:
            # Overlap and chain checks are meaningless without a sane edge.
            return result

        existing = [
            d for d in self._active_from(db, [delegator_id])
            if d.id != exclude_id and windows_intersect(d.start_date, d.end_date, start, end)
        ]
        for other in existing:
            if scopes_intersect(other.module, module):
                result.add(
                    "delegation_overlap",
                    "Overlapping delegation already exists for this period",
                    delegation_id=other.id,
                    module=other.module,
                )
                break
        else:
            if existing:
                result.add("overlapping_period", "Overlapping delegation period detected", "warning",
                           delegation_ids=[str(d.id) for d in existing])

        if self._has_reverse_edge(db, delegator_id, delegate_id, start, end, exclude_id):
            result.add("circular_delegation", "Circular delegation detected",
                       delegator_id=delegator_id, delegate_id=delegate_id)
        else:
            downstream, loops_back = self._walk(db, delegate_id, "down", start, end, exclude_id, stop_at=delegator_id)
            if loops_back:
                result.add("circular_delegation", "Circular delegation detected",
                           delegator_id=delegator_id, delegate_id=delegate_id)
            else:
                upstream, _ = self._walk(db, delegator_id, "up", start, end, exclude_id)
                existing_hops = upstream + downstream
                if existing_hops >= self.rules.max_delegation_depth:
                    result.add(
                        "delegation_depth",
                        f"Maximum delegation depth ({self.rules.max_delegation_depth}) exceeded",
                        current_depth=existing_hops,
                        resulting_depth=existing_hops + 1,
                    )
        return result

    def _has_reverse_edge(self, db, delegator_id, delegate_id, start, end, exclude_id) -> bool:
        return any(
            d.delegate_id == delegator_id
            and d.id != exclude_id
            and windows_intersect(d.start_date, d.end_date, start, end)
            for d in self._active_from(db, [delegate_id])
        )

    def _walk(
        self,
        db: Session,
        origin: uuid.UUID,
        direction: str,
        start: datetime,
        end: datetime,
        exclude_id: uuid.UUID | None = None,
        stop_at: uuid.UUID | None = None,
    ) -> tuple[int, bool]:
        """Count delegation hops reachable from ``origin``.

        ``direction="down"`` follows delegator -> delegate edges, ``"up"``
        follows them backwards. Only active edges whose window intersects
        [start, end) count. Returns (hops, reached ``stop_at``). The walk
        stops at ``max_delegation_depth`` hops whatever the data looks like.
        """
        limit = self.rules.max_delegation_depth
        visited = {origin}
        frontier = {origin}
        hops = 0
        while frontier and hops < limit:
            if direction == "down":
                edges = self._active_from(db, frontier)
                neighbours = [e.delegate_id for e in edges if self._edge_counts(e, start, end, exclude_id)]
            else:
                edges = self._active_to(db, frontier)
                neighbours = [e.delegator_id for e in edges if self._edge_counts(e, start, end, exclude_id)]

            if stop_at is not None and stop_at in neighbours:
                return hops + 1, True

            frontier = {n for n in neighbours if n not in visited}
            if not frontier:
                break
            visited |= frontier
            hops += 1
        logger.debug("Delegation walk %s from %s: %d hop(s)", direction, origin, hops)
        return hops, False

    @staticmethod
    def _edge_counts(edge: ApprovalDelegation, start: datetime, end: datetime, exclude_id) -> bool:
        return edge.id != exclude_id and windows_intersect(edge.start_date, edge.end_date, start, end)

    @staticmethod
    def _active_from(db: Session, delegator_ids: Iterable[uuid.UUID]) -> list[ApprovalDelegation]:
        return list(db.execute(
            select(ApprovalDelegation).where(
                ApprovalDelegation.delegator_id.in_(list(delegator_ids)),
                ApprovalDelegation.is_active.is_(True),
            )
        ).scalars().all())

    @staticmethod
    def _active_to(db: Session, delegate_ids: Iterable[uuid.UUID]) -> list[ApprovalDelegation]:
        return list(db.execute(
            select(ApprovalDelegation).where(
                ApprovalDelegation.delegate_id.in_(list(delegate_ids)),
                ApprovalDelegation.is_active.is_(True),
            )
        ).scalars().all())


@dataclass
class DelegationResult:
    delegation: ApprovalDelegation
    warnings: list[str] = field(default_factory=list)


class DelegationService:
    def __init__(
        self,
        resolver: DelegationResolver | None = None,
        bus: EventBus | None = None,
        guard: ConcurrencyGuard | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.resolver = resolver or DelegationResolver(clock=clock)
        self.bus = bus or EventBus()
        self.guard = guard or ConcurrencyGuard()
        self._clock = clock

    def create_delegation(
        self,
        db: Session,
        delegator_id: uuid.UUID,
        delegate_id: uuid.UUID,
        start: datetime,
        end: datetime,
        module: str | None = None,
        reason: str | None = None,
        created_by: uuid.UUID | None = None,
    ) -> DelegationResult:
        """Validate and persist a delegation.

        The delegator and delegate rows are locked (``SELECT ... FOR UPDATE``,
        in id order) before the overlap and cycle reads, so concurrent
        creations touching the same users run one after the other on
        PostgreSQL. SQLite ignores the lock and relies on its single writer.
        Cycles closed by three or more unrelated concurrent creations are not
        serialised by this lock.

        Raises:
            SelfDelegationError, InvalidWindowError, OverlapError,
            CircularDelegationError, DepthExceededError: first blocking
            violation; all violations are attached to the exception.
        """
        start, end = as_utc(start), as_utc(end)
        try:
            self._lock_users(db, delegator_id, delegate_id)
            check = self.resolver.validate_new_delegation(db, delegator_id, delegate_id, module, start, end)
            check.raise_for_errors()

            delegation = ApprovalDelegation(
                delegator_id=delegator_id,
                delegate_id=delegate_id,
                module=module,
                start_date=start,
                end_date=end,
                reason=reason,
                is_active=True,
                created_by=created_by or delegator_id,
                version=1,
            )
            db.add(delegation)
            db.flush()
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(
            "Delegation created: %s -> %s module=%s window=[%s, %s)",
            delegator_id, delegate_id, module or "*", start.isoformat(), end.isoformat(),
        )
        self.bus.publish([
            WorkflowEvent(
                EventType.DELEGATION_CREATED, "delegation", delegation.id, created_by or delegator_id,
                {"delegator_id": delegator_id, "delegate_id": delegate_id, "module": module,
                 "start_date": start, "end_date": end},
            )
        ])
        return DelegationResult(delegation, [w.message for w in check.warnings])

    @staticmethod
    def _lock_users(db: Session, *user_ids: uuid.UUID) -> None:
        db.execute(
            select(User.id)
            .where(User.id.in_(user_ids))
            .order_by(User.id)
            .with_for_update()
        ).all()

    def revoke_delegation(self, db: Session, delegation_id: uuid.UUID, by_user_id: uuid.UUID) -> ApprovalDelegation:
        delegation = db.execute(
            select(ApprovalDelegation).where(ApprovalDelegation.id == delegation_id)
        ).scalars().first()
        if delegation is None:
            raise NotFoundError(f"Delegation {delegation_id} not found.")
        if delegation.delegator_id != by_user_id:
            raise ForbiddenError("You can only revoke your own delegations.")
        if not delegation.is_active:
            raise ValidationFailedError(f"Delegation {delegation_id} is already inactive.")

        now = self._clock()
        values = {"is_active": False, "revoked_at": now}
        if as_utc(delegation.start_date) <= now < as_utc(delegation.end_date):
            values["end_date"] = now  # ends immediately
        try:
            self.guard.apply(db, delegation, delegation.version, **values)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info("Delegation %s revoked by %s", delegation_id, by_user_id)
        self.bus.publish([
            WorkflowEvent(EventType.DELEGATION_REVOKED, "delegation", delegation.id, by_user_id,
                          {"delegator_id": delegation.delegator_id, "delegate_id": delegation.delegate_id})
        ])
        return delegation

    def list_for_user(self, db: Session, user_id: uuid.UUID) -> dict[str, list[ApprovalDelegation]]:
        now = self._clock()
        rows = db.execute(
            select(ApprovalDelegation).where(
                or_(ApprovalDelegation.delegator_id == user_id, ApprovalDelegation.delegate_id == user_id),
                ApprovalDelegation.is_active.is_(True),
            ).order_by(ApprovalDelegation.start_date)
        ).scalars().all()
        return {
            "as_delegator": [d for d in rows if d.delegator_id == user_id],
            "as_delegate": [
                d for d in rows
                if d.delegate_id == user_id and as_utc(d.start_date) <= now < as_utc(d.end_date)
            ],
        }

    def cleanup_expired(self, db: Session, now: datetime | None = None) -> int:
        """Deactivate active delegations whose window has ended. Returns how many."""
        now = as_utc(now) or self._clock()
        rows = db.execute(
            select(ApprovalDelegation).where(ApprovalDelegation.is_active.is_(True))
        ).scalars().all()
        expired = [d for d in rows if as_utc(d.end_date) <= now]

        events = []
        try:
            for d in expired:
                self.guard.apply(db, d, d.version, is_active=False)
                events.append(WorkflowEvent(
                    EventType.DELEGATION_EXPIRED, "delegation", d.id, None,
                    {"delegator_id": d.delegator_id, "delegate_id": d.delegate_id, "expired_at": now},
                ))
            db.commit()
        except Exception:
            db.rollback()
            raise

        if expired:
            logger.info("Expired %d delegation(s)", len(expired))
        self.bus.publish(events)
        return len(expired)
