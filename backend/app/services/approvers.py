"""Approver expansion: turn a matrix rule's approver spec into user ids.

An approver spec is one of three variants. The directory-backed expander
resolves each against users and their position assignments that are active
as of the given instant. An empty result is valid: the level simply has no
concrete approver and the workflow treats it as already satisfied.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.core.exceptions import ValidationFailedError
from app.db.base import as_utc, utcnow
from app.models.approval_matrix import ApproverType
from app.models.user import Department, Position, User, UserPosition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpecificUser:
    value: str  # user id or e-mail


@dataclass(frozen=True)
class PositionApprover:
    code: str


@dataclass(frozen=True)
class DepartmentApprover:
    code: str


ApproverSpec = SpecificUser | PositionApprover | DepartmentApprover


def approver_spec_for(approver_type: str, value: str) -> ApproverSpec:
    try:
        kind = ApproverType(approver_type)
    except ValueError:
        raise ValidationFailedError(f"Unknown approver type '{approver_type}'.")
    match kind:
        case ApproverType.SPECIFIC_USER:
            return SpecificUser(value)
        case ApproverType.POSITION:
            return PositionApprover(value)
        case ApproverType.DEPARTMENT:
            return DepartmentApprover(value)


@dataclass(frozen=True)
class RequesterProfile:
    user_id: uuid.UUID
    role: str | None = None
    position: str | None = None


class ApproverExpander(Protocol):
    def expand(self, db: Session, spec: ApproverSpec, as_of: datetime | None = None) -> list[uuid.UUID]:
        ...

    def describe_requester(
        self, db: Session, user_id: uuid.UUID, as_of: datetime | None = None
    ) -> RequesterProfile:
        ...


def _assignment_current(assignment: UserPosition, as_of: datetime) -> bool:
    if not assignment.is_active:
        return False
    start = as_utc(assignment.start_date)
    end = as_utc(assignment.end_date)
    return start <= as_of and (end is None or end >= as_of)


def _unique(ids: list[uuid.UUID]) -> list[uuid.UUID]:
    seen: set[uuid.UUID] = set()
    out: list[uuid.UUID] = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


class DirectoryApproverExpander:
    """Resolves approver specs against the users/positions/departments tables."""

    def expand(self, db: Session, spec: ApproverSpec, as_of: datetime | None = None) -> list[uuid.UUID]:
        as_of = as_utc(as_of) or utcnow()
        match spec:
            case SpecificUser(value=value):
                approvers = self._specific_user(db, value)
            case PositionApprover(code=code):
                approvers = self._holders(db, as_of, Position.code == code)
            case DepartmentApprover(code=code):
                approvers = self._holders(db, as_of, Department.code == code)
            case _:
                raise ValidationFailedError(f"Unsupported approver spec {spec!r}.")
        logger.debug("Expanded %s -> %d approver(s)", spec, len(approvers))
        return approvers

    def describe_requester(
        self, db: Session, user_id: uuid.UUID, as_of: datetime | None = None
    ) -> RequesterProfile:
        as_of = as_utc(as_of) or utcnow()
        user = db.execute(select(User).where(User.id == user_id)).scalars().first()
        if user is None:
            return RequesterProfile(user_id=user_id)

        rows = db.execute(
            select(UserPosition, Position)
            .join(Position, UserPosition.position_id == Position.id)
            .where(UserPosition.user_id == user_id)
            .order_by(UserPosition.start_date.desc())
        ).all()
        position = next(
            (pos.code for assignment, pos in rows if _assignment_current(assignment, as_of)),
            None,
        )
        return RequesterProfile(user_id=user_id, role=user.role, position=position)

    def _specific_user(self, db: Session, value: str) -> list[uuid.UUID]:
        criteria = [User.email == value]
        try:
            criteria.append(User.id == uuid.UUID(str(value)))
        except ValueError:
            pass
        user = db.execute(
            select(User).where(or_(*criteria), User.is_active.is_(True))
        ).scalars().first()
        return [user.id] if user else []

    def _holders(self, db: Session, as_of: datetime, criterion) -> list[uuid.UUID]:
        rows = db.execute(
            select(UserPosition)
            .join(Position, UserPosition.position_id == Position.id)
            .outerjoin(Department, Position.department_id == Department.id)
            .join(User, UserPosition.user_id == User.id)
            .where(criterion, User.is_active.is_(True))
            .order_by(UserPosition.start_date, UserPosition.user_id)
        ).scalars().all()
        return _unique([a.user_id for a in rows if _assignment_current(a, as_of)])
