"""Shared fixtures: an in-memory SQLite session and directory/matrix factories.

Engine tests run the real SQL (version-guarded UPDATEs, joins, counts)
against SQLite; StaticPool keeps one connection so every session sees the
same in-memory database.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  registers every table on Base.metadata
from app.core.config import WorkflowRules
from app.db.base import Base
from app.models.approval_matrix import ApprovalDelegation, ApprovalMatrixRule, ApproverType
from app.models.user import Department, Position, User, UserPosition
from app.services.events import ALL_EVENTS, EventBus
from app.services.workflow import WorkflowEngine

NOW = datetime.now(timezone.utc).replace(hour=12, minute=0, second=0, microsecond=0)


def fixed_clock() -> datetime:
    return NOW


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def two_sessions(tmp_path):
    """Two sessions on separate connections to one file-backed SQLite database.

    Each session only holds a write lock between its first UPDATE and its
    commit, so a test can interleave two writers statement by statement.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'workflow.db'}")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    first, second = Session(), Session()
    try:
        yield first, second
    finally:
        first.close()
        second.close()
        engine.dispose()


class Directory:
    """Creates users, positions, matrix rules and delegations, committing each."""

    def __init__(self, db):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def user(self, name: str, role: str = "EMPLOYEE", is_active: bool = True) -> User:
        return self._save(User(
            email=f"{name.lower()}@example.com", name=name, role=role, is_active=is_active,
        ))

    def department(self, code: str) -> Department:
        return self._save(Department(code=code, name=code.title()))

    def position(self, code: str, department: Department | None = None) -> Position:
        return self._save(Position(
            code=code, name=code.replace("_", " ").title(),
            department_id=department.id if department else None,
        ))

    def assign(
        self,
        user: User,
        position: Position,
        start: datetime | None = None,
        end: datetime | None = None,
        is_active: bool = True,
    ) -> UserPosition:
        return self._save(UserPosition(
            user_id=user.id,
            position_id=position.id,
            start_date=start or NOW - timedelta(days=365),
            end_date=end,
            is_active=is_active,
        ))

    def holder(self, name: str, position: Position, role: str = "APPROVER") -> User:
        user = self.user(name, role=role)
        self.assign(user, position)
        return user

    def rule(
        self,
        module: str,
        sequence: int,
        approver_type: ApproverType,
        approver_value: str,
        role: str | None = None,
        position: str | None = None,
        conditions: dict | None = None,
        is_active: bool = True,
    ) -> ApprovalMatrixRule:
        return self._save(ApprovalMatrixRule(
            module=module,
            sequence=sequence,
            approver_type=approver_type.value,
            approver_value=approver_value,
            requester_role=role,
            requester_position=position,
            conditions=conditions,
            is_active=is_active,
        ))

    def user_rule(self, module: str, sequence: int, user: User, **kwargs) -> ApprovalMatrixRule:
        return self.rule(module, sequence, ApproverType.SPECIFIC_USER, str(user.id), **kwargs)

    def delegation(
        self,
        delegator: User | uuid.UUID,
        delegate: User | uuid.UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        module: str | None = None,
        is_active: bool = True,
    ) -> ApprovalDelegation:
        delegator_id = getattr(delegator, "id", delegator)
        delegate_id = getattr(delegate, "id", delegate)
        return self._save(ApprovalDelegation(
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            module=module,
            start_date=start or NOW - timedelta(days=1),
            end_date=end or NOW + timedelta(days=7),
            is_active=is_active,
            created_by=delegator_id,
        ))


@pytest.fixture
def directory(db):
    return Directory(db)


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.type.value for e in self.events]

    def clear(self):
        self.events.clear()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def bus(recorder):
    bus = EventBus()
    bus.subscribe(ALL_EVENTS, recorder)
    return bus


@pytest.fixture
def make_engine(bus):
    """Build a WorkflowEngine on the fixed clock, optionally with rule overrides."""
    def _make(clock=fixed_clock, **rule_changes) -> WorkflowEngine:
        rules = WorkflowRules().with_updates(**rule_changes)
        return WorkflowEngine(rules=rules, bus=bus, clock=clock)
    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def make_directory():
    return Directory
