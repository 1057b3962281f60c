import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, UUIDMixin, VersionMixin


class StepStatus(str, enum.Enum):
    PENDING = "PENDING"    # later level, not yet reachable
    WAITING = "WAITING"    # current level, awaiting a decision
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"
    SKIPPED = "SKIPPED"    # closed by a rejection elsewhere in the request


TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.APPROVED, StepStatus.REJECTED, StepStatus.RETURNED, StepStatus.SKIPPED}
)


class ApprovalAction(str, enum.Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    RETURN = "RETURN"


ACTION_RESULT_STATUS = {
    ApprovalAction.APPROVE: StepStatus.APPROVED,
    ApprovalAction.REJECT: StepStatus.REJECTED,
    ApprovalAction.RETURN: StepStatus.RETURNED,
}


class ApprovalStep(Base, UUIDMixin, TimestampMixin, VersionMixin):
    """One approver's slot at one sequence level of a request."""

    __tablename__ = "approval_steps"
    __table_args__ = (
        UniqueConstraint("request_id", "approver_id", "sequence", name="uq_approval_steps_request_approver_seq"),
    )

    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    approver_type: Mapped[str] = mapped_column(String(30), nullable=False)  # SPECIFIC_USER, POSITION, DEPARTMENT
    matrix_rule_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("approval_matrix_rules.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=StepStatus.PENDING, index=True)
    action: Mapped[str | None] = mapped_column(String(20), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    acted_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True
    )  # differs from approver_id when decided through a delegation
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    request: Mapped["ApprovalRequest"] = relationship("ApprovalRequest", back_populates="steps")  # noqa: F821
