"""Approval matrix and delegation models."""
import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, UUIDMixin, VersionMixin


class ApproverType(str, enum.Enum):
    SPECIFIC_USER = "SPECIFIC_USER"
    POSITION = "POSITION"
    DEPARTMENT = "DEPARTMENT"


class ApprovalMatrixRule(Base, UUIDMixin, TimestampMixin):
    """Maps a module (+ optional requester filter and conditions) to one approval level."""

    __tablename__ = "approval_matrix_rules"

    module: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    requester_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    requester_position: Mapped[str | None] = mapped_column(String(50), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    approver_type: Mapped[str] = mapped_column(String(30), nullable=False)
    approver_value: Mapped[str] = mapped_column(String(255), nullable=False)
    conditions: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # {"all": [...], "any": [...]}
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class ApprovalDelegation(Base, UUIDMixin, TimestampMixin, VersionMixin):
    """Temporarily delegates approval authority from one user to another.

    The window is half-open: [start_date, end_date). A null module scope
    covers every module.
    """

    __tablename__ = "approval_delegations"

    delegator_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    delegate_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    module: Mapped[str | None] = mapped_column(String(100), nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
