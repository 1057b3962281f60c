"""Pydantic schemas for approval requests and steps."""
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models.approval import ApprovalAction


class CreateWorkflowIn(BaseModel):
    module: str = Field(min_length=1, max_length=100)
    request_type: str = Field(min_length=1, max_length=100)
    details: dict[str, Any] = Field(default_factory=dict)


class ProcessApprovalIn(BaseModel):
    action: ApprovalAction
    notes: str | None = None
    expected_version: int = Field(ge=1)


class CancelRequestIn(BaseModel):
    reason: str | None = None
    expected_version: int = Field(ge=1)


class ApprovalStepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    request_id: uuid.UUID
    sequence: int
    approver_id: uuid.UUID
    approver_type: str
    status: str
    action: str | None
    notes: str | None
    acted_by_id: uuid.UUID | None
    decided_at: datetime | None
    version: int
    created_at: datetime


class RequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    request_number: str
    module: str
    request_type: str
    details: dict[str, Any]
    status: str
    current_step: int
    requester_id: uuid.UUID
    version: int
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    created_at: datetime
    updated_at: datetime
    steps: list[ApprovalStepOut] = []
    warnings: list[str] = []


class PendingApprovalsOut(BaseModel):
    items: list[ApprovalStepOut]
    total: int
