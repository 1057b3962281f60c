"""Pydantic schemas for approval delegations."""
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class DelegationIn(BaseModel):
    delegate_id: uuid.UUID
    module: str | None = None
    start_date: datetime
    end_date: datetime
    reason: str | None = None


class DelegationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    delegator_id: uuid.UUID
    delegate_id: uuid.UUID
    module: str | None
    start_date: datetime
    end_date: datetime
    reason: str | None
    is_active: bool
    version: int
    revoked_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DelegationCreatedOut(BaseModel):
    delegation: DelegationOut
    warnings: list[str] = []


class DelegationListOut(BaseModel):
    as_delegator: list[DelegationOut]
    as_delegate: list[DelegationOut]
