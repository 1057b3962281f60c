"""Delegation of approval authority.

  POST /delegations                      delegate from the current user
  GET  /delegations                      as_delegator / as_delegate
  POST /delegations/{delegation_id}/revoke
"""
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.deps import get_current_user, get_delegation_service
from app.db.session import get_session
from app.models.user import User
from app.schemas.delegation import (
    DelegationCreatedOut,
    DelegationIn,
    DelegationListOut,
    DelegationOut,
)
from app.services.delegation import DelegationService

router = APIRouter()


@router.post(
    "",
    response_model=DelegationCreatedOut,
    status_code=status.HTTP_201_CREATED,
    summary="Delegate your approval authority for a period",
)
def create_delegation(
    body: DelegationIn,
    db: Annotated[Session, Depends(get_session)],
    service: Annotated[DelegationService, Depends(get_delegation_service)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    result = service.create_delegation(
        db,
        delegator_id=current_user.id,
        delegate_id=body.delegate_id,
        start=body.start_date,
        end=body.end_date,
        module=body.module,
        reason=body.reason,
        created_by=current_user.id,
    )
    return DelegationCreatedOut(
        delegation=DelegationOut.model_validate(result.delegation), warnings=result.warnings
    )


@router.get(
    "",
    response_model=DelegationListOut,
    summary="List your active delegations, given and received",
)
def list_delegations(
    db: Annotated[Session, Depends(get_session)],
    service: Annotated[DelegationService, Depends(get_delegation_service)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    found = service.list_for_user(db, current_user.id)
    return DelegationListOut(
        as_delegator=[DelegationOut.model_validate(d) for d in found["as_delegator"]],
        as_delegate=[DelegationOut.model_validate(d) for d in found["as_delegate"]],
    )


@router.post(
    "/{delegation_id}/revoke",
    response_model=DelegationOut,
    summary="Revoke one of your delegations",
)
def revoke_delegation(
    delegation_id: uuid.UUID,
    db: Annotated[Session, Depends(get_session)],
    service: Annotated[DelegationService, Depends(get_delegation_service)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    delegation = service.revoke_delegation(db, delegation_id, current_user.id)
    return DelegationOut.model_validate(delegation)
