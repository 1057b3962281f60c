"""Approval workflow API endpoints.

  POST /requests                               start a workflow
  GET  /requests/{request_id}                  request with its steps
  POST /requests/{request_id}/steps/{step_id}/decision
  POST /requests/{request_id}/cancel
  GET  /approvals/pending                      steps awaiting the current user
"""
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.deps import get_current_user, get_workflow_engine
from app.db.session import get_session
from app.models.approval import ApprovalStep
from app.models.request import ApprovalRequest
from app.models.user import User
from app.schemas.workflow import (
    ApprovalStepOut,
    CancelRequestIn,
    CreateWorkflowIn,
    PendingApprovalsOut,
    ProcessApprovalIn,
    RequestOut,
)
from app.services.workflow import WorkflowEngine

logger = logging.getLogger(__name__)

router = APIRouter()
approvals_router = APIRouter()


def _request_out(
    request: ApprovalRequest, steps: list[ApprovalStep], warnings: list[str] | None = None
) -> RequestOut:
    return RequestOut.model_validate(request).model_copy(update={
        "steps": [ApprovalStepOut.model_validate(s) for s in steps],
        "warnings": warnings or [],
    })


@router.post(
    "",
    response_model=RequestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a request and start its approval workflow",
)
def create_request(
    body: CreateWorkflowIn,
    db: Annotated[Session, Depends(get_session)],
    engine: Annotated[WorkflowEngine, Depends(get_workflow_engine)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    result = engine.create_workflow(db, body.module, body.request_type, body.details, current_user.id)
    return _request_out(result.request, result.steps, result.warnings)


@router.get(
    "/{request_id}",
    response_model=RequestOut,
    summary="Get a request with its approval steps",
)
def get_request(
    request_id: uuid.UUID,
    db: Annotated[Session, Depends(get_session)],
    engine: Annotated[WorkflowEngine, Depends(get_workflow_engine)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    request = engine.get_request(db, request_id)
    return _request_out(request, engine.load_steps(db, request_id))


@router.post(
    "/{request_id}/steps/{step_id}/decision",
    response_model=RequestOut,
    summary="Approve, reject or return an approval step",
)
def decide_step(
    request_id: uuid.UUID,
    step_id: uuid.UUID,
    body: ProcessApprovalIn,
    db: Annotated[Session, Depends(get_session)],
    engine: Annotated[WorkflowEngine, Depends(get_workflow_engine)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    result = engine.process_approval(
        db,
        request_id,
        step_id,
        body.action,
        current_user.id,
        expected_version=body.expected_version,
        notes=body.notes,
    )
    return _request_out(result.request, result.steps, result.warnings)


@router.post(
    "/{request_id}/cancel",
    response_model=RequestOut,
    summary="Cancel one of your own open requests",
)
def cancel_request(
    request_id: uuid.UUID,
    body: CancelRequestIn,
    db: Annotated[Session, Depends(get_session)],
    engine: Annotated[WorkflowEngine, Depends(get_workflow_engine)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    result = engine.cancel_request(
        db, request_id, current_user.id, expected_version=body.expected_version, reason=body.reason
    )
    return _request_out(result.request, result.steps, result.warnings)


@approvals_router.get(
    "/pending",
    response_model=PendingApprovalsOut,
    summary="List steps awaiting the current user (directly or by delegation)",
)
def list_pending(
    db: Annotated[Session, Depends(get_session)],
    engine: Annotated[WorkflowEngine, Depends(get_workflow_engine)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    steps = engine.list_pending_approvals(db, current_user.id)
    return PendingApprovalsOut(items=[ApprovalStepOut.model_validate(s) for s in steps], total=len(steps))
