from fastapi import APIRouter

from app.api.v1 import delegations, workflows

api_router = APIRouter()

api_router.include_router(workflows.router, prefix="/requests", tags=["requests"])
api_router.include_router(workflows.approvals_router, prefix="/approvals", tags=["approvals"])
api_router.include_router(delegations.router, prefix="/delegations", tags=["delegations"])
