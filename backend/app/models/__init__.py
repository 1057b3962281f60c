from app.models.user import User, Department, Position, UserPosition, ROLES
from app.models.request import ApprovalRequest, RequestStatus, TERMINAL_REQUEST_STATUSES
from app.models.approval import (
    ApprovalStep, StepStatus, ApprovalAction, TERMINAL_STEP_STATUSES, ACTION_RESULT_STATUS,
)
from app.models.approval_matrix import ApprovalMatrixRule, ApprovalDelegation, ApproverType
from app.models.audit import AuditLog

__all__ = [
    "User", "Department", "Position", "UserPosition", "ROLES",
    "ApprovalRequest", "RequestStatus", "TERMINAL_REQUEST_STATUSES",
    "ApprovalStep", "StepStatus", "ApprovalAction", "TERMINAL_STEP_STATUSES", "ACTION_RESULT_STATUS",
    "ApprovalMatrixRule", "ApprovalDelegation", "ApproverType",
    "AuditLog",
]
