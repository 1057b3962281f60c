"""Workflow error taxonomy and rule-violation containers.

Every check in the engine produces ``RuleViolation`` records. They are
collected into a ``ValidationResult`` before anything is written; a single
``error``-severity violation aborts the operation with the matching
``WorkflowError`` subclass, while ``warning`` violations ride along on the
result and never block.
"""
from dataclasses import dataclass, field
from typing import Any, Literal

Severity = Literal["error", "warning"]


@dataclass(frozen=True)
class RuleViolation:
    rule: str
    message: str
    severity: Severity = "error"
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "message": self.message,
            "severity": self.severity,
            "context": {k: str(v) if not isinstance(v, (int, float, bool, list, dict, type(None))) else v
                        for k, v in self.context.items()},
        }


@dataclass
class ValidationResult:
    violations: list[RuleViolation] = field(default_factory=list)

    @property
    def errors(self) -> list[RuleViolation]:
        return [v for v in self.violations if v.severity == "error"]

    @property
    def warnings(self) -> list[RuleViolation]:
        return [v for v in self.violations if v.severity == "warning"]

    @property
    def valid(self) -> bool:
        return not self.errors

    def add(self, rule: str, message: str, severity: Severity = "error", **context) -> None:
        self.violations.append(RuleViolation(rule, message, severity, context))

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        self.violations.extend(other.violations)
        return self

    def raise_for_errors(self, default: type["WorkflowError"] | None = None) -> None:
        """Raise for the first error violation, if any.

        The exception class is looked up from the violation's rule name in
        ``RULE_ERRORS``; unknown rules fall back to ``default`` (or
        ``ValidationFailedError``). All violations travel on the exception.
        """
        errors = self.errors
        if not errors:
            return
        first = errors[0]
        exc_cls = RULE_ERRORS.get(first.rule) or default or ValidationFailedError
        raise exc_cls(first.message, violations=self.violations)


class WorkflowError(Exception):
    """Base class for every error the approval engine reports to callers."""

    error_code: str = "WORKFLOW_ERROR"
    http_status: int = 400

    def __init__(self, message: str, violations: list[RuleViolation] | None = None):
        super().__init__(message)
        self.message = message
        self.violations = list(violations or [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "violations": [v.to_dict() for v in self.violations],
            }
        }


class NotFoundError(WorkflowError):
    """Request, step, matrix rule or delegation is missing."""
    error_code = "NOT_FOUND"
    http_status = 404


class ValidationFailedError(WorkflowError):
    """Missing fields, illegal action or state transition, missing notes."""
    error_code = "VALIDATION_FAILED"
    http_status = 400


class NoApplicableRuleError(WorkflowError):
    """Matrix resolution produced no rule for the request."""
    error_code = "NO_APPLICABLE_RULE"
    http_status = 422


class UnauthorizedError(WorkflowError):
    """Acting user lacks approval authority for the step."""
    error_code = "UNAUTHORIZED"
    http_status = 403


class ForbiddenError(WorkflowError):
    """Acting user may not perform this administrative action."""
    error_code = "FORBIDDEN"
    http_status = 403


class ConflictError(WorkflowError):
    """Caller-supplied version is stale; reload and resubmit."""
    error_code = "CONFLICT"
    http_status = 409


class DelegationError(WorkflowError):
    error_code = "DELEGATION_INVALID"
    http_status = 400


class SelfDelegationError(DelegationError):
    error_code = "SELF_DELEGATION"


class InvalidWindowError(DelegationError):
    error_code = "INVALID_WINDOW"


class OverlapError(DelegationError):
    error_code = "DELEGATION_OVERLAP"
    http_status = 409


class DepthExceededError(DelegationError):
    error_code = "DELEGATION_DEPTH_EXCEEDED"


class CircularDelegationError(DelegationError):
    error_code = "CIRCULAR_DELEGATION"


RULE_ERRORS: dict[str, type[WorkflowError]] = {
    "self_delegation": SelfDelegationError,
    "delegation_dates": InvalidWindowError,
    "delegation_overlap": OverlapError,
    "circular_delegation": CircularDelegationError,
    "delegation_depth": DepthExceededError,
    "approval_authority": UnauthorizedError,
    "self_approval": UnauthorizedError,
    "version_conflict": ConflictError,
}
