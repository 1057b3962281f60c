"""Approval matrix resolution.

Given a module and what we know about the requester, pick the active matrix
rules that apply to a request and order them:

  1. requester-position-specific rules, then requester-role-specific rules,
     then generic rules;
  2. ascending sequence within each group.

Rules may carry a condition tree evaluated against the request details:

    {"all": [{"field": "amount", "operator": "gt", "value": 1000}],
     "any": [{"field": "category", "operator": "in", "value": ["IT", "OPS"]}]}

No eval(): operators are a closed set. A field path that does not exist in
the details is *missing*, which only satisfies ``ne``/``nin`` against a
defined value.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.exceptions import NoApplicableRuleError
from app.models.approval_matrix import ApprovalMatrixRule
from app.schemas.approval_matrix import Condition, MatrixConditions

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


def get_field_value(details: dict[str, Any] | None, path: str) -> Any:
    """Resolve a dot-path ("trip.cost.total") into ``details``; MISSING if any hop is absent."""
    value: Any = details or {}
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return MISSING
    return value


def _as_number(value: Any) -> Decimal | None:
    if value is MISSING or value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    # "1000" and 1000 compare equal, like a form value against a numeric threshold
    a, b = _as_number(left), _as_number(right)
    return a is not None and b is not None and a == b


def _compare(left: Any, right: Any, op: str) -> bool:
    a, b = _as_number(left), _as_number(right)
    if a is None or b is None:
        return False
    if op == "gt":
        return a > b
    if op == "gte":
        return a >= b
    if op == "lt":
        return a < b
    return a <= b


def evaluate_condition(condition: Condition, details: dict[str, Any] | None) -> bool:
    field_value = get_field_value(details, condition.field)
    expected = condition.value
    op = condition.operator

    if field_value is MISSING:
        if op == "ne":
            return expected is not None
        if op == "nin":
            return isinstance(expected, list)
        return False

    if op == "eq":
        return _equals(field_value, expected)
    if op == "ne":
        return not _equals(field_value, expected)
    if op in ("gt", "gte", "lt", "lte"):
        return _compare(field_value, expected, op)
    if op == "in":
        return isinstance(expected, list) and any(_equals(field_value, item) for item in expected)
    if op == "nin":
        if not isinstance(expected, list):
            return True
        return not any(_equals(field_value, item) for item in expected)
    return False


def evaluate_conditions(conditions: MatrixConditions | dict | None, details: dict[str, Any] | None) -> bool:
    """True iff every ``all`` predicate holds and, when ``any`` is non-empty, one of them holds."""
    if not conditions:
        return True
    if isinstance(conditions, dict):
        conditions = MatrixConditions.model_validate(conditions)
    if not all(evaluate_condition(c, details) for c in conditions.all):
        return False
    if conditions.any and not any(evaluate_condition(c, details) for c in conditions.any):
        return False
    return True


def specificity_rank(rule: ApprovalMatrixRule) -> int:
    if rule.requester_position:
        return 0
    if rule.requester_role:
        return 1
    return 2


class MatrixResolver:
    def applicable_rules(
        self,
        rules: list[ApprovalMatrixRule],
        requester_role: str | None = None,
        requester_position: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> list[ApprovalMatrixRule]:
        """Filter and order already-loaded rules. Pure; no database access."""
        selected: list[ApprovalMatrixRule] = []
        for rule in rules:
            if not rule.is_active:
                continue
            if rule.requester_role is not None and rule.requester_role != requester_role:
                continue
            if rule.requester_position is not None and rule.requester_position != requester_position:
                continue
            try:
                matches = evaluate_conditions(rule.conditions, details)
            except ValidationError as exc:
                # A malformed condition tree never widens who must approve.
                logger.warning("Matrix rule %s has invalid conditions, skipping: %s", rule.id, exc)
                continue
            if matches:
                selected.append(rule)
        return sorted(selected, key=lambda r: (specificity_rank(r), r.sequence))

    def resolve(
        self,
        db: Session,
        module: str,
        requester_role: str | None = None,
        requester_position: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> list[ApprovalMatrixRule]:
        """Load the module's active rules and return the applicable ones.

        Raises:
            NoApplicableRuleError: nothing applies; the request cannot be created.
        """
        stmt = select(ApprovalMatrixRule).where(
            ApprovalMatrixRule.module == module,
            ApprovalMatrixRule.is_active.is_(True),
        ).order_by(ApprovalMatrixRule.sequence)
        rules = list(db.execute(stmt).scalars().all())

        applicable = self.applicable_rules(rules, requester_role, requester_position, details)
        logger.debug(
            "Matrix resolution: module=%s role=%s position=%s loaded=%d applicable=%d",
            module, requester_role, requester_position, len(rules), len(applicable),
        )
        if not applicable:
            raise NoApplicableRuleError(
                f"No approval matrix rule applies to module {module}."
            )
        return applicable
