"""Pydantic schemas for approval matrix rules and their condition trees."""
from typing import Any, Literal

from pydantic import BaseModel, Field

ConditionOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "in", "nin"]


class Condition(BaseModel):
    field: str = Field(min_length=1)  # dot-path into the request details
    operator: ConditionOperator
    value: Any


class MatrixConditions(BaseModel):
    """Predicate tree: every ``all`` predicate and (if present) one ``any`` predicate must hold."""

    all: list[Condition] = Field(default_factory=list)
    any: list[Condition] = Field(default_factory=list)

