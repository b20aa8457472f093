"""Structured predicates for condition steps and trigger filters.

Predicates are plain data: a field comparison or a boolean combination of
other predicates. They are interpreted by :func:`evaluate`; nothing an
author writes is ever executed as code.

Examples::

    {"field": "age", "operator": "gte", "value": 18}
    {"and": [{"field": "status", "operator": "eq", "value": "draft"},
             {"not": {"field": "title", "operator": "startsWith", "value": "WIP"}}]}
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any, List, Union

from pydantic import BaseModel, ConfigDict, Field


class ConditionOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"


class FieldCondition(BaseModel):
    """Compare ``data[field]`` against a literal ``value``."""

    model_config = ConfigDict(extra="forbid")

    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None


class AllOf(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    all_of: List["Condition"] = Field(alias="and", min_length=1)


class AnyOf(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    any_of: List["Condition"] = Field(alias="or", min_length=1)


class NotCondition(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    negated: "Condition" = Field(alias="not")


Condition = Union[FieldCondition, AllOf, AnyOf, NotCondition]

AllOf.model_rebuild()
AnyOf.model_rebuild()
NotCondition.model_rebuild()


def resolve_field(data: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted ``path`` in nested mappings, ``None`` when absent."""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    if operator is ConditionOperator.EQ:
        return actual == expected
    if operator is ConditionOperator.NEQ:
        return actual != expected

    if operator in (
        ConditionOperator.GT,
        ConditionOperator.GTE,
        ConditionOperator.LT,
        ConditionOperator.LTE,
    ):
        if actual is None or expected is None:
            return False
        try:
            if operator is ConditionOperator.GT:
                return actual > expected
            if operator is ConditionOperator.GTE:
                return actual >= expected
            if operator is ConditionOperator.LT:
                return actual < expected
            return actual <= expected
        except TypeError:
            # mismatched types never satisfy an ordering comparison
            return False

    if actual is None:
        return False
    if operator is ConditionOperator.CONTAINS:
        if isinstance(actual, (list, tuple, set, frozenset)):
            return expected in actual
        return str(expected) in str(actual)
    if operator is ConditionOperator.STARTS_WITH:
        return str(actual).startswith(str(expected))
    return str(actual).endswith(str(expected))


def evaluate(condition: Condition, data: Mapping[str, Any]) -> bool:
    """Evaluate ``condition`` against ``data``."""
    if isinstance(condition, AllOf):
        return all(evaluate(item, data) for item in condition.all_of)
    if isinstance(condition, AnyOf):
        return any(evaluate(item, data) for item in condition.any_of)
    if isinstance(condition, NotCondition):
        return not evaluate(condition.negated, data)
    actual = resolve_field(data, condition.field)
    return _compare(condition.operator, actual, condition.value)
