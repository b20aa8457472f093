"""Validation and traversal helpers for workflow step graphs."""

from __future__ import annotations

from collections import deque
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from .contracts import (
    ActionStep,
    ApprovalStep,
    ConditionStep,
    DelayStep,
    ForkStep,
    JoinStep,
    NotificationStep,
    Step,
    WorkflowDefinition,
)
from .errors import GraphError, GraphIssue


def parse_definition(payload: Mapping[str, Any]) -> WorkflowDefinition:
    """Build a :class:`WorkflowDefinition` from raw data.

    Schema errors are reported as :class:`GraphError` so callers only have
    to handle one failure type for invalid definitions.
    """
    try:
        return WorkflowDefinition.model_validate(dict(payload))
    except ValidationError as exc:
        issues = [
            GraphIssue(
                field=".".join(str(part) for part in error["loc"]) or "definition",
                message=error["msg"],
            )
            for error in exc.errors()
        ]
        raise GraphError(issues) from exc


def branch_targets(step: Step) -> List[str]:
    """Every step id ``step`` can hand control to."""
    targets = list(step.next_steps)
    if isinstance(step, ConditionStep):
        for target in (step.true_step_id, step.false_step_id):
            if target and target not in targets:
                targets.append(target)
    return targets


def _step_config_issues(step: Step) -> List[GraphIssue]:
    issues: List[GraphIssue] = []

    def issue(field: str, message: str) -> None:
        issues.append(
            GraphIssue(field=f"steps.{step.id}.{field}", message=message, step_id=step.id)
        )

    if step.timeout_seconds is not None and step.timeout_seconds <= 0:
        issue("timeout_seconds", "must be positive")
    if len(set(step.next_steps)) != len(step.next_steps):
        issue("next_steps", "must not contain duplicates")

    if isinstance(step, ApprovalStep):
        if not step.approvers:
            issue("approvers", "approval step must have at least one approver")
    elif isinstance(step, NotificationStep):
        if not step.recipients:
            issue("recipients", "notification step must have at least one recipient")
        if not step.message:
            issue("message", "notification step must have a message")
    elif isinstance(step, ConditionStep):
        if step.condition is None:
            issue("condition", "condition step must have a condition")
        elif isinstance(step.condition, str):
            issue(
                "condition",
                "expression strings are not supported, use a structured predicate",
            )
        if not step.true_step_id:
            issue("true_step_id", "condition step must have a true branch")
        if not step.false_step_id:
            issue("false_step_id", "condition step must have a false branch")
    elif isinstance(step, ActionStep):
        if not step.action:
            issue("action", "action step must name an action")
    elif isinstance(step, DelayStep):
        if step.duration is None or step.duration <= 0:
            issue("duration", "delay step must have a positive duration")
        if step.unit is None:
            issue("unit", "delay step must have a unit (seconds, minutes, hours, days)")
    elif isinstance(step, ForkStep):
        if len(step.next_steps) < 2:
            issue("next_steps", "fork step must have at least two branches")
    return issues


def collect_issues(definition: WorkflowDefinition) -> List[GraphIssue]:
    """Return every structural problem in ``definition``."""
    issues: List[GraphIssue] = []
    step_ids = [step.id for step in definition.steps]
    known = set(step_ids)

    if not definition.steps:
        issues.append(GraphIssue(field="steps", message="workflow must have at least one step"))

    seen: set[str] = set()
    for step_id in step_ids:
        if step_id in seen:
            issues.append(
                GraphIssue(field="steps", message=f"duplicate step id '{step_id}'", step_id=step_id)
            )
        seen.add(step_id)

    if not definition.start_step_id:
        issues.append(GraphIssue(field="start_step_id", message="start step is required"))
    elif definition.start_step_id not in known:
        issues.append(
            GraphIssue(
                field="start_step_id",
                message=f"start step '{definition.start_step_id}' not found in workflow steps",
            )
        )

    for step in definition.steps:
        for target in branch_targets(step):
            if target not in known:
                issues.append(
                    GraphIssue(
                        field=f"steps.{step.id}.next_steps",
                        message=f"next step '{target}' not found in workflow steps",
                        step_id=step.id,
                    )
                )
        issues.extend(_step_config_issues(step))
    return issues


def validate_definition(definition: WorkflowDefinition) -> WorkflowDefinition:
    """Raise :class:`GraphError` if ``definition`` is not executable."""
    issues = collect_issues(definition)
    if issues:
        raise GraphError(issues)
    return definition


def _reachable_joins(definition: WorkflowDefinition, start_id: str) -> List[str]:
    """Join steps reachable from ``start_id`` in breadth-first order.

    Traversal stops at the first join on each path.
    """
    order: List[str] = []
    visited: set[str] = set()
    queue: deque[str] = deque([start_id])
    while queue:
        step_id = queue.popleft()
        if step_id in visited:
            continue
        visited.add(step_id)
        step = definition.get_step(step_id)
        if step is None:
            continue
        if isinstance(step, JoinStep):
            order.append(step_id)
            continue
        queue.extend(branch_targets(step))
    return order


def find_join(definition: WorkflowDefinition, fork: ForkStep) -> Optional[str]:
    """The first join step every branch of ``fork`` converges on."""
    per_branch: Dict[str, List[str]] = {
        branch: _reachable_joins(definition, branch) for branch in fork.next_steps
    }
    if not per_branch:
        return None
    first, *rest = per_branch.values()
    for candidate in first:
        if all(candidate in joins for joins in rest):
            return candidate
    return None
