"""Exception hierarchy for contentflow."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class WorkflowError(Exception):
    """Base class for every error raised by contentflow."""


class GraphIssue(BaseModel):
    """A single field-level problem found in a workflow definition."""

    field: str
    message: str
    step_id: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class GraphError(WorkflowError):
    """Raised when a workflow definition is structurally invalid."""

    def __init__(self, issues: List[GraphIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(str(issue) for issue in self.issues)
        super().__init__(f"Invalid workflow definition: {summary}")


class InvalidStateError(WorkflowError):
    """Operation is not allowed for the instance's current status."""


class InvalidTransitionError(WorkflowError):
    """Requested next step is not reachable from the current step."""


class ConcurrentModificationError(WorkflowError):
    """Another writer changed the instance first."""


class ActionExecutionError(WorkflowError):
    """A named external action failed."""

    def __init__(self, action: str, message: str) -> None:
        self.action = action
        super().__init__(f"Action '{action}' failed: {message}")


class StructuralInconsistencyError(WorkflowError):
    """An instance references a step that its definition does not contain."""


class StepTimeoutError(WorkflowError):
    """A step exceeded its configured timeout."""


class NotFoundError(WorkflowError):
    """A definition or instance does not exist."""


class ConflictError(WorkflowError):
    """A write would violate a uniqueness or lifecycle rule."""


class UnknownTriggerError(WorkflowError):
    """An event name does not correspond to any trigger type."""
