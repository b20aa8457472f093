"""Data models for persisted workflow instance state."""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from ..constants import DEFAULT_PAGE_SIZE
from ..contracts import (
    DefinitionStatus,
    TriggerType,
    WorkflowDefinition,
    new_id,
    utcnow,
)


class InstanceStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    FAILED = "failed"


FINISHED_STEP_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.REJECTED, StepStatus.SKIPPED, StepStatus.FAILED}
)


class InstanceStep(BaseModel):
    """Record of one visit to a step."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    assignee: Optional[str] = None
    result: Any = None
    notes: Optional[str] = None
    job_ids: List[str] = Field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STEP_STATUSES


class JoinBarrier(BaseModel):
    """Counts branch arrivals for one fork.

    ``expected`` and ``arrived`` hold branch step ids; ``children`` maps each
    branch to the child instance running it.
    """

    fork_step_id: str
    join_step_id: Optional[str] = None
    expected: List[str] = Field(default_factory=list)
    arrived: List[str] = Field(default_factory=list)
    children: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return set(self.expected) <= set(self.arrived)

    def branch_of(self, child_id: str) -> Optional[str]:
        for branch, candidate in self.children.items():
            if candidate == child_id:
                return branch
        return None


class WorkflowInstance(BaseModel):
    """One execution of a workflow definition against a subject."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: int
    content_id: Optional[str] = None
    subject_type: Optional[str] = None
    user_id: Optional[str] = None
    media_id: Optional[str] = None
    status: InstanceStatus = InstanceStatus.PENDING
    current_step_id: Optional[str] = None
    steps: List[InstanceStep] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    created_by: Optional[str] = None
    tenant_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    revision: int = 0

    # fork bookkeeping
    parent_instance_id: Optional[str] = None
    fork_step_id: Optional[str] = None
    join_step_id: Optional[str] = None
    join_barriers: Dict[str, JoinBarrier] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def current_visit(self, step_id: Optional[str] = None) -> Optional[InstanceStep]:
        """Latest record for ``step_id`` (defaults to the current step)."""
        step_id = step_id or self.current_step_id
        for record in reversed(self.steps):
            if record.step_id == step_id:
                return record
        return None

    def ensure_visit(self, step_id: str) -> InstanceStep:
        """Return the open record for ``step_id``, appending one if needed."""
        record = self.current_visit(step_id)
        if record is None or record.is_finished:
            record = InstanceStep(step_id=step_id)
            self.steps.append(record)
        return record


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def paginate(
    items: List[T], page: int, limit: int, key: Callable[[T], Any], descending: bool = True
) -> Page[T]:
    """Sort and slice ``items`` into a :class:`Page`."""
    ordered = sorted(items, key=key, reverse=descending)
    start = (max(page, 1) - 1) * limit
    return Page(items=ordered[start : start + limit], total=len(ordered), page=page, limit=limit)


class DefinitionQuery(BaseModel):
    tenant_id: Optional[str] = None
    subject_type: Optional[str] = None
    status: Optional[List[DefinitionStatus]] = None
    trigger_type: Optional[TriggerType] = None
    is_default: Optional[bool] = None
    search: Optional[str] = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    def matches(self, definition: WorkflowDefinition) -> bool:
        if self.tenant_id is not None and definition.tenant_id != self.tenant_id:
            return False
        if self.subject_type is not None and definition.subject_type != self.subject_type:
            return False
        if self.status and definition.status not in self.status:
            return False
        if self.trigger_type is not None and not definition.has_trigger(self.trigger_type):
            return False
        if self.is_default is not None and definition.is_default != self.is_default:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = f"{definition.name} {definition.description or ''}".lower()
            if needle not in haystack:
                return False
        return True


class InstanceQuery(BaseModel):
    workflow_id: Optional[str] = None
    content_id: Optional[str] = None
    subject_type: Optional[str] = None
    user_id: Optional[str] = None
    media_id: Optional[str] = None
    status: Optional[List[InstanceStatus]] = None
    created_by: Optional[str] = None
    tenant_id: Optional[str] = None
    parent_instance_id: Optional[str] = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    def matches(self, instance: WorkflowInstance) -> bool:
        for name in (
            "workflow_id",
            "content_id",
            "subject_type",
            "user_id",
            "media_id",
            "created_by",
            "tenant_id",
            "parent_instance_id",
        ):
            expected = getattr(self, name)
            if expected is not None and getattr(instance, name) != expected:
                return False
        if self.status and instance.status not in self.status:
            return False
        return True
