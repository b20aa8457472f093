"""Typed lifecycle events published by the workflow engine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field

from .contracts import utcnow


class WorkflowEventType(str, Enum):
    INSTANCE_CREATED = "instance_created"
    INSTANCE_STARTED = "instance_started"
    INSTANCE_COMPLETED = "instance_completed"
    INSTANCE_FAILED = "instance_failed"
    INSTANCE_CANCELLED = "instance_cancelled"
    INSTANCE_SUSPENDED = "instance_suspended"
    INSTANCE_RESUMED = "instance_resumed"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_REJECTED = "step_rejected"
    STEP_ASSIGNED = "step_assigned"


class WorkflowEvent(BaseModel):
    type: WorkflowEventType
    instance_id: str
    workflow_id: str
    step_id: Optional[str] = None
    actor_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


EventListener = Callable[[WorkflowEvent], Awaitable[Any]]
