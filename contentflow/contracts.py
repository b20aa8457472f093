"""Workflow definition contracts: steps, triggers and definitions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .conditions import Condition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class StepType(str, Enum):
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    CONDITION = "condition"
    ACTION = "action"
    DELAY = "delay"
    FORK = "fork"
    JOIN = "join"


class TriggerType(str, Enum):
    CONTENT_CREATED = "content_created"
    CONTENT_UPDATED = "content_updated"
    CONTENT_PUBLISHED = "content_published"
    CONTENT_UNPUBLISHED = "content_unpublished"
    CONTENT_DELETED = "content_deleted"
    CONTENT_STATUS_CHANGED = "content_status_changed"
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    MEDIA_UPLOADED = "media_uploaded"
    MEDIA_UPDATED = "media_updated"
    MEDIA_DELETED = "media_deleted"
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    API = "api"


class DelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"

    @property
    def milliseconds(self) -> int:
        return {
            DelayUnit.SECONDS: 1000,
            DelayUnit.MINUTES: 60 * 1000,
            DelayUnit.HOURS: 60 * 60 * 1000,
            DelayUnit.DAYS: 24 * 60 * 60 * 1000,
        }[self]


class ContractModel(BaseModel):
    """Accepts both ``snake_case`` and ``camelCase`` keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepPosition(ContractModel):
    x: float = 0
    y: float = 0


class RetryPolicy(ContractModel):
    """Explicit retry declaration for action steps."""

    max_retries: int = Field(default=0, ge=0)
    backoff_base: float = Field(default=1.5, ge=0)
    jitter: float = Field(default=0.5, ge=0)


class BaseStep(ContractModel):
    """Fields shared by every step type."""

    id: str
    name: str = ""
    description: Optional[str] = None
    next_steps: List[str] = Field(default_factory=list)
    position: StepPosition = Field(default_factory=StepPosition)
    timeout_seconds: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_config(cls, data: Any) -> Any:
        """Lift a nested ``config`` mapping onto the step itself."""
        if isinstance(data, dict) and isinstance(data.get("config"), dict):
            merged = dict(data["config"])
            merged.update({k: v for k, v in data.items() if k != "config"})
            return merged
        return data


class ApprovalStep(BaseStep):
    type: Literal["approval"] = "approval"
    approvers: List[str] = Field(default_factory=list)
    auto_assign: bool = False


class NotificationStep(BaseStep):
    type: Literal["notification"] = "notification"
    recipients: List[str] = Field(default_factory=list)
    title: Optional[str] = None
    message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class ConditionStep(BaseStep):
    type: Literal["condition"] = "condition"
    # strings are accepted here so validation can reject them with a clear issue
    condition: Optional[Union[Condition, str]] = None
    true_step_id: Optional[str] = None
    false_step_id: Optional[str] = None


class ActionStep(BaseStep):
    type: Literal["action"] = "action"
    action: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    retry: Optional[RetryPolicy] = None


class DelayStep(BaseStep):
    type: Literal["delay"] = "delay"
    duration: Optional[float] = None
    unit: Optional[DelayUnit] = None

    @property
    def delay_ms(self) -> float:
        unit = self.unit or DelayUnit.SECONDS
        return (self.duration or 0) * unit.milliseconds


class ForkStep(BaseStep):
    type: Literal["fork"] = "fork"


class JoinStep(BaseStep):
    type: Literal["join"] = "join"


Step = Annotated[
    Union[
        ApprovalStep,
        NotificationStep,
        ConditionStep,
        ActionStep,
        DelayStep,
        ForkStep,
        JoinStep,
    ],
    Field(discriminator="type"),
]


class TriggerConfig(ContractModel):
    """Narrows which events a trigger responds to."""

    subject_type: Optional[str] = None
    tenant_id: Optional[str] = None
    predicate: Optional[Condition] = None


class Trigger(ContractModel):
    type: TriggerType
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class WorkflowDefinition(ContractModel):
    """An authored, versioned step graph plus its trigger bindings."""

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    status: DefinitionStatus = DefinitionStatus.DRAFT
    subject_type: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)
    triggers: List[Trigger] = Field(default_factory=list)
    start_step_id: str = ""
    version: int = 1
    is_default: bool = False
    tenant_id: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        """Return the step with ``step_id`` or ``None``."""
        if step_id is None:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def has_trigger(self, trigger_type: TriggerType) -> bool:
        return any(trigger.type == trigger_type for trigger in self.triggers)

    def triggers_for(self, trigger_type: TriggerType) -> List[Trigger]:
        return [trigger for trigger in self.triggers if trigger.type == trigger_type]
