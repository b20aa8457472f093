"""Trigger dispatcher for contentflow."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .conditions import evaluate
from .contracts import DefinitionStatus, Trigger, TriggerType, WorkflowDefinition
from .engine import WorkflowEngine
from .errors import UnknownTriggerError
from .persistence.models import DefinitionQuery, WorkflowInstance
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class TriggerContext(BaseModel):
    """The domain event a dispatcher matches definitions against."""

    subject_type: Optional[str] = None
    tenant_id: Optional[str] = None
    content_id: Optional[str] = None
    user_id: Optional[str] = None
    media_id: Optional[str] = None
    actor_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


def trigger_matches(trigger: Trigger, context: TriggerContext) -> bool:
    config = trigger.config
    if config.subject_type is not None and config.subject_type != context.subject_type:
        return False
    if config.tenant_id is not None and config.tenant_id != context.tenant_id:
        return False
    if config.predicate is not None and not evaluate(config.predicate, context.data):
        return False
    return True


def definition_matches(
    definition: WorkflowDefinition, event_type: TriggerType, context: TriggerContext
) -> bool:
    if definition.status != DefinitionStatus.ACTIVE:
        return False
    if definition.subject_type is not None and definition.subject_type != context.subject_type:
        return False
    if definition.tenant_id != context.tenant_id:
        return False
    return any(trigger_matches(t, context) for t in definition.triggers_for(event_type))


def select_definition(candidates: List[WorkflowDefinition]) -> Optional[WorkflowDefinition]:
    """Prefer the default definition, otherwise the oldest one."""
    if not candidates:
        return None
    ordered = sorted(candidates, key=lambda d: d.created_at)
    for definition in ordered:
        if definition.is_default:
            return definition
    return ordered[0]


class TriggerDispatcher:
    """Service responsible for starting workflows from domain events."""

    def __init__(self, repository: WorkflowRepository, engine: WorkflowEngine) -> None:
        self._repository = repository
        self._engine = engine

    async def candidates(
        self, event_type: TriggerType, context: TriggerContext
    ) -> List[WorkflowDefinition]:
        """Active definitions bound to ``event_type`` that accept ``context``."""
        found: List[WorkflowDefinition] = []
        page = 1
        while True:
            result = await self._repository.list_definitions(
                DefinitionQuery(
                    status=[DefinitionStatus.ACTIVE],
                    trigger_type=event_type,
                    page=page,
                    limit=PAGE_SIZE,
                )
            )
            found.extend(d for d in result.items if definition_matches(d, event_type, context))
            if page >= result.pages:
                return found
            page += 1

    async def dispatch(
        self, event_type: TriggerType | str, context: TriggerContext
    ) -> Optional[WorkflowInstance]:
        """Start the matching workflow for an event.

        Args:
            event_type: The trigger type that occurred.
            context: Subject references, tenant and event data.

        Returns:
            The created instance, or ``None`` when no definition matches.
            Execution continues in the background.

        Raises:
            UnknownTriggerError: If ``event_type`` names no trigger type.
        """
        try:
            event_type = TriggerType(event_type)
        except ValueError as e:
            raise UnknownTriggerError(f"Unknown trigger type {event_type!r}") from e
        definition = select_definition(await self.candidates(event_type, context))
        if definition is None:
            logger.debug(f"No workflows found for trigger {event_type.value}")
            return None

        instance = WorkflowInstance(
            workflow_id=definition.id,
            workflow_version=definition.version,
            content_id=context.content_id,
            subject_type=context.subject_type or definition.subject_type,
            user_id=context.user_id,
            media_id=context.media_id,
            current_step_id=definition.start_step_id,
            data=dict(context.data),
            created_by=context.actor_id,
            tenant_id=context.tenant_id,
        )
        await self._engine.create_instance(instance)
        logger.info(
            f"Trigger {event_type.value} started workflow {definition.id} "
            f"v{definition.version} as instance {instance.id}"
        )
        self._engine.start(instance.id)
        return instance
