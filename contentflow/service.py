"""Operations exposed to the HTTP and CLI layers."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic.alias_generators import to_camel

from .actions import ActionRunner
from .collaborators import AuditRecorder, NotificationGateway
from .config import ContentflowConfig, load_config
from .contracts import (
    DefinitionStatus,
    TriggerType,
    WorkflowDefinition,
    utcnow,
)
from .dispatch import TriggerContext, TriggerDispatcher
from .engine import WorkflowEngine
from .errors import ConflictError, NotFoundError
from .graph import parse_definition, validate_definition
from .persistence import get_repository
from .persistence.models import (
    DefinitionQuery,
    InstanceQuery,
    InstanceStatus,
    Page,
    WorkflowInstance,
)
from .persistence.repository import WorkflowRepository
from .scheduling import BaseScheduler, get_scheduler

logger = logging.getLogger(__name__)

LIVE_STATUSES = [InstanceStatus.PENDING, InstanceStatus.RUNNING, InstanceStatus.SUSPENDED]
IMMUTABLE_FIELDS = {"id", "version", "created_at", "created_by"}
GRAPH_FIELDS = {"steps", "start_step_id"}
SCAN_PAGE_SIZE = 100

_FIELD_NAMES = {to_camel(name): name for name in WorkflowDefinition.model_fields}

DefinitionInput = Union[WorkflowDefinition, Mapping[str, Any]]


def _normalize_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Map camelCase keys onto field names."""
    return {_FIELD_NAMES.get(key, key): value for key, value in changes.items()}


class WorkflowService:
    """Definition management plus the instance operations of the engine."""

    def __init__(
        self,
        repository: WorkflowRepository,
        engine: WorkflowEngine,
        dispatcher: Optional[TriggerDispatcher] = None,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.dispatcher = dispatcher or TriggerDispatcher(repository, engine)

    # ------------------------------------------------------------------
    # definitions
    async def create_definition(
        self, payload: DefinitionInput, actor_id: Optional[str] = None
    ) -> WorkflowDefinition:
        if isinstance(payload, WorkflowDefinition):
            definition = payload.model_copy(deep=True)
        else:
            definition = parse_definition(payload)
        validate_definition(definition)
        now = utcnow()
        definition.version = 1
        definition.created_at = now
        definition.updated_at = now
        definition.created_by = actor_id or definition.created_by
        definition.updated_by = actor_id or definition.updated_by
        await self._ensure_single_default(definition)
        await self.repository.create_definition(definition)
        logger.info(f"Created workflow {definition.id} ({definition.name})")
        return definition

    async def update_definition(
        self, definition_id: str, changes: Mapping[str, Any], actor_id: Optional[str] = None
    ) -> WorkflowDefinition:
        """Apply ``changes`` and store the result as a new version."""
        current = await self.get_definition(definition_id)
        updates = {
            key: value
            for key, value in _normalize_changes(changes).items()
            if key not in IMMUTABLE_FIELDS
        }
        merged = current.model_dump()
        merged.update(updates)
        definition = parse_definition(merged)
        if GRAPH_FIELDS & updates.keys():
            validate_definition(definition)
        definition.version = current.version + 1
        definition.updated_at = utcnow()
        definition.updated_by = actor_id
        await self._ensure_single_default(definition)
        await self.repository.update_definition(definition, expected_version=current.version)
        logger.info(f"Updated workflow {definition.id} to version {definition.version}")
        return definition

    async def delete_definition(self, definition_id: str) -> None:
        await self.get_definition(definition_id)
        live = await self.repository.list_instances(
            InstanceQuery(workflow_id=definition_id, status=LIVE_STATUSES, limit=1)
        )
        if live.total:
            raise ConflictError(
                f"Workflow {definition_id} has {live.total} active instances"
            )
        await self.repository.delete_definition(definition_id)
        logger.info(f"Deleted workflow {definition_id}")

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition:
        definition = await self.repository.get_definition(definition_id, version=version)
        if definition is None:
            raise NotFoundError(f"Workflow {definition_id} not found")
        return definition

    async def list_definitions(
        self, query: Optional[DefinitionQuery] = None, **filters: Any
    ) -> Page[WorkflowDefinition]:
        return await self.repository.list_definitions(query or DefinitionQuery(**filters))

    async def get_default_definition(
        self, subject_type: Optional[str], tenant_id: Optional[str] = None
    ) -> Optional[WorkflowDefinition]:
        for definition in await self._defaults(subject_type, tenant_id):
            return definition
        return None

    async def _defaults(
        self, subject_type: Optional[str], tenant_id: Optional[str]
    ) -> List[WorkflowDefinition]:
        found: List[WorkflowDefinition] = []
        page = 1
        while True:
            result = await self.repository.list_definitions(
                DefinitionQuery(
                    subject_type=subject_type,
                    tenant_id=tenant_id,
                    is_default=True,
                    page=page,
                    limit=SCAN_PAGE_SIZE,
                )
            )
            # ``None`` filters match anything, so scope exactly here
            found.extend(
                d
                for d in result.items
                if d.subject_type == subject_type and d.tenant_id == tenant_id
            )
            if page >= result.pages:
                return found
            page += 1

    async def _ensure_single_default(self, definition: WorkflowDefinition) -> None:
        if not definition.is_default:
            return
        for other in await self._defaults(definition.subject_type, definition.tenant_id):
            if other.id != definition.id:
                raise ConflictError(
                    f"Workflow {other.id} is already the default for subject type "
                    f"{definition.subject_type!r} in tenant {definition.tenant_id!r}"
                )

    # ------------------------------------------------------------------
    # instances
    async def trigger_workflow(
        self, event_type: Union[TriggerType, str], context: Union[TriggerContext, Mapping[str, Any]]
    ) -> Optional[WorkflowInstance]:
        if not isinstance(context, TriggerContext):
            context = TriggerContext(**context)
        return await self.dispatcher.dispatch(event_type, context)

    async def create_instance(
        self,
        workflow_id: str,
        created_by: Optional[str] = None,
        content_id: Optional[str] = None,
        subject_type: Optional[str] = None,
        user_id: Optional[str] = None,
        media_id: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
        tenant_id: Optional[str] = None,
        start: bool = True,
    ) -> WorkflowInstance:
        """Create an instance pinned to the current definition version.

        With ``start`` the instance runs until its first suspension point
        before this returns.
        """
        definition = await self.get_definition(workflow_id)
        if definition.status == DefinitionStatus.ARCHIVED:
            raise ConflictError(f"Workflow {workflow_id} is archived")
        instance = WorkflowInstance(
            workflow_id=definition.id,
            workflow_version=definition.version,
            content_id=content_id,
            subject_type=subject_type or definition.subject_type,
            user_id=user_id,
            media_id=media_id,
            current_step_id=definition.start_step_id,
            data=dict(data or {}),
            created_by=created_by,
            tenant_id=tenant_id if tenant_id is not None else definition.tenant_id,
        )
        await self.engine.create_instance(instance)
        if start:
            return await self.engine.execute(instance.id)
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        return instance

    async def list_instances(
        self, query: Optional[InstanceQuery] = None, **filters: Any
    ) -> Page[WorkflowInstance]:
        return await self.repository.list_instances(query or InstanceQuery(**filters))

    async def cancel_instance(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        return await self.engine.cancel(instance_id, actor_id)

    async def complete_step(
        self,
        instance_id: str,
        step_id: str,
        actor_id: str,
        result: Any = None,
        notes: Optional[str] = None,
        next_step_id: Optional[str] = None,
    ) -> WorkflowInstance:
        return await self.engine.complete_step(
            instance_id, step_id, actor_id, result=result, notes=notes, next_step_id=next_step_id
        )

    async def reject_step(
        self, instance_id: str, step_id: str, actor_id: str, reason: Optional[str] = None
    ) -> WorkflowInstance:
        return await self.engine.reject_step(instance_id, step_id, actor_id, reason)

    async def assign_step(
        self, instance_id: str, step_id: str, assignee_id: str, assigner_id: str
    ) -> WorkflowInstance:
        return await self.engine.assign_step(instance_id, step_id, assignee_id, assigner_id)

    async def suspend_instance(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        return await self.engine.suspend(instance_id, actor_id)

    async def resume_instance(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        return await self.engine.resume(instance_id, actor_id)


def build_service(
    config: Optional[ContentflowConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    scheduler: Optional[BaseScheduler] = None,
    notifications: Optional[NotificationGateway] = None,
    audit: Optional[AuditRecorder] = None,
    actions: Optional[ActionRunner] = None,
) -> WorkflowService:
    """Wire a service from configuration and optional collaborators."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    scheduler = scheduler or get_scheduler(config=config)
    engine = WorkflowEngine(
        repository,
        scheduler,
        notifications=notifications,
        audit=audit,
        actions=actions,
        config=config.engine,
    )
    return WorkflowService(repository, engine)
