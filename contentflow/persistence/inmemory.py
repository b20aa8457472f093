"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from ..contracts import WorkflowDefinition, utcnow
from ..errors import ConcurrentModificationError, ConflictError, NotFoundError
from .models import DefinitionQuery, InstanceQuery, Page, WorkflowInstance, paginate
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored objects are copies, so callers
    never share state with the repository.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._versions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._instances: Dict[str, WorkflowInstance] = {}

    # ------------------------------------------------------------------
    async def create_definition(self, definition: WorkflowDefinition) -> None:
        if definition.id in self._definitions:
            raise ConflictError(f"Workflow {definition.id} already exists")
        stored = definition.model_copy(deep=True)
        self._definitions[definition.id] = stored
        self._versions[(definition.id, definition.version)] = stored.model_copy(deep=True)

    async def update_definition(
        self, definition: WorkflowDefinition, expected_version: int
    ) -> None:
        current = self._definitions.get(definition.id)
        if current is None:
            raise NotFoundError(f"Workflow {definition.id} not found")
        if current.version != expected_version:
            raise ConcurrentModificationError(
                f"Workflow {definition.id} is at version {current.version}, expected {expected_version}"
            )
        stored = definition.model_copy(deep=True)
        self._definitions[definition.id] = stored
        self._versions[(definition.id, definition.version)] = stored.model_copy(deep=True)

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            found = self._definitions.get(definition_id)
        else:
            found = self._versions.get((definition_id, version))
        return found.model_copy(deep=True) if found else None

    async def list_definitions(self, query: DefinitionQuery) -> Page[WorkflowDefinition]:
        matching = [
            d.model_copy(deep=True) for d in self._definitions.values() if query.matches(d)
        ]
        return paginate(matching, query.page, query.limit, key=lambda d: d.created_at)

    async def delete_definition(self, definition_id: str) -> bool:
        return self._definitions.pop(definition_id, None) is not None

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        if instance.id in self._instances:
            raise ConflictError(f"Workflow instance {instance.id} already exists")
        self._instances[instance.id] = instance.model_copy(deep=True)

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        stored = self._instances.get(instance.id)
        if stored is None:
            raise NotFoundError(f"Workflow instance {instance.id} not found")
        if stored.revision != instance.revision:
            raise ConcurrentModificationError(
                f"Workflow instance {instance.id} was modified concurrently "
                f"(revision {stored.revision}, expected {instance.revision})"
            )
        instance.revision += 1
        instance.updated_at = utcnow()
        self._instances[instance.id] = instance.model_copy(deep=True)
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        found = self._instances.get(instance_id)
        return found.model_copy(deep=True) if found else None

    async def list_instances(self, query: InstanceQuery) -> Page[WorkflowInstance]:
        matching = [
            i.model_copy(deep=True) for i in self._instances.values() if query.matches(i)
        ]
        return paginate(matching, query.page, query.limit, key=lambda i: i.created_at)
