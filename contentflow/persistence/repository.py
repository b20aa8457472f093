"""Repository abstraction for definition and instance persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import WorkflowDefinition
from .models import DefinitionQuery, InstanceQuery, Page, WorkflowInstance


class WorkflowRepository(Protocol):
    """Protocol for workflow persistence backends.

    Instance writes are optimistic: :meth:`save_instance` only succeeds when
    the stored ``revision`` still equals ``instance.revision`` and raises
    :class:`~contentflow.errors.ConcurrentModificationError` otherwise.
    """

    async def create_definition(self, definition: WorkflowDefinition) -> None:
        """Persist a new definition and its first version snapshot."""

    async def update_definition(
        self, definition: WorkflowDefinition, expected_version: int
    ) -> None:
        """Replace the current definition if it is still at ``expected_version``."""

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        """Current definition, or the snapshot for ``version``."""

    async def list_definitions(self, query: DefinitionQuery) -> Page[WorkflowDefinition]:
        """Return definitions matching ``query``, newest first."""

    async def delete_definition(self, definition_id: str) -> bool:
        """Remove the current definition; version snapshots are kept."""

    async def create_instance(self, instance: WorkflowInstance) -> None:
        """Persist a new instance."""

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Write ``instance`` and bump its revision."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def list_instances(self, query: InstanceQuery) -> Page[WorkflowInstance]:
        """Return instances matching ``query``, newest first."""
