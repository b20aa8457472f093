"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from typing import Optional

import asyncpg

from ..contracts import WorkflowDefinition, utcnow
from ..errors import ConcurrentModificationError, ConflictError, NotFoundError
from .models import DefinitionQuery, InstanceQuery, Page, WorkflowInstance, paginate
from .repository import WorkflowRepository


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                version INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS definition_versions (
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                body JSONB NOT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT,
                status TEXT NOT NULL,
                revision INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_instances_workflow ON instances (workflow_id)"
        )

    async def _store_version(
        self, conn: asyncpg.Connection, definition: WorkflowDefinition, body: str
    ) -> None:
        await conn.execute(
            """
            INSERT INTO definition_versions (id, version, body) VALUES ($1, $2, $3)
            ON CONFLICT (id, version) DO UPDATE SET body = EXCLUDED.body
            """,
            definition.id,
            definition.version,
            body,
        )

    # ------------------------------------------------------------------
    async def create_definition(self, definition: WorkflowDefinition) -> None:
        body = definition.model_dump_json()
        conn = await self._connect()
        try:
            async with conn.transaction():
                try:
                    await conn.execute(
                        "INSERT INTO definitions (id, tenant_id, version, created_at, body) VALUES ($1, $2, $3, $4, $5)",
                        definition.id,
                        definition.tenant_id,
                        definition.version,
                        definition.created_at,
                        body,
                    )
                except asyncpg.UniqueViolationError as exc:
                    raise ConflictError(f"Workflow {definition.id} already exists") from exc
                await self._store_version(conn, definition, body)
        finally:
            await conn.close()

    async def update_definition(
        self, definition: WorkflowDefinition, expected_version: int
    ) -> None:
        body = definition.model_dump_json()
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    "UPDATE definitions SET tenant_id = $1, version = $2, body = $3 WHERE id = $4 AND version = $5",
                    definition.tenant_id,
                    definition.version,
                    body,
                    definition.id,
                    expected_version,
                )
                if _affected(status) == 0:
                    current = await conn.fetchval(
                        "SELECT version FROM definitions WHERE id = $1", definition.id
                    )
                    if current is None:
                        raise NotFoundError(f"Workflow {definition.id} not found")
                    raise ConcurrentModificationError(
                        f"Workflow {definition.id} is at version {current}, expected {expected_version}"
                    )
                await self._store_version(conn, definition, body)
        finally:
            await conn.close()

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            if version is None:
                body = await conn.fetchval(
                    "SELECT body::text FROM definitions WHERE id = $1", definition_id
                )
            else:
                body = await conn.fetchval(
                    "SELECT body::text FROM definition_versions WHERE id = $1 AND version = $2",
                    definition_id,
                    version,
                )
        finally:
            await conn.close()
        return WorkflowDefinition.model_validate_json(body) if body else None

    async def list_definitions(self, query: DefinitionQuery) -> Page[WorkflowDefinition]:
        conn = await self._connect()
        try:
            if query.tenant_id is not None:
                rows = await conn.fetch(
                    "SELECT body::text AS body FROM definitions WHERE tenant_id = $1",
                    query.tenant_id,
                )
            else:
                rows = await conn.fetch("SELECT body::text AS body FROM definitions")
        finally:
            await conn.close()
        definitions = [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]
        matching = [d for d in definitions if query.matches(d)]
        return paginate(matching, query.page, query.limit, key=lambda d: d.created_at)

    async def delete_definition(self, definition_id: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute("DELETE FROM definitions WHERE id = $1", definition_id)
        finally:
            await conn.close()
        return _affected(status) > 0

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO instances (id, workflow_id, tenant_id, status, revision, created_at, body) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                instance.id,
                instance.workflow_id,
                instance.tenant_id,
                instance.status.value,
                instance.revision,
                instance.created_at,
                instance.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError(f"Workflow instance {instance.id} already exists") from exc
        finally:
            await conn.close()

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        expected = instance.revision
        candidate = instance.model_copy(deep=True)
        candidate.revision = expected + 1
        candidate.updated_at = utcnow()
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE instances SET status = $1, revision = $2, body = $3 WHERE id = $4 AND revision = $5",
                candidate.status.value,
                candidate.revision,
                candidate.model_dump_json(),
                instance.id,
                expected,
            )
            if _affected(status) == 0:
                current = await conn.fetchval(
                    "SELECT revision FROM instances WHERE id = $1", instance.id
                )
                if current is None:
                    raise NotFoundError(f"Workflow instance {instance.id} not found")
                raise ConcurrentModificationError(
                    f"Workflow instance {instance.id} was modified concurrently "
                    f"(revision {current}, expected {expected})"
                )
        finally:
            await conn.close()
        instance.revision = candidate.revision
        instance.updated_at = candidate.updated_at
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            body = await conn.fetchval(
                "SELECT body::text FROM instances WHERE id = $1", instance_id
            )
        finally:
            await conn.close()
        return WorkflowInstance.model_validate_json(body) if body else None

    async def list_instances(self, query: InstanceQuery) -> Page[WorkflowInstance]:
        conn = await self._connect()
        try:
            if query.workflow_id is not None:
                rows = await conn.fetch(
                    "SELECT body::text AS body FROM instances WHERE workflow_id = $1",
                    query.workflow_id,
                )
            else:
                rows = await conn.fetch("SELECT body::text AS body FROM instances")
        finally:
            await conn.close()
        instances = [WorkflowInstance.model_validate_json(r["body"]) for r in rows]
        matching = [i for i in instances if query.matches(i)]
        return paginate(matching, query.page, query.limit, key=lambda i: i.created_at)
