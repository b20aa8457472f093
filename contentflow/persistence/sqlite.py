"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Optional

from ..contracts import WorkflowDefinition, utcnow
from ..errors import ConcurrentModificationError, ConflictError, NotFoundError
from .models import DefinitionQuery, InstanceQuery, Page, WorkflowInstance, paginate
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Documents are stored as JSON next to a few indexed columns; filtering
    beyond tenant scope happens in Python.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS definition_versions (
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT,
                status TEXT NOT NULL,
                revision INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_definitions_tenant ON definitions (tenant_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_instances_workflow ON instances (workflow_id)")
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _insert_definition(self, definition: WorkflowDefinition) -> None:
        body = definition.model_dump_json()
        cur = self._conn.cursor()
        try:
            cur.execute(
                "INSERT INTO definitions (id, tenant_id, version, created_at, body) VALUES (?, ?, ?, ?, ?)",
                (
                    definition.id,
                    definition.tenant_id,
                    definition.version,
                    definition.created_at.isoformat(),
                    body,
                ),
            )
        except sqlite3.IntegrityError as exc:
            self._conn.rollback()
            raise ConflictError(f"Workflow {definition.id} already exists") from exc
        cur.execute(
            "INSERT OR REPLACE INTO definition_versions (id, version, body) VALUES (?, ?, ?)",
            (definition.id, definition.version, body),
        )
        self._conn.commit()

    def _update_definition(self, definition: WorkflowDefinition, expected_version: int) -> None:
        body = definition.model_dump_json()
        cur = self._conn.cursor()
        cur.execute(
            "UPDATE definitions SET tenant_id = ?, version = ?, body = ? WHERE id = ? AND version = ?",
            (definition.tenant_id, definition.version, body, definition.id, expected_version),
        )
        if cur.rowcount == 0:
            self._conn.rollback()
            exists = self._fetchone("SELECT version FROM definitions WHERE id = ?", definition.id)
            if exists is None:
                raise NotFoundError(f"Workflow {definition.id} not found")
            raise ConcurrentModificationError(
                f"Workflow {definition.id} is at version {exists['version']}, expected {expected_version}"
            )
        cur.execute(
            "INSERT OR REPLACE INTO definition_versions (id, version, body) VALUES (?, ?, ?)",
            (definition.id, definition.version, body),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Repository API
    async def create_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(self._insert_definition, definition)

    async def update_definition(
        self, definition: WorkflowDefinition, expected_version: int
    ) -> None:
        await asyncio.to_thread(self._update_definition, definition, expected_version)

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone, "SELECT body FROM definitions WHERE id = ?", definition_id
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM definition_versions WHERE id = ? AND version = ?",
                definition_id,
                version,
            )
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["body"])

    async def list_definitions(self, query: DefinitionQuery) -> Page[WorkflowDefinition]:
        if query.tenant_id is not None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM definitions WHERE tenant_id = ?",
                query.tenant_id,
            )
        else:
            rows = await asyncio.to_thread(self._fetchall, "SELECT body FROM definitions")
        definitions = [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]
        matching = [d for d in definitions if query.matches(d)]
        return paginate(matching, query.page, query.limit, key=lambda d: d.created_at)

    async def delete_definition(self, definition_id: str) -> bool:
        removed = await asyncio.to_thread(
            self._execute, "DELETE FROM definitions WHERE id = ?", definition_id
        )
        return removed > 0

    async def create_instance(self, instance: WorkflowInstance) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO instances (id, workflow_id, tenant_id, status, revision, created_at, body) VALUES (?, ?, ?, ?, ?, ?, ?)",
                instance.id,
                instance.workflow_id,
                instance.tenant_id,
                instance.status.value,
                instance.revision,
                instance.created_at.isoformat(),
                instance.model_dump_json(),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Workflow instance {instance.id} already exists") from exc

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        expected = instance.revision
        candidate = instance.model_copy(deep=True)
        candidate.revision = expected + 1
        candidate.updated_at = utcnow()
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE instances SET status = ?, revision = ?, body = ? WHERE id = ? AND revision = ?",
            candidate.status.value,
            candidate.revision,
            candidate.model_dump_json(),
            instance.id,
            expected,
        )
        if updated == 0:
            row = await asyncio.to_thread(
                self._fetchone, "SELECT revision FROM instances WHERE id = ?", instance.id
            )
            if row is None:
                raise NotFoundError(f"Workflow instance {instance.id} not found")
            raise ConcurrentModificationError(
                f"Workflow instance {instance.id} was modified concurrently "
                f"(revision {row['revision']}, expected {expected})"
            )
        instance.revision = candidate.revision
        instance.updated_at = candidate.updated_at
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM instances WHERE id = ?", instance_id
        )
        if not row:
            return None
        return WorkflowInstance.model_validate_json(row["body"])

    async def list_instances(self, query: InstanceQuery) -> Page[WorkflowInstance]:
        if query.workflow_id is not None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM instances WHERE workflow_id = ?",
                query.workflow_id,
            )
        else:
            rows = await asyncio.to_thread(self._fetchall, "SELECT body FROM instances")
        instances = [WorkflowInstance.model_validate_json(r["body"]) for r in rows]
        matching = [i for i in instances if query.matches(i)]
        return paginate(matching, query.page, query.limit, key=lambda i: i.created_at)
