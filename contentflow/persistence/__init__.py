"""Persistence layer for contentflow definitions and instances."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ContentflowConfig, load_config
from ..constants import DATABASE_URL_ENV_VAR
from .inmemory import InMemoryWorkflowRepository
from .models import (
    DefinitionQuery,
    InstanceQuery,
    InstanceStatus,
    InstanceStep,
    JoinBarrier,
    Page,
    StepStatus,
    WorkflowInstance,
)
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[ContentflowConfig] = None
) -> WorkflowRepository:
    """Build a workflow repository.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via ``CONTENTFLOW_DATABASE_URL`` or ``DATABASE_URL``, or from
    loaded configuration. Without a database an in-memory repository is
    returned. Every call builds a fresh repository object.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv(DATABASE_URL_ENV_VAR)
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryWorkflowRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        from .postgres import PostgresWorkflowRepository

        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "DefinitionQuery",
    "InstanceQuery",
    "InstanceStatus",
    "InstanceStep",
    "JoinBarrier",
    "Page",
    "StepStatus",
    "WorkflowInstance",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
