"""Shared fixtures: an engine wired to in-memory collaborators."""

from typing import Any, Dict, List, Tuple

import pytest
import pytest_asyncio

from contentflow.actions import build_action_registry
from contentflow.collaborators import InMemoryAuditRecorder, InMemoryNotificationGateway
from contentflow.engine import WorkflowEngine
from contentflow.persistence import InMemoryWorkflowRepository
from contentflow.scheduling import InMemoryScheduler
from contentflow.service import WorkflowService


class RecordingContent:
    """Content service double that remembers every call."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Any, Any]] = []

    async def update(self, content_id, changes):
        self.calls.append(("update", content_id, dict(changes)))
        return {"id": content_id, **changes}

    async def create(self, subject_type, fields):
        self.calls.append(("create", subject_type, dict(fields)))
        return {"id": "new-content", "subjectType": subject_type}

    async def publish(self, content_id):
        self.calls.append(("publish", content_id, None))
        return {"id": content_id, "status": "published"}

    async def unpublish(self, content_id):
        self.calls.append(("unpublish", content_id, None))
        return {"id": content_id, "status": "draft"}


@pytest.fixture
def notifications():
    return InMemoryNotificationGateway()


@pytest.fixture
def audit():
    return InMemoryAuditRecorder()


@pytest.fixture
def content():
    return RecordingContent()


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest_asyncio.fixture
async def scheduler():
    scheduler = InMemoryScheduler()
    yield scheduler
    await scheduler.stop()


@pytest.fixture
def engine(repository, scheduler, notifications, audit, content):
    return WorkflowEngine(
        repository,
        scheduler,
        notifications=notifications,
        audit=audit,
        actions=build_action_registry(content=content),
    )


@pytest.fixture
def service(repository, engine):
    return WorkflowService(repository, engine)


@pytest.fixture
def make_definition():
    """Build a raw definition payload around ``steps``."""

    def build(steps: List[Dict[str, Any]], **fields: Any) -> Dict[str, Any]:
        payload = {
            "name": "Editorial review",
            "status": "active",
            "steps": steps,
            "startStepId": steps[0]["id"] if steps else "",
        }
        payload.update(fields)
        return payload

    return build
