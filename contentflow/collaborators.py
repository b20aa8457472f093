"""Interfaces of the services the engine calls out to, plus simple defaults."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from pydantic import BaseModel, Field

from .contracts import utcnow

logger = logging.getLogger(__name__)


class NotificationGateway(Protocol):
    async def send(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        data: Mapping[str, Any],
    ) -> None:
        """Deliver a notification to ``user_id``."""


class AuditRecorder(Protocol):
    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        actor_id: Optional[str],
        metadata: Mapping[str, Any],
    ) -> None:
        """Persist an audit log entry."""


class ContentMutator(Protocol):
    """Bridge to the content service used by content actions."""

    async def update(self, content_id: str, changes: Mapping[str, Any]) -> Any: ...

    async def create(self, subject_type: Optional[str], fields: Mapping[str, Any]) -> Any: ...

    async def publish(self, content_id: str) -> Any: ...

    async def unpublish(self, content_id: str) -> Any: ...


class EmailSender(Protocol):
    async def send(
        self, to: List[str], subject: str, body: str, **options: Any
    ) -> Any: ...


class SentNotification(BaseModel):
    user_id: str
    kind: str
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    sent_at: datetime = Field(default_factory=utcnow)


class LoggingNotificationGateway:
    """Writes notifications to the log instead of delivering them."""

    async def send(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        data: Mapping[str, Any],
    ) -> None:
        logger.info(f"Notification {kind} to {user_id}: {title}")


class InMemoryNotificationGateway:
    """Keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: List[SentNotification] = []

    async def send(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        data: Mapping[str, Any],
    ) -> None:
        self.sent.append(
            SentNotification(
                user_id=user_id, kind=kind, title=title, message=message, data=dict(data)
            )
        )

    def for_user(self, user_id: str) -> List[SentNotification]:
        return [n for n in self.sent if n.user_id == user_id]


class AuditEntry(BaseModel):
    action: str
    entity_type: str
    entity_id: str
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utcnow)


class InMemoryAuditRecorder:
    """Records workflow state transitions in memory."""

    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        actor_id: Optional[str],
        metadata: Mapping[str, Any],
    ) -> None:
        self.entries.append(
            AuditEntry(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                metadata=dict(metadata),
            )
        )

    def actions(self, entity_id: Optional[str] = None) -> List[str]:
        return [
            e.action for e in self.entries if entity_id is None or e.entity_id == entity_id
        ]
