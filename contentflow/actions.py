"""Named side-effecting operations invoked by action steps."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from .collaborators import ContentMutator, EmailSender
from .errors import ActionExecutionError

logger = logging.getLogger(__name__)


class ActionContext(BaseModel):
    """What an action knows about the instance that invoked it."""

    instance_id: str
    workflow_id: str
    step_id: str
    tenant_id: Optional[str] = None
    content_id: Optional[str] = None
    subject_type: Optional[str] = None
    user_id: Optional[str] = None
    media_id: Optional[str] = None
    created_by: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


ActionHandler = Callable[[Dict[str, Any], ActionContext], Awaitable[Any]]


class ActionRunner(Protocol):
    async def invoke(
        self, action_name: str, params: Mapping[str, Any], context: ActionContext
    ) -> Any:
        """Run ``action_name`` and return its result."""


class ActionRegistry:
    """Maps action names to async handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def names(self) -> List[str]:
        return sorted(self._handlers)

    async def invoke(
        self, action_name: str, params: Mapping[str, Any], context: ActionContext
    ) -> Any:
        handler = self._handlers.get(action_name)
        if handler is None:
            raise ActionExecutionError(action_name, "unknown action")
        try:
            return await handler(dict(params), context)
        except ActionExecutionError:
            raise
        except Exception as exc:
            raise ActionExecutionError(action_name, str(exc)) from exc


def _content_id(action: str, params: Dict[str, Any], context: ActionContext) -> str:
    content_id = params.get("contentId") or params.get("content_id") or context.content_id
    if not content_id:
        raise ActionExecutionError(action, "no content id in params or instance")
    return str(content_id)


def content_actions(registry: ActionRegistry, content: Optional[ContentMutator]) -> None:
    """Register ``updateContent``, ``createContent``, ``publishContent``, ``unpublishContent``."""

    def require(action: str) -> ContentMutator:
        if content is None:
            raise ActionExecutionError(action, "no content service configured")
        return content

    async def update_content(params: Dict[str, Any], context: ActionContext) -> Any:
        mutator = require("updateContent")
        content_id = _content_id("updateContent", params, context)
        changes = params.get("changes") or {
            k: v for k, v in params.items() if k not in ("contentId", "content_id")
        }
        result = await mutator.update(content_id, changes)
        return {"action": "updateContent", "contentId": content_id, "result": result, "success": True}

    async def create_content(params: Dict[str, Any], context: ActionContext) -> Any:
        mutator = require("createContent")
        subject_type = params.get("subjectType") or context.subject_type
        result = await mutator.create(subject_type, params.get("fields") or {})
        return {"action": "createContent", "subjectType": subject_type, "result": result, "success": True}

    async def publish_content(params: Dict[str, Any], context: ActionContext) -> Any:
        mutator = require("publishContent")
        content_id = _content_id("publishContent", params, context)
        result = await mutator.publish(content_id)
        return {"action": "publishContent", "contentId": content_id, "result": result, "success": True}

    async def unpublish_content(params: Dict[str, Any], context: ActionContext) -> Any:
        mutator = require("unpublishContent")
        content_id = _content_id("unpublishContent", params, context)
        result = await mutator.unpublish(content_id)
        return {"action": "unpublishContent", "contentId": content_id, "result": result, "success": True}

    registry.register("updateContent", update_content)
    registry.register("createContent", create_content)
    registry.register("publishContent", publish_content)
    registry.register("unpublishContent", unpublish_content)


def email_action(registry: ActionRegistry, mailer: Optional[EmailSender]) -> None:
    async def send_email(params: Dict[str, Any], context: ActionContext) -> Any:
        if mailer is None:
            raise ActionExecutionError("sendEmail", "no email sender configured")
        to = params.get("to")
        if not to:
            raise ActionExecutionError("sendEmail", "missing 'to'")
        recipients = [to] if isinstance(to, str) else list(to)
        subject = params.get("subject", "")
        await mailer.send(recipients, subject, params.get("body", ""))
        return {"action": "sendEmail", "to": recipients, "subject": subject, "success": True}

    registry.register("sendEmail", send_email)


def webhook_action(
    registry: ActionRegistry,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 10.0,
) -> None:
    """Register ``webhook``: an HTTP call whose non-2xx response fails the step."""

    async def call_webhook(params: Dict[str, Any], context: ActionContext) -> Any:
        url = params.get("url")
        if not url:
            raise ActionExecutionError("webhook", "missing 'url'")
        method = str(params.get("method", "POST")).upper()
        body = params.get("body")
        if body is None:
            body = {"instance": context.model_dump(mode="json")}
        request_kwargs: Dict[str, Any] = {"headers": params.get("headers") or {}}
        if method in ("GET", "DELETE"):
            request_kwargs["params"] = params.get("query") or {}
        else:
            request_kwargs["json"] = body

        if client is not None:
            response = await client.request(method, url, **request_kwargs)
        else:
            async with httpx.AsyncClient(timeout=timeout) as session:
                response = await session.request(method, url, **request_kwargs)

        if response.is_error:
            raise ActionExecutionError(
                "webhook", f"{method} {url} returned {response.status_code}"
            )
        logger.info(f"Webhook {method} {url} returned {response.status_code}")
        return {
            "action": "webhook",
            "url": url,
            "method": method,
            "status": response.status_code,
            "success": True,
        }

    registry.register("webhook", call_webhook)


def build_action_registry(
    content: Optional[ContentMutator] = None,
    mailer: Optional[EmailSender] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ActionRegistry:
    """Registry pre-loaded with the built-in actions."""
    registry = ActionRegistry()
    content_actions(registry, content)
    email_action(registry, mailer)
    webhook_action(registry, http_client)
    return registry
