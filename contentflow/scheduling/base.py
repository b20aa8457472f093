"""Base scheduler interface for delayed workflow re-entry."""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict

from pydantic import BaseModel, Field

from ..contracts import new_id

logger = logging.getLogger(__name__)


class ScheduledJob(BaseModel):
    """A named job due at ``run_at``."""

    id: str = Field(default_factory=new_id)
    name: str
    run_at: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


JobHandler = Callable[[ScheduledJob], Awaitable[Any]]


class BaseScheduler(metaclass=abc.ABCMeta):
    """Abstract scheduler that fires registered handlers when jobs are due."""

    def __init__(self) -> None:
        self._handlers: Dict[str, JobHandler] = {}

    def on_due(self, job_name: str, handler: JobHandler) -> None:
        """Register the handler invoked for jobs named ``job_name``."""
        self._handlers[job_name] = handler

    async def start(self) -> None:
        """Begin firing due jobs (no-op by default)."""
        pass

    async def stop(self) -> None:
        """Stop firing jobs (no-op by default)."""
        pass

    @abc.abstractmethod
    async def schedule(self, job_name: str, run_at: datetime, payload: Dict[str, Any]) -> str:
        """Register a job and return its id."""
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Drop a pending job. Returns ``True`` if it was still pending."""
        raise NotImplementedError

    async def _fire(self, job: ScheduledJob) -> None:
        handler = self._handlers.get(job.name)
        if handler is None:
            logger.warning(f"No handler registered for job {job.name} ({job.id})")
            return
        try:
            await handler(job)
        except Exception:
            # a failing handler must not stop the scheduler loop
            logger.exception(f"Handler for job {job.name} ({job.id}) failed")
