"""In-process scheduler backed by asyncio timers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict

from ..contracts import utcnow
from .base import BaseScheduler, ScheduledJob

logger = logging.getLogger(__name__)


class InMemoryScheduler(BaseScheduler):
    """Fires jobs from tasks on the running event loop.

    Pending jobs are lost when the process exits.
    """

    def __init__(self) -> None:
        super().__init__()
        self._tasks: Dict[str, asyncio.Task] = {}

    async def schedule(self, job_name: str, run_at: datetime, payload: Dict[str, Any]) -> str:
        job = ScheduledJob(name=job_name, run_at=run_at, payload=payload)
        self._tasks[job.id] = asyncio.create_task(self._run(job))
        logger.debug(f"Scheduled job {job.name} ({job.id}) for {run_at.isoformat()}")
        return job.id

    async def _run(self, job: ScheduledJob) -> None:
        try:
            delay = (job.run_at - utcnow()).total_seconds()
            # the loop clock may wake slightly early; never fire before run_at
            while delay > 0:
                await asyncio.sleep(delay)
                delay = (job.run_at - utcnow()).total_seconds()
            # the job is no longer cancellable once it starts firing
            self._tasks.pop(job.id, None)
            await self._fire(job)
        finally:
            self._tasks.pop(job.id, None)

    async def cancel(self, job_id: str) -> bool:
        task = self._tasks.pop(job_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
