"""Redis scheduler for jobs that must survive process restarts."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import redis.asyncio as redis

from ..contracts import utcnow
from .base import BaseScheduler, ScheduledJob

logger = logging.getLogger(__name__)


class RedisScheduler(BaseScheduler):
    """Keeps due times in a sorted set and polls it for due jobs."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "contentflow",
        poll_interval: float = 0.5,
    ) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self.poll_interval = poll_interval
        self._redis: Optional[Any] = None
        self._poller: Optional[asyncio.Task] = None

    @property
    def _queue_key(self) -> str:
        return f"{self.key_prefix}:jobs"

    def _job_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:job:{job_id}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def schedule(self, job_name: str, run_at: datetime, payload: Dict[str, Any]) -> str:
        if not self._redis:
            await self.connect()
        job = ScheduledJob(name=job_name, run_at=run_at, payload=payload)
        await self._redis.set(self._job_key(job.id), job.model_dump_json())
        await self._redis.zadd(self._queue_key, {job.id: run_at.timestamp()})
        return job.id

    async def cancel(self, job_id: str) -> bool:
        if not self._redis:
            await self.connect()
        removed = await self._redis.zrem(self._queue_key, job_id)
        await self._redis.delete(self._job_key(job_id))
        return bool(removed)

    async def poll_once(self) -> int:
        """Fire every job that is due now. Returns the number fired."""
        if not self._redis:
            await self.connect()
        due = await self._redis.zrangebyscore(self._queue_key, 0, utcnow().timestamp())
        fired = 0
        for job_id in due:
            # ZREM is the claim; only one poller wins a given job
            if not await self._redis.zrem(self._queue_key, job_id):
                continue
            raw = await self._redis.get(self._job_key(job_id))
            await self._redis.delete(self._job_key(job_id))
            if raw is None:
                continue
            try:
                job = ScheduledJob.model_validate_json(raw)
            except ValueError as e:
                logger.error(f"Failed to parse scheduled job {job_id}: {e}")
                continue
            await self._fire(job)
            fired += 1
        return fired

    async def _poll(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval)

    async def start(self) -> None:
        if not self._redis:
            await self.connect()
        if self._poller is None:
            self._poller = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            await asyncio.gather(self._poller, return_exceptions=True)
            self._poller = None
        await self.disconnect()
