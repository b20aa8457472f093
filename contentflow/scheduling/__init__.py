"""Scheduler factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ContentflowConfig, load_config
from ..constants import SCHEDULER_ENV_VAR
from .base import BaseScheduler, JobHandler, ScheduledJob
from .inmemory import InMemoryScheduler


def get_scheduler(
    backend: Optional[str] = None, config: Optional[ContentflowConfig] = None
) -> BaseScheduler:
    """Factory function to get the configured scheduler."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv(SCHEDULER_ENV_VAR)
        or config.scheduler.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryScheduler()
    elif backend == "redis":
        from .redis import RedisScheduler

        redis_conf = config.scheduler.redis
        return RedisScheduler(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=redis_conf.key_prefix,
            poll_interval=config.scheduler.poll_interval,
        )
    else:
        raise ValueError(f"Unsupported scheduler backend: {backend}")


__all__ = [
    "BaseScheduler",
    "InMemoryScheduler",
    "JobHandler",
    "ScheduledJob",
    "get_scheduler",
]
