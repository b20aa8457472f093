from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    CONFIG_ENV_VAR,
    DATABASE_URL_ENV_VAR,
    DEFAULT_CONFIG_FILE,
    DEFAULT_SYSTEM_ACTOR,
    SCHEDULER_ENV_VAR,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis scheduler backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "contentflow"


class SchedulerConfig(BaseModel):
    """Delayed job scheduling settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    poll_interval: float = Field(default=0.5, gt=0)
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Workflow engine behaviour."""

    system_actor: str = DEFAULT_SYSTEM_ACTOR
    default_step_timeout: Optional[float] = Field(default=None, gt=0)


class ContentflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    scheduler: SchedulerConfig = SchedulerConfig()
    engine: EngineConfig = EngineConfig()


def load_config(path: Optional[str] = None) -> ContentflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CONTENTFLOW_CONFIG env
            variable or 'contentflow.yaml' in the current directory.
    """

    config_path = path or os.getenv(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ContentflowConfig(**data)
    else:
        config = ContentflowConfig()

    env_db_url = os.getenv(DATABASE_URL_ENV_VAR) or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_scheduler = os.getenv(SCHEDULER_ENV_VAR)
    if env_scheduler:
        config.scheduler = config.scheduler.model_copy(update={"backend": env_scheduler.lower()})
    return config
