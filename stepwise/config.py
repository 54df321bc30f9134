from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_CONCURRENCY,
    DEFAULT_STEP_CONCURRENCY,
    DEFAULT_WORKFLOW_CONCURRENCY,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "stepwise"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class WorkerConfig(BaseModel):
    """Concurrency limits for the three logical queues."""

    workflow_concurrency: int = DEFAULT_WORKFLOW_CONCURRENCY
    step_concurrency: int = DEFAULT_STEP_CONCURRENCY
    retry_concurrency: int = DEFAULT_RETRY_CONCURRENCY
    poll_interval: float = 0.1


class RetryConfig(BaseModel):
    """Step retry policy."""

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    worker: WorkerConfig = WorkerConfig()
    retry: RetryConfig = RetryConfig()
    step_timeout: Optional[float] = None


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'stepwise.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "stepwise.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_db_url = os.getenv("STEPWISE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
