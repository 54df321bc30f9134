"""Persistence layer for stepwise executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwiseConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> ExecutionRepository:
    """Factory function to construct an execution repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``STEPWISE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.

    Every call builds a new instance; the caller owns it and closes it on
    shutdown.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STEPWISE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryExecutionRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteExecutionRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresExecutionRepository

        return PostgresExecutionRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "SQLiteExecutionRepository",
    "get_repository",
]
