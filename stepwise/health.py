"""Operational reporting: connectivity, queue depths and executor counters."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .persistence import ExecutionRepository
from .queue import WorkflowQueue


@dataclass
class ExecutorStats:
    """In-process counters kept by a workflow executor."""

    dispatched: Counter = field(default_factory=Counter)
    retries_scheduled: int = 0
    steps_completed: int = 0
    steps_failed: int = 0
    duplicates_ignored: int = 0
    executions_completed: int = 0
    executions_failed: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dispatched": dict(self.dispatched),
            "retries_scheduled": self.retries_scheduled,
            "steps_completed": self.steps_completed,
            "steps_failed": self.steps_failed,
            "duplicates_ignored": self.duplicates_ignored,
            "executions_completed": self.executions_completed,
            "executions_failed": self.executions_failed,
        }


async def health_report(
    repository: ExecutionRepository,
    queue: WorkflowQueue,
    stats: Optional[ExecutorStats] = None,
) -> Dict[str, Any]:
    """Connectivity of the repository and queue plus per-queue depth."""
    repository_ok = await repository.ping()
    queue_ok = await queue.ping()
    report: Dict[str, Any] = {
        "status": "ok" if repository_ok and queue_ok else "degraded",
        "repository": repository_ok,
        "queue": queue_ok,
        "queue_depths": await queue.depths() if queue_ok else {},
    }
    if stats is not None:
        report["stats"] = stats.as_dict()
    return report
