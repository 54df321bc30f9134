"""The three logical job queues used by the workflow executor."""

from __future__ import annotations

import logging
from typing import Dict

from .constants import RETRY_QUEUE, STEP_QUEUE, WORKFLOW_QUEUE
from .contracts import JobMessage
from .transports import BaseTransport

logger = logging.getLogger(__name__)

QUEUE_NAMES = (WORKFLOW_QUEUE, STEP_QUEUE, RETRY_QUEUE)


class WorkflowQueue:
    """Durable job queue for workflow starts, step dispatch and step retries.

    Retries use their own topic so a burst of failing steps cannot starve
    first-attempt dispatch.
    """

    def __init__(self, transport: BaseTransport) -> None:
        self.transport = transport

    async def connect(self) -> None:
        await self.transport.connect()

    async def close(self) -> None:
        await self.transport.disconnect()

    async def add_workflow_execution(
        self, execution_id: str, tenant_id: str, workflow_id: str | None = None
    ) -> None:
        await self.transport.publish(
            WORKFLOW_QUEUE,
            JobMessage(
                execution_id=execution_id, tenant_id=tenant_id, workflow_id=workflow_id
            ),
        )

    async def add_step_execution(
        self, execution_id: str, step_id: str, tenant_id: str, delay: float = 0
    ) -> None:
        await self.transport.publish(
            STEP_QUEUE,
            JobMessage(execution_id=execution_id, step_id=step_id, tenant_id=tenant_id),
            delay=delay,
        )

    async def add_step_retry(
        self,
        execution_id: str,
        step_id: str,
        tenant_id: str,
        attempt: int,
        delay: float,
    ) -> None:
        await self.transport.publish(
            RETRY_QUEUE,
            JobMessage(
                execution_id=execution_id,
                step_id=step_id,
                tenant_id=tenant_id,
                attempt=attempt,
            ),
            delay=delay,
        )

    async def remove_pending_jobs(self, execution_id: str) -> int:
        """Best-effort removal of unclaimed jobs of an execution on every queue."""
        removed = 0
        for name in QUEUE_NAMES:
            removed += await self.transport.remove_pending(name, execution_id)
        logger.info(f"Removed {removed} pending job(s) for execution_id={execution_id}")
        return removed

    async def depths(self) -> Dict[str, int]:
        return {name: await self.transport.depth(name) for name in QUEUE_NAMES}

    async def ping(self) -> bool:
        return await self.transport.ping()
