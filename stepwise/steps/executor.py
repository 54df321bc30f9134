"""Step executor: invokes the operation bound to a step's type."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..contracts import OperationResult, Step, WorkflowContext
from ..events import STEP_COMPLETED, STEP_FAILED, STEP_STARTED, EventBus
from ..exceptions import OperationFailed
from .registry import OperationRegistry, coerce_result

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs one step invocation to completion or failure.

    A step may override the process-wide ``timeout`` through
    ``step.config["timeout"]`` (seconds). Timeouts surface as retryable
    ``OperationFailed`` errors; every other exception propagates unchanged.
    """

    def __init__(
        self,
        registry: OperationRegistry,
        event_bus: Optional[EventBus] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self._events = event_bus
        self._timeout = timeout

    async def execute(self, step: Step, context: WorkflowContext) -> OperationResult:
        operation = self.registry.get(step.type)
        timeout = step.config.get("timeout", self._timeout)

        await self._emit(STEP_STARTED, step, context)
        try:
            if timeout:
                raw = await asyncio.wait_for(operation.execute(step, context), timeout)
            else:
                raw = await operation.execute(step, context)
            result = coerce_result(raw)
        except asyncio.TimeoutError:
            error = OperationFailed(f"Step {step.id} timed out after {timeout}s")
            await self._emit(STEP_FAILED, step, context, error=str(error))
            raise error from None
        except Exception as exc:
            await self._emit(STEP_FAILED, step, context, error=str(exc))
            raise

        await self._emit(STEP_COMPLETED, step, context)
        logger.debug(
            f"Step {step.id} ({step.type}) finished for execution_id={context.execution_id}"
        )
        return result

    async def _emit(
        self, event_type: str, step: Step, context: WorkflowContext, **fields
    ) -> None:
        if self._events is None:
            return
        await self._events.emit(
            event_type,
            context.execution_id,
            context.tenant_id,
            workflow_id=context.workflow_id,
            step_id=step.id,
            **fields,
        )
