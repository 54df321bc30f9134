"""In-memory implementation of the execution repository."""

from __future__ import annotations

import asyncio
from typing import Any, Collection, Dict, Mapping, Optional, Tuple

from ..contracts import (
    Execution,
    ExecutionStatus,
    StepExecution,
    StepStatus,
    Workflow,
)
from ..exceptions import ExecutionNotFound, StepExecutionExists, StepExecutionNotFound
from ..graph import validate_workflow
from .repository import (
    ExecutionRepository,
    apply_execution_update,
    apply_step_execution_update,
)

_Key = Tuple[str, str]


class InMemoryExecutionRepository(ExecutionRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[_Key, Workflow] = {}
        self._executions: Dict[_Key, Execution] = {}
        self._steps: Dict[_Key, StepExecution] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        validate_workflow(workflow)
        self._workflows[(workflow.tenant_id, workflow.id)] = workflow

    async def get_workflow(self, workflow_id: str, tenant_id: str) -> Workflow | None:
        return self._workflows.get((tenant_id, workflow_id))

    async def create_execution(self, execution: Execution) -> None:
        self._executions[(execution.tenant_id, execution.id)] = execution.model_copy(
            deep=True
        )

    async def get_execution(self, execution_id: str, tenant_id: str) -> Execution | None:
        execution = self._executions.get((tenant_id, execution_id))
        return execution.model_copy(deep=True) if execution else None

    async def update_execution(
        self,
        execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[ExecutionStatus]] = None,
    ) -> bool:
        key = (tenant_id, execution_id)
        async with self._lock:
            current = self._executions.get(key)
            if current is None:
                raise ExecutionNotFound(f"Execution {execution_id} not found")
            if expected_status is not None and current.status not in expected_status:
                return False
            self._executions[key] = apply_execution_update(current, fields)
        return True

    async def list_executions(
        self, tenant_id: str, status: Optional[ExecutionStatus] = None
    ) -> list[Execution]:
        return [
            execution.model_copy(deep=True)
            for (tenant, _), execution in self._executions.items()
            if tenant == tenant_id and (status is None or execution.status == status)
        ]

    async def create_step_execution(self, record: StepExecution) -> None:
        key = (record.tenant_id, record.id)
        async with self._lock:
            if key in self._steps:
                raise StepExecutionExists(f"Step execution {record.id} already exists")
            self._steps[key] = record.model_copy(deep=True)

    async def get_step_execution(
        self, step_execution_id: str, tenant_id: str
    ) -> StepExecution | None:
        record = self._steps.get((tenant_id, step_execution_id))
        return record.model_copy(deep=True) if record else None

    async def update_step_execution(
        self,
        step_execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[StepStatus]] = None,
    ) -> bool:
        key = (tenant_id, step_execution_id)
        async with self._lock:
            current = self._steps.get(key)
            if current is None:
                raise StepExecutionNotFound(
                    f"Step execution {step_execution_id} not found"
                )
            if expected_status is not None and current.status not in expected_status:
                return False
            self._steps[key] = apply_step_execution_update(current, fields)
        return True

    async def list_step_executions(
        self, execution_id: str, tenant_id: str
    ) -> list[StepExecution]:
        return [
            record.model_copy(deep=True)
            for (tenant, _), record in self._steps.items()
            if tenant == tenant_id and record.execution_id == execution_id
        ]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass
