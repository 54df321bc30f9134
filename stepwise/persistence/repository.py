"""Repository abstraction for workflow and execution state."""

from __future__ import annotations

from typing import Any, Collection, Mapping, Optional, Protocol

from ..contracts import (
    Execution,
    ExecutionStatus,
    StepExecution,
    StepStatus,
    Workflow,
)

# Execution fields merged key-by-key on partial update instead of replaced.
MERGED_EXECUTION_FIELDS = frozenset({"variables", "step_results"})


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends.

    Every operation is scoped by ``tenant_id``; a record belonging to another
    tenant behaves exactly like a missing one.
    """

    async def save_workflow(self, workflow: Workflow) -> None:
        """Validate and persist (or replace) a workflow definition."""

    async def get_workflow(self, workflow_id: str, tenant_id: str) -> Workflow | None:
        """Retrieve a workflow definition."""

    async def create_execution(self, execution: Execution) -> None:
        """Persist a new execution record."""

    async def get_execution(self, execution_id: str, tenant_id: str) -> Execution | None:
        """Retrieve an execution by id."""

    async def update_execution(
        self,
        execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[ExecutionStatus]] = None,
    ) -> bool:
        """Atomically apply a partial update.

        ``variables`` and ``step_results`` are merged into the stored values.
        When ``expected_status`` is given the update only applies if the
        current status is one of them; returns whether it was applied.
        Raises ``ExecutionNotFound`` if there is no such execution.
        """

    async def list_executions(
        self, tenant_id: str, status: Optional[ExecutionStatus] = None
    ) -> list[Execution]:
        """Return executions for a tenant, optionally filtered by status."""

    async def create_step_execution(self, record: StepExecution) -> None:
        """Persist a step execution; raises ``StepExecutionExists`` on duplicates."""

    async def get_step_execution(
        self, step_execution_id: str, tenant_id: str
    ) -> StepExecution | None:
        """Retrieve a step execution by composite id."""

    async def update_step_execution(
        self,
        step_execution_id: str,
        tenant_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[Collection[StepStatus]] = None,
    ) -> bool:
        """Apply a partial update, optionally guarded by the current status."""

    async def list_step_executions(
        self, execution_id: str, tenant_id: str
    ) -> list[StepExecution]:
        """Return all step execution records of an execution."""

    async def ping(self) -> bool:
        """Return ``True`` when the backend is reachable."""

    async def close(self) -> None:
        """Release connections held by the backend."""


def apply_execution_update(execution: Execution, fields: Mapping[str, Any]) -> Execution:
    """Return a copy of ``execution`` with ``fields`` applied using merge semantics."""
    data = execution.model_dump()
    for key, value in fields.items():
        if key not in Execution.model_fields or key in ("id", "tenant_id"):
            raise ValueError(f"Cannot update execution field: {key}")
        if key in MERGED_EXECUTION_FIELDS:
            data[key] = {**data[key], **dict(value or {})}
        else:
            data[key] = value
    return Execution.model_validate(data)


def apply_step_execution_update(
    record: StepExecution, fields: Mapping[str, Any]
) -> StepExecution:
    data = record.model_dump()
    for key, value in fields.items():
        if key not in StepExecution.model_fields or key in ("id", "tenant_id"):
            raise ValueError(f"Cannot update step execution field: {key}")
        data[key] = value
    return StepExecution.model_validate(data)
