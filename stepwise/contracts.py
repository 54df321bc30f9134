"""Core data contracts for stepwise workflows, executions and jobs."""

from __future__ import annotations

import copy
import traceback
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def step_execution_id(execution_id: str, step_id: str) -> str:
    """Composite key of the (execution, step) record."""
    return f"{execution_id}:{step_id}"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset(
    {ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Step(BaseModel):
    """Defines one unit of work in a workflow."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: str
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    config: Dict[str, Any] = Field(default_factory=dict)
    name: Optional[str] = None


class Workflow(BaseModel):
    """Immutable DAG definition.

    Structural validation (unknown references, cycles) is performed by
    :func:`stepwise.graph.validate_workflow` when a definition is registered,
    not on every load.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    tenant_id: str = Field(alias="tenantId")
    name: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((step for step in self.steps if step.id == step_id), None)

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]


class ExecutionError(BaseModel):
    """Error recorded on a failed step or execution.

    ``detail`` keeps the traceback server-side; it is never put on events.
    """

    message: str
    type: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ExecutionError":
        return cls(
            message=str(exc) or exc.__class__.__name__,
            type=exc.__class__.__name__,
            detail="".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        )


class OperationResult(BaseModel):
    """Value returned by a step operation."""

    output: Any = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class StepOutcome(BaseModel):
    """Entry of ``Execution.step_results``."""

    status: StepStatus
    output: Any = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    completed_at: Optional[datetime] = None


class Execution(BaseModel):
    """One run of a workflow. The repository is the system of record."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    tenant_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    step_results: Dict[str, StepOutcome] = Field(default_factory=dict)
    error: Optional[ExecutionError] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class StepExecution(BaseModel):
    """Per-run record of one step's attempts and outcome."""

    id: str
    execution_id: str
    step_id: str
    tenant_id: str
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[ExecutionError] = None

    @classmethod
    def for_step(
        cls, execution_id: str, step_id: str, tenant_id: str, **fields: Any
    ) -> "StepExecution":
        return cls(
            id=step_execution_id(execution_id, step_id),
            execution_id=execution_id,
            step_id=step_id,
            tenant_id=tenant_id,
            **fields,
        )


class WorkflowContext(BaseModel):
    """Snapshot of an execution handed to a step operation.

    Built with deep copies so an operation cannot reach back into executor
    state; all mutation flows through the returned ``OperationResult``.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str
    workflow_id: str
    tenant_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    step_results: Dict[str, StepOutcome] = Field(default_factory=dict)

    @classmethod
    def from_execution(cls, execution: Execution) -> "WorkflowContext":
        return cls(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            tenant_id=execution.tenant_id,
            input=copy.deepcopy(execution.input),
            variables=copy.deepcopy(execution.variables),
            step_results={
                key: value.model_copy(deep=True)
                for key, value in execution.step_results.items()
            },
        )

    @property
    def data(self) -> Dict[str, Any]:
        """Input overlaid with the accumulated variables."""
        return {**self.input, **self.variables}


class JobMessage(BaseModel):
    """Envelope carried by the job transport."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    tenant_id: str
    workflow_id: Optional[str] = None
    step_id: Optional[str] = None
    attempt: int = 0
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "JobMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
