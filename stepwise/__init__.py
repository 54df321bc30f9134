"""Stepwise: durable, resumable DAG workflow execution."""

from .config import StepwiseConfig, load_config
from .contracts import (
    Execution,
    ExecutionStatus,
    OperationResult,
    Step,
    StepExecution,
    StepStatus,
    Workflow,
    WorkflowContext,
)
from .dispatch import ExecutionDispatcher, load_workflow_file
from .events import EventBus, WorkflowEvent
from .executor import WorkflowExecutor
from .persistence import get_repository
from .queue import WorkflowQueue
from .steps import OperationRegistry, StepExecutor, default_registry
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "EventBus",
    "Execution",
    "ExecutionDispatcher",
    "ExecutionStatus",
    "OperationRegistry",
    "OperationResult",
    "Step",
    "StepExecution",
    "StepExecutor",
    "StepStatus",
    "StepwiseConfig",
    "Workflow",
    "WorkflowContext",
    "WorkflowEvent",
    "WorkflowExecutor",
    "WorkflowQueue",
    "default_registry",
    "get_repository",
    "get_transport",
    "load_config",
    "load_workflow_file",
]
