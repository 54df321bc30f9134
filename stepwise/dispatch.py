"""Workflow registration and execution dispatch for stepwise."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .contracts import Execution, Workflow
from .exceptions import WorkflowNotFound, WorkflowValidationError
from .graph import validate_workflow
from .persistence import ExecutionRepository
from .queue import WorkflowQueue

logger = logging.getLogger(__name__)


def load_workflow_file(path: Union[str, Path], tenant_id: Optional[str] = None) -> Workflow:
    """Read a workflow definition from a YAML (or JSON) file and validate it.

    ``tenant_id`` fills in or overrides the ``tenantId`` of the definition.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise WorkflowValidationError(f"{path} does not contain a workflow mapping")
    if tenant_id is not None:
        data.pop("tenantId", None)
        data["tenant_id"] = tenant_id
    workflow = Workflow.model_validate(data)
    validate_workflow(workflow)
    return workflow


class ExecutionDispatcher:
    """Service responsible for registering workflows and dispatching executions."""

    def __init__(self, repository: ExecutionRepository, queue: WorkflowQueue) -> None:
        self._repository = repository
        self._queue = queue

    async def register_workflow(self, workflow: Workflow) -> Workflow:
        """Validate and store ``workflow``; raises ``WorkflowValidationError``."""
        await self._repository.save_workflow(workflow)
        logger.info(
            f"Registered workflow {workflow.id} ({len(workflow.steps)} steps) "
            f"for tenant {workflow.tenant_id}"
        )
        return workflow

    async def dispatch(
        self,
        workflow_id: str,
        tenant_id: str,
        input: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
    ) -> Execution:
        """Create a pending execution and enqueue its workflow-start job.

        Args:
            workflow_id: Registered workflow to run.
            tenant_id: Tenant owning both the workflow and the execution.
            input: Initial variables made available to every step.
            execution_id: Optional caller-chosen id; a UUID by default.

        Returns:
            The pending execution as stored.
        """
        workflow = await self._repository.get_workflow(workflow_id, tenant_id)
        if workflow is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")

        execution = Execution(
            id=execution_id or str(uuid.uuid4()),
            workflow_id=workflow.id,
            tenant_id=tenant_id,
            input=dict(input or {}),
        )
        await self._repository.create_execution(execution)
        await self._queue.add_workflow_execution(execution.id, tenant_id, workflow.id)
        logger.info(f"Dispatched workflow {workflow.id} as execution_id={execution.id}")
        return execution
