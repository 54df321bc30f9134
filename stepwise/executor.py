"""Workflow executor: the scheduler and state machine driving executions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from . import graph
from .config import StepwiseConfig
from .constants import RETRY_QUEUE, STEP_QUEUE, WORKFLOW_QUEUE
from .contracts import (
    ACTIVE_STATUSES,
    Execution,
    ExecutionError,
    ExecutionStatus,
    JobMessage,
    OperationResult,
    Step,
    StepExecution,
    StepOutcome,
    StepStatus,
    Workflow,
    WorkflowContext,
    step_execution_id,
    utcnow,
)
from .events import (
    WORKFLOW_CANCELLED,
    WORKFLOW_COMPLETED,
    WORKFLOW_FAILED,
    WORKFLOW_PAUSED,
    WORKFLOW_RESUMED,
    WORKFLOW_STARTED,
    EventBus,
)
from .exceptions import (
    ExecutionNotFound,
    ExecutionStateError,
    NotFoundError,
    StepExecutionExists,
    StepNotFound,
    WorkflowNotFound,
)
from .health import ExecutorStats
from .persistence import ExecutionRepository
from .queue import WorkflowQueue
from .steps import StepExecutor, default_registry
from .utils.retry import compute_backoff
from .worker import QueueWorker

logger = logging.getLogger(__name__)

_RUNNING = frozenset({ExecutionStatus.RUNNING})


class WorkflowExecutor:
    """Drives executions through their DAG.

    Handlers keep no state between jobs: every job re-reads the execution,
    workflow and step records from the repository, so redelivered or late
    jobs are harmless. Concurrent completions meet only in the repository's
    atomic merge update.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        queue: WorkflowQueue,
        event_bus: Optional[EventBus] = None,
        step_executor: Optional[StepExecutor] = None,
        config: Optional[StepwiseConfig] = None,
    ) -> None:
        config = config or StepwiseConfig()
        self._repository = repository
        self._queue = queue
        self.events = event_bus or EventBus()
        self._step_executor = step_executor or StepExecutor(
            default_registry(), self.events, timeout=config.step_timeout
        )
        self.max_retries = config.retry.max_retries
        self.backoff_base = config.retry.backoff_base
        self.stats = ExecutorStats()

        worker_conf = config.worker
        self._workers: Dict[str, QueueWorker] = {
            WORKFLOW_QUEUE: QueueWorker(
                queue.transport,
                WORKFLOW_QUEUE,
                self.handle_workflow_job,
                worker_conf.workflow_concurrency,
                worker_conf.poll_interval,
            ),
            STEP_QUEUE: QueueWorker(
                queue.transport,
                STEP_QUEUE,
                self.handle_step_job,
                worker_conf.step_concurrency,
                worker_conf.poll_interval,
            ),
            RETRY_QUEUE: QueueWorker(
                queue.transport,
                RETRY_QUEUE,
                self.handle_retry_job,
                worker_conf.retry_concurrency,
                worker_conf.poll_interval,
            ),
        }
        self._worker_tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self, lifespan: Optional[float] = None) -> None:
        """Spawn one worker per logical queue."""
        if self._worker_tasks:
            return
        self._worker_tasks = [
            asyncio.create_task(worker.run(lifespan=lifespan), name=f"stepwise-{topic}")
            for topic, worker in self._workers.items()
        ]
        logger.info("Workflow executor started")

    async def wait(self) -> None:
        """Block until every worker has exited."""
        if self._worker_tasks:
            await asyncio.gather(*self._worker_tasks)

    async def stop(self) -> None:
        """Stop pulling new jobs and wait for in-flight ones to finish."""
        for worker in self._workers.values():
            worker.stop()
        if self._worker_tasks:
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
            self._worker_tasks = []
        logger.info("Workflow executor stopped")

    async def run_until_idle(self, max_jobs: int = 10_000) -> int:
        """Process due jobs one at a time until every queue is empty.

        Delayed jobs that are not yet due are left in place. Returns the
        number of jobs processed.
        """
        processed = 0
        while processed < max_jobs:
            progressed = False
            for topic, worker in self._workers.items():
                item = await self._queue.transport.receive(topic, timeout=0)
                if item is None:
                    continue
                await worker.process(*item)
                processed += 1
                progressed = True
            if not progressed:
                break
        return processed

    # ------------------------------------------------------------------
    # Trigger API
    async def trigger(self, workflow_id: str, execution_id: str, tenant_id: str) -> None:
        """Enqueue a workflow-start job for an existing pending execution."""
        await self._queue.add_workflow_execution(execution_id, tenant_id, workflow_id)

    # ------------------------------------------------------------------
    # Job handlers
    async def handle_workflow_job(self, message: JobMessage) -> None:
        await self.start_execution(message.execution_id, message.tenant_id)

    async def handle_step_job(self, message: JobMessage) -> None:
        await self.execute_step(message.execution_id, message.step_id, message.tenant_id)

    async def handle_retry_job(self, message: JobMessage) -> None:
        await self.retry_step(
            message.execution_id, message.step_id, message.tenant_id, message.attempt
        )

    async def start_execution(self, execution_id: str, tenant_id: str) -> None:
        execution = await self._repository.get_execution(execution_id, tenant_id)
        if execution is None:
            logger.error(f"Cannot start execution_id={execution_id}: execution not found")
            return
        workflow = await self._repository.get_workflow(execution.workflow_id, tenant_id)
        if workflow is None:
            await self._fail_execution(
                execution_id,
                tenant_id,
                WorkflowNotFound(f"Workflow {execution.workflow_id} not found"),
            )
            return

        started = await self._repository.update_execution(
            execution_id,
            tenant_id,
            {"status": ExecutionStatus.RUNNING, "started_at": utcnow()},
            expected_status={ExecutionStatus.PENDING},
        )
        if not started:
            self.stats.duplicates_ignored += 1
            logger.warning(
                f"Ignoring start job for execution_id={execution_id}: status is {execution.status.value}"
            )
            return

        logger.info(f"Starting workflow {workflow.id} for execution_id={execution_id}")
        await self.events.emit(
            WORKFLOW_STARTED, execution_id, tenant_id, workflow_id=workflow.id
        )
        for step in graph.root_steps(workflow):
            await self._dispatch(execution_id, step.id, tenant_id)

    async def execute_step(self, execution_id: str, step_id: str, tenant_id: str) -> None:
        loaded = await self._load_step(execution_id, step_id, tenant_id)
        if loaded is None:
            return
        execution, workflow, step = loaded
        if execution.status != ExecutionStatus.RUNNING:
            logger.info(
                f"Dropping step job {step_id} for execution_id={execution_id}: "
                f"execution is {execution.status.value}"
            )
            return

        if not graph.dependencies_satisfied(
            step, graph.completed_step_ids(execution.step_results)
        ):
            logger.warning(
                f"Dropping step job {step_id} for execution_id={execution_id}: "
                "dependencies not completed"
            )
            return

        record_id = step_execution_id(execution_id, step_id)
        try:
            await self._repository.create_step_execution(
                StepExecution.for_step(
                    execution_id,
                    step_id,
                    tenant_id,
                    status=StepStatus.RUNNING,
                    started_at=utcnow(),
                )
            )
        except StepExecutionExists:
            # A pending record is a step waiting for a retry that was dropped
            # by pause, and running it again spends that retry; anything else
            # means this job is a redelivery.
            record = await self._repository.get_step_execution(record_id, tenant_id)
            claimed = False
            if record is not None and record.status == StepStatus.PENDING:
                now = utcnow()
                claimed = await self._repository.update_step_execution(
                    record_id,
                    tenant_id,
                    {
                        "status": StepStatus.RUNNING,
                        "started_at": now,
                        "retry_count": record.retry_count + 1,
                        "last_retry_at": now,
                    },
                    expected_status={StepStatus.PENDING},
                )
            if not claimed:
                self.stats.duplicates_ignored += 1
                logger.info(
                    f"Duplicate delivery of step {step_id} for execution_id={execution_id} ignored"
                )
                return

        await self._run_step(execution, workflow, step)

    async def retry_step(
        self, execution_id: str, step_id: str, tenant_id: str, attempt: int
    ) -> None:
        loaded = await self._load_step(execution_id, step_id, tenant_id)
        if loaded is None:
            return
        execution, workflow, step = loaded
        if execution.status != ExecutionStatus.RUNNING:
            logger.info(
                f"Dropping retry {attempt} of step {step_id} for execution_id={execution_id}: "
                f"execution is {execution.status.value}"
            )
            return

        record_id = step_execution_id(execution_id, step_id)
        record = await self._repository.get_step_execution(record_id, tenant_id)
        if record is None or record.retry_count >= attempt:
            self.stats.duplicates_ignored += 1
            logger.info(
                f"Stale retry {attempt} of step {step_id} for execution_id={execution_id} ignored"
            )
            return

        claimed = await self._repository.update_step_execution(
            record_id,
            tenant_id,
            {
                "status": StepStatus.RUNNING,
                "retry_count": attempt,
                "last_retry_at": utcnow(),
            },
            expected_status={StepStatus.PENDING},
        )
        if not claimed:
            self.stats.duplicates_ignored += 1
            return

        logger.info(f"Retrying step {step_id} (attempt {attempt}) for execution_id={execution_id}")
        await self._run_step(execution, workflow, step)

    # ------------------------------------------------------------------
    # Step outcome handling
    async def _run_step(self, execution: Execution, workflow: Workflow, step: Step) -> None:
        context = WorkflowContext.from_execution(execution)
        self.stats.dispatched[step.type] += 1
        try:
            result = await self._step_executor.execute(step, context)
        except Exception as exc:
            logger.warning(
                f"Step {step.id} failed for execution_id={execution.id}: {exc}"
            )
            await self._handle_step_failure(execution, step, exc)
            return
        await self._handle_step_success(execution, workflow, step, result)

    async def _handle_step_success(
        self,
        execution: Execution,
        workflow: Workflow,
        step: Step,
        result: OperationResult,
    ) -> None:
        execution_id, tenant_id = execution.id, execution.tenant_id
        completed_at = utcnow()
        await self._repository.update_step_execution(
            step_execution_id(execution_id, step.id),
            tenant_id,
            {
                "status": StepStatus.COMPLETED,
                "output": result.output,
                "completed_at": completed_at,
                "error": None,
            },
        )
        self.stats.steps_completed += 1

        outcome = StepOutcome(
            status=StepStatus.COMPLETED,
            output=result.output,
            variables=result.variables,
            completed_at=completed_at,
        )
        merged = await self._repository.update_execution(
            execution_id,
            tenant_id,
            {"variables": result.variables, "step_results": {step.id: outcome}},
            expected_status=ACTIVE_STATUSES,
        )
        if not merged:
            logger.warning(
                f"Late result of step {step.id} for execution_id={execution_id} dropped: "
                "execution already finished"
            )
            return

        current = await self._repository.get_execution(execution_id, tenant_id)
        if current is None or current.status != ExecutionStatus.RUNNING:
            logger.info(
                f"Step {step.id} completed for execution_id={execution_id} while "
                f"{current.status.value if current else 'missing'}; dependents not enqueued"
            )
            return

        await self._advance(current, workflow, step.id)

    async def _advance(self, execution: Execution, workflow: Workflow, step_id: str) -> None:
        """Enqueue dependents of `step_id` that became ready and complete the
        execution when every step is done."""
        records = await self._step_records(execution.id, execution.tenant_id)
        completed = graph.completed_step_ids(execution.step_results)
        for ready in graph.newly_ready_steps(workflow, completed, records.keys()):
            if step_id not in ready.depends_on:
                continue
            await self._dispatch(execution.id, ready.id, execution.tenant_id)
        if graph.all_completed(workflow, completed):
            await self._complete_execution(execution)

    async def _handle_step_failure(
        self, execution: Execution, step: Step, exc: Exception
    ) -> None:
        execution_id, tenant_id = execution.id, execution.tenant_id
        record_id = step_execution_id(execution_id, step.id)
        record = await self._repository.get_step_execution(record_id, tenant_id)
        retry_count = record.retry_count if record else 0
        error = ExecutionError.from_exception(exc)

        if getattr(exc, "retryable", True) and retry_count < self.max_retries:
            delay = compute_backoff(retry_count, base=self.backoff_base)
            await self._repository.update_step_execution(
                record_id, tenant_id, {"status": StepStatus.PENDING, "error": error}
            )
            await self._queue.add_step_retry(
                execution_id, step.id, tenant_id, attempt=retry_count + 1, delay=delay
            )
            self.stats.retries_scheduled += 1
            logger.info(
                f"Scheduled retry {retry_count + 1}/{self.max_retries} of step {step.id} "
                f"for execution_id={execution_id} in {delay}s"
            )
            return

        now = utcnow()
        await self._repository.update_step_execution(
            record_id,
            tenant_id,
            {"status": StepStatus.FAILED, "completed_at": now, "error": error},
        )
        self.stats.steps_failed += 1
        reason = (
            f"Step {step.id} failed after {retry_count} retries: {error.message}"
            if retry_count
            else f"Step {step.id} failed: {error.message}"
        )
        await self._fail_execution(
            execution_id,
            tenant_id,
            error.model_copy(update={"message": reason}),
            step_results={
                step.id: StepOutcome(
                    status=StepStatus.FAILED, error=error.message, completed_at=now
                )
            },
        )

    # ------------------------------------------------------------------
    # Execution transitions
    async def _complete_execution(self, execution: Execution) -> None:
        completed = await self._repository.update_execution(
            execution.id,
            execution.tenant_id,
            {"status": ExecutionStatus.COMPLETED, "completed_at": utcnow()},
            expected_status=_RUNNING,
        )
        if not completed:
            return
        self.stats.executions_completed += 1
        await self.events.emit(
            WORKFLOW_COMPLETED,
            execution.id,
            execution.tenant_id,
            workflow_id=execution.workflow_id,
        )
        logger.info(f"Workflow completed successfully for execution_id={execution.id}")

    async def _fail_execution(
        self,
        execution_id: str,
        tenant_id: str,
        error: Union[BaseException, ExecutionError],
        step_results: Optional[Dict[str, StepOutcome]] = None,
    ) -> None:
        if not isinstance(error, ExecutionError):
            error = ExecutionError.from_exception(error)
        fields: Dict[str, Any] = {
            "status": ExecutionStatus.FAILED,
            "completed_at": utcnow(),
            "error": error,
        }
        if step_results:
            fields["step_results"] = step_results
        try:
            failed = await self._repository.update_execution(
                execution_id, tenant_id, fields, expected_status=ACTIVE_STATUSES
            )
        except ExecutionNotFound:
            logger.error(f"Cannot fail execution_id={execution_id}: execution not found")
            return
        if not failed:
            logger.warning(
                f"Failure of execution_id={execution_id} not recorded: execution already finished"
            )
            return
        self.stats.executions_failed += 1
        logger.error(f"Workflow execution failed for execution_id={execution_id}: {error.message}")
        await self.events.emit(WORKFLOW_FAILED, execution_id, tenant_id, error=error.message)

    # ------------------------------------------------------------------
    # Control API
    async def pause_execution(self, execution_id: str, tenant_id: str) -> Execution:
        execution = await self._require_execution(execution_id, tenant_id)
        paused = await self._repository.update_execution(
            execution_id,
            tenant_id,
            {"status": ExecutionStatus.PAUSED, "paused_at": utcnow()},
            expected_status={ExecutionStatus.PENDING, ExecutionStatus.RUNNING},
        )
        if not paused:
            raise ExecutionStateError(
                f"Execution {execution_id} cannot be paused while {execution.status.value}"
            )
        await self._queue.remove_pending_jobs(execution_id)
        await self.events.emit(
            WORKFLOW_PAUSED, execution_id, tenant_id, workflow_id=execution.workflow_id
        )
        logger.info(f"Execution {execution_id} paused")
        return await self._require_execution(execution_id, tenant_id)

    async def resume_execution(self, execution_id: str, tenant_id: str) -> Execution:
        execution = await self._require_execution(execution_id, tenant_id)
        if execution.status != ExecutionStatus.PAUSED:
            raise ExecutionStateError("Execution is not paused")
        workflow = await self._repository.get_workflow(execution.workflow_id, tenant_id)
        if workflow is None:
            error = WorkflowNotFound(f"Workflow {execution.workflow_id} not found")
            await self._fail_execution(execution_id, tenant_id, error)
            raise error

        now = utcnow()
        fields: Dict[str, Any] = {"status": ExecutionStatus.RUNNING, "resumed_at": now}
        if execution.started_at is None:
            fields["started_at"] = now
        resumed = await self._repository.update_execution(
            execution_id, tenant_id, fields, expected_status={ExecutionStatus.PAUSED}
        )
        if not resumed:
            raise ExecutionStateError("Execution is not paused")
        if execution.started_at is None:
            await self.events.emit(
                WORKFLOW_STARTED, execution_id, tenant_id, workflow_id=workflow.id
            )

        # Results merged while paused are only visible after the transition.
        current = await self._require_execution(execution_id, tenant_id)
        completed = graph.completed_step_ids(current.step_results)
        records = await self._step_records(execution_id, tenant_id)
        for step in graph.resumable_steps(workflow, records, completed):
            await self._dispatch(execution_id, step.id, tenant_id)
        await self.events.emit(
            WORKFLOW_RESUMED, execution_id, tenant_id, workflow_id=workflow.id
        )
        logger.info(f"Execution {execution_id} resumed")

        if graph.all_completed(workflow, completed):
            await self._complete_execution(current)
            current = await self._require_execution(execution_id, tenant_id)
        return current

    async def cancel_execution(self, execution_id: str, tenant_id: str) -> Execution:
        execution = await self._require_execution(execution_id, tenant_id)
        cancelled = await self._repository.update_execution(
            execution_id,
            tenant_id,
            {"status": ExecutionStatus.CANCELLED, "cancelled_at": utcnow()},
            expected_status=ACTIVE_STATUSES,
        )
        if not cancelled:
            raise ExecutionStateError(
                f"Execution {execution_id} is already {execution.status.value}"
            )
        await self._queue.remove_pending_jobs(execution_id)
        await self.events.emit(
            WORKFLOW_CANCELLED, execution_id, tenant_id, workflow_id=execution.workflow_id
        )
        logger.info(f"Execution {execution_id} cancelled")
        return await self._require_execution(execution_id, tenant_id)

    async def get_execution_status(
        self, execution_id: str, tenant_id: str
    ) -> Optional[Execution]:
        return await self._repository.get_execution(execution_id, tenant_id)

    # ------------------------------------------------------------------
    # Helpers
    async def _dispatch(self, execution_id: str, step_id: str, tenant_id: str) -> None:
        await self._queue.add_step_execution(execution_id, step_id, tenant_id)
        logger.debug(f"Enqueued step {step_id} for execution_id={execution_id}")

    async def _require_execution(self, execution_id: str, tenant_id: str) -> Execution:
        execution = await self._repository.get_execution(execution_id, tenant_id)
        if execution is None:
            raise ExecutionNotFound(f"Execution {execution_id} not found")
        return execution

    async def _step_records(
        self, execution_id: str, tenant_id: str
    ) -> Dict[str, StepExecution]:
        records = await self._repository.list_step_executions(execution_id, tenant_id)
        return {record.step_id: record for record in records}

    async def _load_step(
        self, execution_id: str, step_id: Optional[str], tenant_id: str
    ) -> Optional[Tuple[Execution, Workflow, Step]]:
        """Re-fetch execution, workflow and step; fails the execution on a
        missing workflow or step."""
        execution = await self._repository.get_execution(execution_id, tenant_id)
        if execution is None:
            logger.error(f"Step job for unknown execution_id={execution_id} dropped")
            return None
        try:
            workflow = await self._repository.get_workflow(execution.workflow_id, tenant_id)
            if workflow is None:
                raise WorkflowNotFound(f"Workflow {execution.workflow_id} not found")
            step = workflow.get_step(step_id) if step_id else None
            if step is None:
                raise StepNotFound(f"Step {step_id} not found")
        except NotFoundError as exc:
            await self._fail_execution(execution_id, tenant_id, exc)
            return None
        return execution, workflow, step
