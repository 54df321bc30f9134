"""End-to-end executor scenarios on in-memory backends."""

import asyncio
from typing import List

import pytest

from stepwise.constants import RETRY_QUEUE, STEP_QUEUE
from stepwise.contracts import (
    Execution,
    ExecutionStatus,
    Step,
    StepStatus,
    Workflow,
    step_execution_id,
)
from stepwise.dispatch import ExecutionDispatcher
from stepwise.exceptions import (
    ExecutionNotFound,
    ExecutionStateError,
    OperationFailed,
    WorkflowNotFound,
)
from stepwise.persistence import InMemoryExecutionRepository

TENANT = "acme"


async def _dispatch(harness, steps: List[Step], input=None) -> Execution:
    dispatcher = ExecutionDispatcher(harness.repository, harness.queue)
    await dispatcher.register_workflow(Workflow(id="wf", tenant_id=TENANT, steps=steps))
    return await dispatcher.dispatch("wf", TENANT, input or {})


async def _execution(harness, execution_id: str) -> Execution:
    return await harness.executor.get_execution_status(execution_id, TENANT)


async def _record(harness, execution_id: str, step_id: str):
    return await harness.repository.get_step_execution(
        step_execution_id(execution_id, step_id), TENANT
    )


def _counting(registry, step_type: str) -> List[str]:
    calls: List[str] = []

    @registry.register(step_type)
    async def operation(step, context):
        calls.append(step.id)
        return {"output": {"step": step.id}, "variables": {f"{step.id}_done": True}}

    return calls


class SlowMergeRepository(InMemoryExecutionRepository):
    """Delays merging the results of the given steps into the execution."""

    def __init__(self, *slow_steps: str, delay: float = 0.05) -> None:
        super().__init__()
        self.slow_steps = set(slow_steps)
        self.delay = delay

    async def update_execution(self, execution_id, tenant_id, fields, expected_status=None):
        if self.slow_steps & set(fields.get("step_results", {})):
            await asyncio.sleep(self.delay)
        return await super().update_execution(
            execution_id, tenant_id, fields, expected_status=expected_status
        )


class Gate:
    """Operation that blocks until released, for steps still running."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, step, context):
        self.started.set()
        await self.release.wait()
        return {"output": "late", "variables": {"late": True}}


@pytest.mark.asyncio
async def test_fan_out_runs_dependents_after_root(harness, registry):
    calls = _counting(registry, "work")
    execution = await _dispatch(
        harness,
        [
            Step(id="A", type="work"),
            Step(id="B", type="work", depends_on=["A"]),
            Step(id="C", type="work", depends_on=["A"]),
        ],
        input={"order": 7},
    )

    await harness.executor.run_until_idle()

    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.COMPLETED
    assert result.completed_at is not None
    assert {k: v.status for k, v in result.step_results.items()} == {
        "A": StepStatus.COMPLETED,
        "B": StepStatus.COMPLETED,
        "C": StepStatus.COMPLETED,
    }
    assert result.variables == {"A_done": True, "B_done": True, "C_done": True}
    assert calls[0] == "A"
    assert sorted(calls) == ["A", "B", "C"]
    assert harness.event_types() == ["workflow.started", "workflow.completed"]


@pytest.mark.asyncio
async def test_diamond_respects_dependency_ordering(harness, registry):
    _counting(registry, "work")
    await _dispatch(
        harness,
        [
            Step(id="A", type="work"),
            Step(id="B", type="work", depends_on=["A"]),
            Step(id="C", type="work", depends_on=["A"]),
            Step(id="D", type="work", depends_on=["B", "C"]),
        ],
    )

    await harness.executor.run_until_idle()

    step_events = [(e.type, e.step_id) for e in harness.events if e.type.startswith("step.")]
    position = {event: index for index, event in enumerate(step_events)}
    assert position[("step.started", "D")] > position[("step.completed", "B")]
    assert position[("step.started", "D")] > position[("step.completed", "C")]
    assert position[("step.started", "B")] > position[("step.completed", "A")]
    assert [s for t, s in step_events if t == "step.started"].count("D") == 1


async def _run_siblings_concurrently(harness, execution, *step_ids: str) -> None:
    """Run the sibling steps side by side after the root, draining the queue
    while the slow sibling's merge is still in flight."""
    executor = harness.executor
    await executor.start_execution(execution.id, TENANT)
    await executor.execute_step(execution.id, "A", TENANT)
    await harness.queue.remove_pending_jobs(execution.id)

    async def drain_midway():
        await asyncio.sleep(0.01)
        await executor.run_until_idle()

    await asyncio.gather(
        *(executor.execute_step(execution.id, step_id, TENANT) for step_id in step_ids),
        drain_midway(),
    )
    await executor.run_until_idle()


@pytest.mark.asyncio
async def test_sibling_results_survive_interleaved_completions(make_harness, registry):
    harness = make_harness(SlowMergeRepository("B"))
    _counting(registry, "work")
    execution = await _dispatch(
        harness,
        [
            Step(id="A", type="work"),
            Step(id="B", type="work", depends_on=["A"]),
            Step(id="C", type="work", depends_on=["A"]),
        ],
    )

    await _run_siblings_concurrently(harness, execution, "B", "C")

    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.COMPLETED
    assert {k: v.status for k, v in result.step_results.items()} == {
        "A": StepStatus.COMPLETED,
        "B": StepStatus.COMPLETED,
        "C": StepStatus.COMPLETED,
    }
    assert result.variables == {"A_done": True, "B_done": True, "C_done": True}
    assert harness.event_types().count("workflow.completed") == 1


@pytest.mark.asyncio
async def test_join_step_sees_every_sibling_variable(make_harness, registry):
    harness = make_harness(SlowMergeRepository("B"))
    _counting(registry, "work")
    seen = []

    @registry.register("join")
    async def join(step, context):
        seen.append(dict(context.variables))
        return {"output": "joined"}

    execution = await _dispatch(
        harness,
        [
            Step(id="A", type="work"),
            Step(id="B", type="work", depends_on=["A"]),
            Step(id="C", type="work", depends_on=["A"]),
            Step(id="D", type="join", depends_on=["B", "C"]),
        ],
    )

    await _run_siblings_concurrently(harness, execution, "B", "C")

    assert seen == [{"A_done": True, "B_done": True, "C_done": True}]
    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.COMPLETED
    assert result.step_results["D"].status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_always_failing_step_retries_with_backoff_then_fails(harness, registry):
    attempts = []

    @registry.register("flaky")
    async def flaky(step, context):
        attempts.append(step.id)
        raise RuntimeError("upstream unavailable")

    execution = await _dispatch(harness, [Step(id="A", type="flaky")])
    delays = []

    await harness.executor.run_until_idle()
    while harness.transport.scheduled_delays(RETRY_QUEUE):
        delay = harness.transport.scheduled_delays(RETRY_QUEUE)[0]
        delays.append(delay)
        record = await _record(harness, execution.id, "A")
        assert record.status == StepStatus.PENDING
        assert (await _execution(harness, execution.id)).status == ExecutionStatus.RUNNING
        harness.transport.advance_time(delay)
        await harness.executor.run_until_idle()

    assert delays == [1.0, 2.0, 4.0]
    assert len(attempts) == 4

    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.FAILED
    assert result.step_results["A"].status == StepStatus.FAILED
    assert "upstream unavailable" in result.error.message
    assert "Traceback" in result.error.detail

    record = await _record(harness, execution.id, "A")
    assert record.status == StepStatus.FAILED
    assert record.retry_count == 3
    assert record.last_retry_at is not None

    failed = [e for e in harness.events if e.type == "workflow.failed"]
    assert len(failed) == 1
    assert "upstream unavailable" in failed[0].error
    assert "Traceback" not in failed[0].error
    assert harness.executor.stats.retries_scheduled == 3


@pytest.mark.asyncio
async def test_step_recovers_on_retry(harness, registry):
    attempts = []

    @registry.register("flaky")
    async def flaky(step, context):
        attempts.append(step.id)
        if len(attempts) < 2:
            raise RuntimeError("first try fails")
        return {"output": "ok"}

    execution = await _dispatch(
        harness, [Step(id="A", type="flaky"), Step(id="B", type="capture", depends_on=["A"])]
    )
    await harness.executor.run_until_idle()
    harness.transport.advance_time(1)
    await harness.executor.run_until_idle()

    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.COMPLETED
    assert (await _record(harness, execution.id, "A")).retry_count == 1


@pytest.mark.asyncio
async def test_non_retryable_failure_fails_immediately(harness, registry):
    @registry.register("strict")
    async def strict(step, context):
        raise OperationFailed("invalid input", retryable=False)

    execution = await _dispatch(harness, [Step(id="A", type="strict")])
    await harness.executor.run_until_idle()

    assert harness.transport.scheduled_delays(RETRY_QUEUE) == []
    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.FAILED
    assert result.error.message == "Step A failed: invalid input"


@pytest.mark.asyncio
async def test_unknown_step_type_fails_execution(harness):
    execution = await _dispatch(harness, [Step(id="A", type="does-not-exist")])
    await harness.executor.run_until_idle()

    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.FAILED
    assert "does-not-exist" in result.error.message


@pytest.mark.asyncio
async def test_cancel_while_step_running_drops_late_result(harness, registry):
    gate = Gate()
    registry.register("gate", gate)
    _counting(registry, "work")
    execution = await _dispatch(
        harness, [Step(id="A", type="gate"), Step(id="B", type="work", depends_on=["A"])]
    )
    executor = harness.executor

    await executor.start_execution(execution.id, TENANT)
    running = asyncio.create_task(executor.execute_step(execution.id, "A", TENANT))
    await asyncio.wait_for(gate.started.wait(), timeout=5)

    cancelled = await executor.cancel_execution(execution.id, TENANT)
    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.cancelled_at is not None

    gate.release.set()
    await asyncio.wait_for(running, timeout=5)
    await executor.run_until_idle()

    record = await _record(harness, execution.id, "A")
    assert record.status == StepStatus.COMPLETED
    assert record.output == "late"
    assert await _record(harness, execution.id, "B") is None

    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.CANCELLED
    assert "A" not in result.step_results
    assert await harness.queue.depths() == {
        "workflow-execution": 0,
        "step-execution": 0,
        "step-retry": 0,
    }
    assert harness.event_types() == ["workflow.started", "workflow.cancelled"]


@pytest.mark.asyncio
async def test_pause_resume_round_trip_does_not_rerun_completed_steps(harness, registry):
    calls = _counting(registry, "work")
    execution = await _dispatch(
        harness, [Step(id="A", type="work"), Step(id="B", type="work", depends_on=["A"])]
    )
    executor = harness.executor

    await executor.start_execution(execution.id, TENANT)
    await executor.execute_step(execution.id, "A", TENANT)

    paused = await executor.pause_execution(execution.id, TENANT)
    assert paused.status == ExecutionStatus.PAUSED
    assert paused.paused_at is not None
    assert await harness.transport.depth(STEP_QUEUE) == 0

    await executor.run_until_idle()
    assert await _record(harness, execution.id, "B") is None

    resumed = await executor.resume_execution(execution.id, TENANT)
    assert resumed.status == ExecutionStatus.RUNNING
    assert resumed.resumed_at is not None
    await executor.run_until_idle()

    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.COMPLETED
    assert calls == ["A", "B"]
    assert harness.event_types() == [
        "workflow.started",
        "workflow.paused",
        "workflow.resumed",
        "workflow.completed",
    ]


@pytest.mark.asyncio
async def test_pause_before_start_then_resume(harness, registry):
    _counting(registry, "work")
    execution = await _dispatch(harness, [Step(id="A", type="work")])

    await harness.executor.pause_execution(execution.id, TENANT)
    await harness.executor.run_until_idle()
    assert (await _execution(harness, execution.id)).status == ExecutionStatus.PAUSED

    resumed = await harness.executor.resume_execution(execution.id, TENANT)
    assert resumed.started_at is not None
    await harness.executor.run_until_idle()
    assert (await _execution(harness, execution.id)).status == ExecutionStatus.COMPLETED
    assert harness.event_types() == [
        "workflow.paused",
        "workflow.started",
        "workflow.resumed",
        "workflow.completed",
    ]


@pytest.mark.asyncio
async def test_late_result_while_paused_is_kept_for_resume(harness, registry):
    gate = Gate()
    registry.register("gate", gate)
    calls = _counting(registry, "work")
    execution = await _dispatch(
        harness, [Step(id="A", type="gate"), Step(id="B", type="work", depends_on=["A"])]
    )
    executor = harness.executor

    await executor.start_execution(execution.id, TENANT)
    running = asyncio.create_task(executor.execute_step(execution.id, "A", TENANT))
    await asyncio.wait_for(gate.started.wait(), timeout=5)
    await executor.pause_execution(execution.id, TENANT)
    gate.release.set()
    await asyncio.wait_for(running, timeout=5)

    paused = await _execution(harness, execution.id)
    assert paused.status == ExecutionStatus.PAUSED
    assert paused.variables == {"late": True}
    assert await harness.transport.depth(STEP_QUEUE) == 0

    await executor.resume_execution(execution.id, TENANT)
    await executor.run_until_idle()
    assert (await _execution(harness, execution.id)).status == ExecutionStatus.COMPLETED
    assert calls == ["B"]


@pytest.mark.asyncio
async def test_resume_completes_when_every_step_finished_while_paused(harness, registry):
    gate = Gate()
    registry.register("gate", gate)
    execution = await _dispatch(harness, [Step(id="A", type="gate")])
    executor = harness.executor

    await executor.start_execution(execution.id, TENANT)
    running = asyncio.create_task(executor.execute_step(execution.id, "A", TENANT))
    await asyncio.wait_for(gate.started.wait(), timeout=5)
    await executor.pause_execution(execution.id, TENANT)
    gate.release.set()
    await asyncio.wait_for(running, timeout=5)

    resumed = await executor.resume_execution(execution.id, TENANT)
    assert resumed.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_pause_during_retry_backoff_resumes_the_step(harness, registry):
    attempts = []

    @registry.register("flaky")
    async def flaky(step, context):
        attempts.append(step.id)
        if len(attempts) == 1:
            raise RuntimeError("transient")
        return {"output": "ok"}

    execution = await _dispatch(harness, [Step(id="A", type="flaky")])
    await harness.executor.run_until_idle()
    assert harness.transport.scheduled_delays(RETRY_QUEUE) == [1.0]

    await harness.executor.pause_execution(execution.id, TENANT)
    assert harness.transport.scheduled_delays(RETRY_QUEUE) == []

    await harness.executor.resume_execution(execution.id, TENANT)
    await harness.executor.run_until_idle()
    assert (await _execution(harness, execution.id)).status == ExecutionStatus.COMPLETED
    assert attempts == ["A", "A"]
    assert (await _record(harness, execution.id, "A")).retry_count == 1


@pytest.mark.asyncio
async def test_pausing_every_backoff_keeps_the_retry_bound(harness, registry):
    attempts = []

    @registry.register("flaky")
    async def flaky(step, context):
        attempts.append(step.id)
        raise RuntimeError("upstream unavailable")

    execution = await _dispatch(harness, [Step(id="A", type="flaky")])
    executor = harness.executor
    await executor.run_until_idle()

    while harness.transport.scheduled_delays(RETRY_QUEUE):
        await executor.pause_execution(execution.id, TENANT)
        await executor.resume_execution(execution.id, TENANT)
        await executor.run_until_idle()

    assert len(attempts) == 4
    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.FAILED
    assert result.error.message.startswith("Step A failed after 3 retries")
    record = await _record(harness, execution.id, "A")
    assert record.status == StepStatus.FAILED
    assert record.retry_count == 3


@pytest.mark.asyncio
async def test_invalid_control_transitions_are_rejected(harness, registry):
    _counting(registry, "work")
    execution = await _dispatch(harness, [Step(id="A", type="work")])

    with pytest.raises(ExecutionStateError, match="not paused"):
        await harness.executor.resume_execution(execution.id, TENANT)
    assert (await _execution(harness, execution.id)).status == ExecutionStatus.PENDING

    await harness.executor.run_until_idle()
    with pytest.raises(ExecutionStateError):
        await harness.executor.pause_execution(execution.id, TENANT)
    with pytest.raises(ExecutionStateError):
        await harness.executor.cancel_execution(execution.id, TENANT)
    assert (await _execution(harness, execution.id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_duplicate_deliveries_are_absorbed(harness, registry):
    calls = _counting(registry, "work")
    execution = await _dispatch(
        harness, [Step(id="A", type="work"), Step(id="B", type="work", depends_on=["A"])]
    )
    executor = harness.executor

    await executor.start_execution(execution.id, TENANT)
    await executor.execute_step(execution.id, "A", TENANT)
    await executor.execute_step(execution.id, "A", TENANT)
    await executor.trigger("wf", execution.id, TENANT)

    # queued: two start jobs, the original A job and B
    await executor.run_until_idle()

    assert calls == ["A", "B"]
    assert (await _execution(harness, execution.id)).status == ExecutionStatus.COMPLETED
    assert harness.event_types().count("workflow.started") == 1
    assert harness.event_types().count("workflow.completed") == 1
    assert executor.stats.duplicates_ignored == 4


@pytest.mark.asyncio
async def test_stale_retry_job_is_ignored(harness, registry):
    attempts = []

    @registry.register("flaky")
    async def flaky(step, context):
        attempts.append(step.id)
        if len(attempts) == 1:
            raise RuntimeError("transient")
        return {"output": "ok"}

    execution = await _dispatch(harness, [Step(id="A", type="flaky")])
    await harness.executor.run_until_idle()
    await harness.queue.add_step_retry(execution.id, "A", TENANT, attempt=1, delay=1)
    harness.transport.advance_time(1)

    await harness.executor.run_until_idle()

    assert attempts == ["A", "A"]
    assert (await _execution(harness, execution.id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_completion_is_idempotent(harness, registry):
    _counting(registry, "work")
    execution = await _dispatch(harness, [Step(id="A", type="work")])
    await harness.executor.run_until_idle()
    completed = await _execution(harness, execution.id)

    await harness.executor._complete_execution(completed)

    again = await _execution(harness, execution.id)
    assert again.completed_at == completed.completed_at
    assert harness.event_types().count("workflow.completed") == 1
    assert harness.executor.stats.executions_completed == 1


@pytest.mark.asyncio
async def test_missing_workflow_fails_execution(harness):
    execution = Execution(workflow_id="ghost", tenant_id=TENANT)
    await harness.repository.create_execution(execution)
    await harness.executor.trigger("ghost", execution.id, TENANT)

    await harness.executor.run_until_idle()

    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.FAILED
    assert "ghost" in result.error.message
    assert harness.event_types() == ["workflow.failed"]


@pytest.mark.asyncio
async def test_missing_step_fails_execution(harness, registry):
    _counting(registry, "work")
    execution = await _dispatch(
        harness, [Step(id="A", type="work"), Step(id="B", type="work", depends_on=["A"])]
    )
    await harness.executor.start_execution(execution.id, TENANT)
    await harness.queue.add_step_execution(execution.id, "nope", TENANT)

    await harness.executor.run_until_idle()

    result = await _execution(harness, execution.id)
    assert result.status == ExecutionStatus.FAILED
    assert "nope" in result.error.message


@pytest.mark.asyncio
async def test_dispatch_requires_registered_workflow(harness):
    dispatcher = ExecutionDispatcher(harness.repository, harness.queue)
    with pytest.raises(WorkflowNotFound):
        await dispatcher.dispatch("wf", TENANT)


@pytest.mark.asyncio
async def test_executions_are_isolated_by_tenant(harness, registry):
    _counting(registry, "work")
    execution = await _dispatch(harness, [Step(id="A", type="work")])

    assert await harness.executor.get_execution_status(execution.id, "other") is None
    with pytest.raises(ExecutionNotFound):
        await harness.executor.cancel_execution(execution.id, "other")
    assert (await _execution(harness, execution.id)).status == ExecutionStatus.PENDING
