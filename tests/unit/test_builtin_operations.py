import pytest

from stepwise.contracts import Step, WorkflowContext
from stepwise.exceptions import OperationFailed
from stepwise.steps import StepExecutor, default_registry
from stepwise.steps.builtin import evaluate_condition, get_path


def _context(**variables) -> WorkflowContext:
    return WorkflowContext(
        execution_id="exec-1",
        workflow_id="wf",
        tenant_id="t1",
        input={"customer": {"name": "Ada", "tier": "gold"}, "amount": 40},
        variables=variables,
    )


async def _run(step_type: str, config: dict, context: WorkflowContext = None):
    executor = StepExecutor(default_registry(max_delay_seconds=0))
    return await executor.execute(
        Step(id="s", type=step_type, config=config), context or _context()
    )


def test_get_path():
    data = {"a": {"b": [{"c": 1}]}}
    assert get_path(data, "a.b.0.c") == 1
    assert get_path(data, "a.x", default="d") == "d"
    assert get_path(data, "a.b.5") is None


def test_evaluate_condition_combinators():
    data = {"amount": 40, "tier": "gold"}
    assert evaluate_condition(None, data)
    assert evaluate_condition(
        {
            "all": [
                {"field": "amount", "operator": "greater_than", "value": 10},
                {"any": [{"field": "tier", "value": "silver"}, {"field": "tier", "value": "gold"}]},
            ]
        },
        data,
    )
    assert not evaluate_condition({"field": "tier", "operator": "in", "value": ["bronze"]}, data)
    with pytest.raises(OperationFailed):
        evaluate_condition({"field": "tier", "operator": "resembles"}, data)


@pytest.mark.asyncio
async def test_capture_records_fields_as_variables():
    result = await _run("capture", {"fields": {"plan": "pro"}})
    assert result.variables == {"plan": "pro"}
    assert result.output["captured_data"] == {"plan": "pro"}


@pytest.mark.asyncio
async def test_transform_mappings_calculations_and_filters():
    result = await _run(
        "transform",
        {
            "mappings": [{"source": "customer.name", "target": "name"}],
            "calculations": [
                {"target": "total", "operation": "multiply", "operands": ["$amount", 1.5]},
                {"target": "label", "operation": "concat", "operands": ["$customer.tier", "-", 1]},
            ],
            "filters": [
                {"type": "remove_fields", "fields": ["customer"]},
                {"type": "rename_fields", "mappings": [{"from": "label", "to": "badge"}]},
            ],
        },
    )
    assert result.variables == {"amount": 40, "name": "Ada", "total": 60.0, "badge": "gold-1"}


@pytest.mark.asyncio
async def test_transform_division_by_zero_is_not_retryable():
    with pytest.raises(OperationFailed) as exc_info:
        await _run(
            "transform",
            {"calculations": [{"target": "x", "operation": "divide", "operands": [1, 0]}]},
        )
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_condition_reads_variables_over_input():
    result = await _run(
        "condition",
        {
            "condition": {"field": "amount", "operator": "less_than", "value": 50},
            "result_variable": "small_order",
        },
        _context(amount=100),
    )
    assert result.output == {"condition_result": False}
    assert result.variables == {"small_order": False}


@pytest.mark.asyncio
async def test_delay_is_capped():
    result = await _run("delay", {"duration": 2, "unit": "hours"})
    assert result.output == {"delayed_seconds": 0}


@pytest.mark.asyncio
async def test_human_task_types():
    review = await _run("review", {"assignee": "ops"})
    approve = await _run("approve", {})
    assert review.output["task_type"] == "review"
    assert review.output["assigned_to"] == "ops"
    assert approve.output["task_type"] == "approval"
    assert approve.output["status"] == "waiting_for_user"


@pytest.mark.asyncio
async def test_notification_renders_template():
    result = await _run(
        "notification",
        {"message": "Order total {amount}", "recipients": "ops@example.com"},
    )
    assert result.output["message"] == "Order total 40"
    assert result.output["recipients"] == ["ops@example.com"]

    with pytest.raises(OperationFailed):
        await _run("notification", {"message": "Hello {missing}"})
