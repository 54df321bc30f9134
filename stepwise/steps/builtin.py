"""Built-in step operations.

These cover the generic step types an application gets out of the box.
Anything with real side effects (sending mail, assigning human tasks) is
recorded here and left to the surrounding application to act on.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Mapping

from ..contracts import OperationResult, Step, WorkflowContext, utcnow
from ..exceptions import OperationFailed
from .registry import OperationRegistry

logger = logging.getLogger(__name__)

_MISSING = object()


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path (``"order.items.0.sku"``) against nested data."""
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key, _MISSING)
        elif isinstance(current, (list, tuple)) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split(".")
    target = data
    for key in keys[:-1]:
        target = target.setdefault(key, {})
    target[keys[-1]] = value


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (hasattr(value, "__len__") and len(value) == 0)


def _to_number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise OperationFailed(f"Expected a number, got {value!r}", retryable=False) from None


CONDITION_OPERATORS = {
    "equals": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "greater_than": lambda a, b: _to_number(a) > _to_number(b),
    "less_than": lambda a, b: _to_number(a) < _to_number(b),
    "greater_equal": lambda a, b: _to_number(a) >= _to_number(b),
    "less_equal": lambda a, b: _to_number(a) <= _to_number(b),
    "contains": lambda a, b: str(b) in str(a),
    "starts_with": lambda a, b: str(a).startswith(str(b)),
    "ends_with": lambda a, b: str(a).endswith(str(b)),
    "is_empty": lambda a, b: _is_empty(a),
    "is_not_empty": lambda a, b: not _is_empty(a),
    "exists": lambda a, b: a is not None,
    "in": lambda a, b: a in (b or []),
    "not_in": lambda a, b: a not in (b or []),
}


def evaluate_condition(condition: Mapping[str, Any] | None, data: Mapping[str, Any]) -> bool:
    """Evaluate ``{"field", "operator", "value"}`` against ``data``.

    A missing condition is true. ``{"all": [...]}`` and ``{"any": [...]}``
    combine nested conditions.
    """
    if not condition:
        return True
    if "all" in condition:
        return all(evaluate_condition(c, data) for c in condition["all"])
    if "any" in condition:
        return any(evaluate_condition(c, data) for c in condition["any"])

    operator = condition.get("operator", "equals")
    try:
        compare = CONDITION_OPERATORS[operator]
    except KeyError:
        raise OperationFailed(f"Unknown condition operator: {operator}", retryable=False) from None
    return compare(get_path(data, condition["field"]), condition.get("value"))


class CaptureOperation:
    """Records the configured fields into the workflow variables."""

    async def execute(self, step: Step, context: WorkflowContext) -> OperationResult:
        fields = dict(step.config.get("fields", {}))
        return OperationResult(
            output={"captured_data": fields, "timestamp": utcnow().isoformat()},
            variables=fields,
        )


class TransformOperation:
    """Maps, calculates and filters fields of the workflow data."""

    async def execute(self, step: Step, context: WorkflowContext) -> OperationResult:
        source = context.data
        result: Dict[str, Any] = dict(source) if step.config.get("include_source", True) else {}

        for mapping in step.config.get("mappings", []):
            set_path(result, mapping["target"], get_path(source, mapping["source"]))

        for calc in step.config.get("calculations", []):
            set_path(result, calc["target"], self._calculate(calc, source))

        for filt in step.config.get("filters", []):
            result = self._apply_filter(result, filt)

        return OperationResult(output=result, variables=result)

    def _calculate(self, calc: Mapping[str, Any], data: Mapping[str, Any]) -> Any:
        values = [
            get_path(data, operand[1:]) if isinstance(operand, str) and operand.startswith("$") else operand
            for operand in calc.get("operands", [])
        ]
        operation = calc.get("operation")
        if operation == "concat":
            return "".join("" if v is None else str(v) for v in values)
        numbers = [_to_number(v) for v in values]
        if operation == "add":
            return sum(numbers)
        if operation == "multiply":
            product = 1.0
            for n in numbers:
                product *= n
            return product
        if operation in ("subtract", "divide") and numbers:
            total = numbers[0]
            for n in numbers[1:]:
                if operation == "subtract":
                    total -= n
                elif n == 0:
                    raise OperationFailed("Division by zero in calculation", retryable=False)
                else:
                    total /= n
            return total
        raise OperationFailed(f"Unknown calculation: {operation}", retryable=False)

    @staticmethod
    def _apply_filter(data: Dict[str, Any], filt: Mapping[str, Any]) -> Dict[str, Any]:
        kind = filt.get("type")
        if kind == "remove_fields":
            return {k: v for k, v in data.items() if k not in filt.get("fields", [])}
        if kind == "keep_fields":
            return {k: v for k, v in data.items() if k in filt.get("fields", [])}
        if kind == "rename_fields":
            renamed = dict(data)
            for mapping in filt.get("mappings", []):
                if mapping["from"] in renamed:
                    renamed[mapping["to"]] = renamed.pop(mapping["from"])
            return renamed
        raise OperationFailed(f"Unknown filter type: {kind}", retryable=False)


class ConditionOperation:
    """Evaluates a condition against the workflow data."""

    async def execute(self, step: Step, context: WorkflowContext) -> OperationResult:
        passed = evaluate_condition(step.config.get("condition"), context.data)
        variables = {}
        if "result_variable" in step.config:
            variables[step.config["result_variable"]] = passed
        return OperationResult(output={"condition_result": passed}, variables=variables)


class DelayOperation:
    """Waits for ``duration`` units before completing."""

    UNITS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}

    def __init__(self, max_seconds: float | None = None) -> None:
        self.max_seconds = max_seconds

    async def execute(self, step: Step, context: WorkflowContext) -> OperationResult:
        unit = step.config.get("unit", "seconds")
        if unit not in self.UNITS:
            raise OperationFailed(f"Unknown delay unit: {unit}", retryable=False)
        seconds = _to_number(step.config.get("duration", 0)) * self.UNITS[unit]
        if self.max_seconds is not None:
            seconds = min(seconds, self.max_seconds)
        await asyncio.sleep(seconds)
        return OperationResult(output={"delayed_seconds": seconds})


class HumanTaskOperation:
    """Creates a task record for a person to act on.

    Completion of the step means the task was issued; acting on it is the
    job of the application's task UI.
    """

    def __init__(self, task_type: str = "review") -> None:
        self.task_type = task_type

    async def execute(self, step: Step, context: WorkflowContext) -> OperationResult:
        task = {
            "status": "waiting_for_user",
            "task_id": f"task_{uuid.uuid4().hex}",
            "task_type": step.config.get("task_type", self.task_type),
            "assigned_to": step.config.get("assignee"),
            "deadline": step.config.get("deadline"),
            "created_at": utcnow().isoformat(),
        }
        return OperationResult(output=task)


class NotificationOperation:
    """Renders a notification from the workflow data and records it."""

    async def execute(self, step: Step, context: WorkflowContext) -> OperationResult:
        template = step.config.get("message", "")
        try:
            message = template.format(**context.data)
        except (KeyError, IndexError) as exc:
            raise OperationFailed(
                f"Notification template references missing value: {exc}", retryable=False
            ) from None
        notification = {
            "channel": step.config.get("channel", "email"),
            "recipients": list(_as_list(step.config.get("recipients", []))),
            "message": message,
            "sent_at": utcnow().isoformat(),
        }
        logger.info(
            f"Notification via {notification['channel']} to {notification['recipients']} "
            f"for execution_id={context.execution_id}"
        )
        return OperationResult(output=notification)


def _as_list(value: Any) -> Iterable[Any]:
    if isinstance(value, (list, tuple)):
        return value
    return [value] if value else []


def default_registry(max_delay_seconds: float | None = None) -> OperationRegistry:
    """Registry pre-populated with the built-in operations."""
    registry = OperationRegistry()
    registry.register("capture", CaptureOperation())
    registry.register("transform", TransformOperation())
    registry.register("condition", ConditionOperation())
    registry.register("delay", DelayOperation(max_seconds=max_delay_seconds))
    registry.register("human_task", HumanTaskOperation())
    registry.register("review", HumanTaskOperation("review"))
    registry.register("approve", HumanTaskOperation("approval"))
    registry.register("notification", NotificationOperation())
    return registry


__all__: List[str] = [
    "CaptureOperation",
    "ConditionOperation",
    "DelayOperation",
    "HumanTaskOperation",
    "NotificationOperation",
    "TransformOperation",
    "default_registry",
    "evaluate_condition",
    "get_path",
    "set_path",
]
