"""Operation registry mapping step types to their implementations."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

from ..contracts import OperationResult, Step, WorkflowContext
from ..exceptions import UnknownStepType


@runtime_checkable
class Operation(Protocol):
    """Business logic bound to a step type."""

    async def execute(self, step: Step, context: WorkflowContext) -> Any:
        """Run the step and return an ``OperationResult`` (or a compatible dict)."""


OperationFunc = Callable[[Step, WorkflowContext], Awaitable[Any]]


class FunctionOperation:
    """Adapts a plain coroutine function to the ``Operation`` protocol."""

    def __init__(self, func: OperationFunc) -> None:
        self.func = func
        self.__name__ = getattr(func, "__name__", repr(func))

    async def execute(self, step: Step, context: WorkflowContext) -> Any:
        return await self.func(step, context)


class OperationRegistry:
    """Open registry of step operations.

    Adding a step type means registering an implementation here; the
    scheduler never branches on type strings.
    """

    def __init__(self) -> None:
        self._operations: Dict[str, Operation] = {}

    def register(
        self, step_type: str, operation: Optional[Operation | OperationFunc] = None
    ) -> Any:
        """Register ``operation`` for ``step_type``.

        Can be used directly or as a decorator on a coroutine function::

            @registry.register("fetch")
            async def fetch(step, context):
                ...
        """
        if operation is None:

            def decorator(func: OperationFunc) -> OperationFunc:
                self._operations[step_type] = FunctionOperation(func)
                return func

            return decorator

        if not hasattr(operation, "execute"):
            operation = FunctionOperation(operation)
        self._operations[step_type] = operation
        return operation

    def unregister(self, step_type: str) -> None:
        self._operations.pop(step_type, None)

    def get(self, step_type: str) -> Operation:
        try:
            return self._operations[step_type]
        except KeyError:
            raise UnknownStepType(step_type) from None

    def __contains__(self, step_type: object) -> bool:
        return step_type in self._operations

    def types(self) -> List[str]:
        return sorted(self._operations)


def coerce_result(value: Any) -> OperationResult:
    """Normalize whatever an operation returned into an ``OperationResult``."""
    if isinstance(value, OperationResult):
        return value
    if value is None:
        return OperationResult()
    if isinstance(value, dict) and value and set(value) <= {"output", "variables"}:
        return OperationResult.model_validate(value)
    return OperationResult(output=value)
