"""Step operations and the executor that invokes them."""

from .builtin import default_registry
from .executor import StepExecutor
from .registry import FunctionOperation, Operation, OperationRegistry, coerce_result

__all__ = [
    "FunctionOperation",
    "Operation",
    "OperationRegistry",
    "StepExecutor",
    "coerce_result",
    "default_registry",
]
