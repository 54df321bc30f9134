"""Error taxonomy for the execution engine."""

from __future__ import annotations


class StepwiseError(Exception):
    """Base class for all stepwise errors."""


class NotFoundError(StepwiseError):
    """A referenced entity does not exist (or belongs to another tenant)."""


class WorkflowNotFound(NotFoundError):
    pass


class ExecutionNotFound(NotFoundError):
    pass


class StepNotFound(NotFoundError):
    pass


class StepExecutionNotFound(NotFoundError):
    pass


class ExecutionStateError(StepwiseError):
    """Requested transition is not valid for the execution's current status."""


class WorkflowValidationError(StepwiseError, ValueError):
    """Workflow definition is malformed (unknown dependency, cycle, ...)."""


class StepExecutionExists(StepwiseError):
    """A step execution with the same composite id was already created."""


class OperationFailed(StepwiseError):
    """Typed failure raised by a step operation.

    ``retryable=False`` skips any remaining retries and fails the step
    immediately.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class UnknownStepType(OperationFailed):
    """No operation is registered for a step type."""

    def __init__(self, step_type: str) -> None:
        super().__init__(f"No operation registered for step type: {step_type}", retryable=False)
        self.step_type = step_type
