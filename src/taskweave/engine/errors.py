"""Error taxonomy for the execution engine."""

from __future__ import annotations


class TaskweaveError(RuntimeError):
    """Base class for engine errors surfaced to callers."""

    code = "taskweave_error"


class ValidationError(TaskweaveError):
    """Malformed or cyclic graph, or an operation invalid for the current state."""

    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, value: object = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


class CycleError(ValidationError):
    """Dependency relation contains a cycle."""

    code = "cycle_error"

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            field="dependencies",
            value=cycle,
        )
        self.cycle = cycle


class NotFoundError(TaskweaveError):
    """Unknown graph, execution or step id."""

    code = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(f"{resource_type} not found: {resource_id}")
        self.resource_type = resource_type
        self.resource_id = resource_id


class StepExecutionError(TaskweaveError):
    """A tool or inference call failed, or the scheduler could not make progress."""

    code = "step_execution_error"

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class AggregationError(TaskweaveError):
    """Step result and aggregate counters could not be committed together."""

    code = "aggregation_error"


class SuspensionSignal(Exception):  # noqa: N818
    """Execution paused for clarification or a stop request.

    Not an error: callers read ``reason`` and resume later.
    """

    def __init__(self, reason: str, *, execution_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.execution_id = execution_id
