"""Conveyor exception hierarchy.

Exception Classes:
- ValidationError: bad trigger parameters, malformed or cyclic pipeline (never retried)
- StageExecutionError: a stage command failed (recorded on the stage result)
- ApprovalTimeout: no approval arrived before the approval timeout
- DeliveryError: a notification sink could not be reached (logged only)
- StorageError: the run store could not read or write a record
"""


class ConveyorError(Exception):
    """Base exception for Conveyor errors."""


class ValidationError(ConveyorError):
    """Invalid pipeline definition or trigger request."""

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        cycle: list[str] | None = None,
    ):
        super().__init__(message)
        self.errors = errors or [message]
        self.cycle = cycle


class PipelineNotFoundError(ValidationError):
    """Unknown pipeline name."""

    def __init__(self, name: str):
        super().__init__(f"Pipeline not found: {name}")
        self.name = name


class RunNotFoundError(ConveyorError):
    """Unknown run id."""

    def __init__(self, run_id: str):
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class InvalidTransitionError(ConveyorError):
    """A status change that would move a run or stage backwards."""


class StageExecutionError(ConveyorError):
    """The command behind a stage failed."""

    def __init__(
        self,
        message: str,
        output: str = "",
        exit_code: int | None = None,
    ):
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code


class ApprovalTimeout(ConveyorError):
    """No approval arrived for a gated stage in time."""

    def __init__(self, stage_name: str, timeout_seconds: float):
        super().__init__(
            f"Stage '{stage_name}' was not approved within {timeout_seconds:g}s"
        )
        self.stage_name = stage_name
        self.timeout_seconds = timeout_seconds


class DeliveryError(ConveyorError):
    """A notification could not be delivered."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(ConveyorError):
    """The run store is unavailable."""
