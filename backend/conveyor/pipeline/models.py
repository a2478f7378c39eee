"""Pipeline, stage and run models.

Documents and API payloads use camelCase keys (``dependsOn``,
``stageResults``); Python attributes are snake_case. Both are accepted on input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from conveyor.exceptions import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_run_id() -> str:
    """Generate a unique run ID (run_{12 hex})."""
    return f"run_{uuid4().hex[:12]}"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Status Enums
# ============================================================================


class StageStatus(StrEnum):
    """Lifecycle of one stage within one run."""

    PENDING = "Pending"
    RUNNING = "Running"
    AWAITING_APPROVAL = "AwaitingApproval"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STAGE_STATUSES


class RunStatus(StrEnum):
    """Lifecycle of a run."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN_STATUSES


class FailureCause(StrEnum):
    """Why a stage ended Failed or Skipped."""

    COMMAND_FAILED = "CommandFailed"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    UPSTREAM_FAILED = "UpstreamFailed"
    HALTED = "Halted"
    INTERRUPTED = "Interrupted"


_TERMINAL_STAGE_STATUSES = frozenset(
    {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED}
)
_TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}
)

STAGE_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset(
        {StageStatus.RUNNING, StageStatus.AWAITING_APPROVAL, StageStatus.SKIPPED}
    ),
    StageStatus.AWAITING_APPROVAL: frozenset(
        {StageStatus.RUNNING, StageStatus.FAILED, StageStatus.SKIPPED}
    ),
    StageStatus.RUNNING: frozenset({StageStatus.SUCCEEDED, StageStatus.FAILED}),
    StageStatus.SUCCEEDED: frozenset(),
    StageStatus.FAILED: frozenset(),
    StageStatus.SKIPPED: frozenset(),
}

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


# ============================================================================
# Definitions (immutable)
# ============================================================================


class ParameterDefinition(CamelModel):
    """Build parameter accepted at trigger time."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    default: str | None = None
    description: str = ""
    choices: tuple[str, ...] | None = None

    @property
    def required(self) -> bool:
        return self.default is None


class StageDefinition(CamelModel):
    """Named unit of work within a pipeline."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    command: str = ""
    depends_on: tuple[str, ...] = ()
    parallel_group: str | None = None
    requires_approval: bool = False
    timeout_seconds: float | None = Field(default=None, gt=0)
    retries: int = Field(default=0, ge=0, le=10)
    uses: str | None = None
    description: str = ""

    @field_validator("depends_on", mode="before")
    @classmethod
    def collapse_duplicates(cls, v: Any) -> Any:
        """Treat dependsOn as a set while keeping the declared order."""
        if isinstance(v, str):
            v = [v]
        if isinstance(v, (list, tuple)):
            return tuple(dict.fromkeys(v))
        return v

    @model_validator(mode="after")
    def require_command(self) -> StageDefinition:
        if not self.command.strip() and not self.requires_approval:
            raise ValueError(
                f"stage '{self.name}' needs a command unless it only requires approval"
            )
        return self


class PipelineDefinition(CamelModel):
    """Ordered stage graph plus its build parameters."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    description: str = ""
    parameters: tuple[ParameterDefinition, ...] = ()
    templates: dict[str, dict[str, Any]] = Field(default_factory=dict)
    stages: tuple[StageDefinition, ...] = ()
    schedule: str | None = None

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def get_stage(self, name: str) -> StageDefinition | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


# ============================================================================
# Run State (mutable while active)
# ============================================================================


class StageResult(CamelModel):
    """Outcome of one stage within one run."""

    stage_name: str
    status: StageStatus = StageStatus.PENDING
    output: str = ""
    cause: FailureCause | None = None
    error: str | None = None
    attempts: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None

    def advance(self, status: StageStatus) -> None:
        """Move forward through the stage state machine."""
        if status not in STAGE_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Stage '{self.stage_name}' cannot go from {self.status} to {status}"
            )
        self.status = status
        if status == StageStatus.RUNNING:
            self.started_at = utcnow()
        elif status.is_terminal:
            self.ended_at = utcnow()


class Run(CamelModel):
    """One invocation of a pipeline."""

    id: str = Field(default_factory=generate_run_id)
    pipeline: str
    parameters: dict[str, str] = Field(default_factory=dict)
    stage_results: dict[str, StageResult] = Field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    idempotency_key: str | None = None
    cancel_requested: bool = False
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def advance(self, status: RunStatus) -> None:
        """Move forward through the run state machine."""
        if status not in RUN_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Run {self.id} cannot go from {self.status} to {status}"
            )
        self.status = status
        if status == RunStatus.RUNNING:
            self.started_at = utcnow()
        elif status.is_terminal:
            self.ended_at = utcnow()

    def results_with(self, status: StageStatus) -> list[StageResult]:
        return [r for r in self.stage_results.values() if r.status == status]
