"""Request and response bodies of the HTTP API."""

from typing import Any

from pydantic import ConfigDict, Field

from conveyor.pipeline.models import CamelModel, PipelineDefinition, RunStatus


class TriggerRequest(CamelModel):
    """Body of ``POST /pipelines/{name}/runs``."""

    model_config = ConfigDict(extra="forbid")

    parameters: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=200)


class TriggerResponse(CamelModel):
    run_id: str
    status: RunStatus


class ApprovalResponse(CamelModel):
    run_id: str
    stage_name: str
    approved: bool = True


class CancelResponse(CamelModel):
    run_id: str
    status: RunStatus
    cancel_requested: bool = True


class PipelineSummary(CamelModel):
    name: str
    description: str = ""
    stages: list[str]
    parameters: list[str]
    schedule: str | None = None

    @classmethod
    def from_definition(cls, pipeline: PipelineDefinition) -> "PipelineSummary":
        return cls(
            name=pipeline.name,
            description=pipeline.description,
            stages=pipeline.stage_names,
            parameters=[p.name for p in pipeline.parameters],
            schedule=pipeline.schedule,
        )


class HealthResponse(CamelModel):
    status: str = "ok"
    version: str
    pipelines: int
    active_runs: int
