"""Pipeline definitions: stage models, graph validation, document loading."""

from .catalog import PipelineCatalog
from .graph import find_cycle, topological_order, transitive_dependents, validate_pipeline
from .loader import dump_pipeline, load_pipeline, parse_pipeline, pipeline_to_document
from .models import (
    FailureCause,
    ParameterDefinition,
    PipelineDefinition,
    Run,
    RunStatus,
    StageDefinition,
    StageResult,
    StageStatus,
)

__all__ = [
    # Models
    "FailureCause",
    "ParameterDefinition",
    "PipelineDefinition",
    "Run",
    "RunStatus",
    "StageDefinition",
    "StageResult",
    "StageStatus",
    # Graph
    "find_cycle",
    "topological_order",
    "transitive_dependents",
    "validate_pipeline",
    # Documents
    "dump_pipeline",
    "load_pipeline",
    "parse_pipeline",
    "pipeline_to_document",
    "PipelineCatalog",
]
