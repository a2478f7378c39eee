"""Pipeline document loading and dumping (YAML or JSON).

A pipeline document is an ordered list of stage objects plus optional
parameters, templates and a cron schedule:

    name: demo-app
    parameters:
      - name: VERSION
    templates:
      docker:
        timeoutSeconds: 600
    stages:
      - name: install
        command: npm ci
      - name: build
        uses: docker
        command: docker build -t demo:$VERSION .
        dependsOn: [install]

A stage with ``uses`` is composed from the named template: the pipeline's own
``templates`` first, then the shared template library. Fields set on the
stage win over template fields.
"""

import json
import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import ValidationError as PydanticValidationError

from conveyor.exceptions import ValidationError
from conveyor.pipeline.graph import validate_pipeline
from conveyor.pipeline.models import PipelineDefinition

logger = logging.getLogger(__name__)

DocumentFormat = Literal["yaml", "json"]


def _format_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    return [
        f"{'.'.join(str(x) for x in error['loc']) or 'document'}: {error['msg']}"
        for error in exc.errors()
    ]


def _resolve_templates(
    document: dict[str, Any],
    shared_templates: dict[str, dict[str, Any]] | None,
) -> dict[str, Any]:
    """Compose stages that reference a template by name.

    Shared templates a stage uses are copied into the pipeline's own
    ``templates`` so a dumped pipeline parses again without the library.
    """
    local_templates = document.get("templates") or {}
    if not isinstance(local_templates, dict):
        raise ValidationError("templates must be a mapping of name to stage fields")

    templates = {**(shared_templates or {}), **local_templates}
    stages = document.get("stages")
    if not isinstance(stages, list):
        return document

    resolved_stages = []
    used_shared: dict[str, dict[str, Any]] = {}
    for raw_stage in stages:
        if not isinstance(raw_stage, dict) or not raw_stage.get("uses"):
            resolved_stages.append(raw_stage)
            continue

        template_name = raw_stage["uses"]
        template = templates.get(template_name) if isinstance(template_name, str) else None
        if template is None:
            raise ValidationError(
                f"stage '{raw_stage.get('name', '?')}' uses unknown template '{template_name}'"
            )
        if not isinstance(template, dict):
            raise ValidationError(f"template '{template_name}' must be a mapping of stage fields")
        if template_name not in local_templates:
            used_shared[template_name] = template
        resolved_stages.append({**template, **raw_stage})

    resolved = {**document, "stages": resolved_stages}
    if used_shared:
        resolved["templates"] = {**used_shared, **local_templates}
    return resolved


def parse_pipeline(
    document: dict[str, Any],
    shared_templates: dict[str, dict[str, Any]] | None = None,
) -> PipelineDefinition:
    """Build and validate a pipeline from a decoded document."""
    if not isinstance(document, dict):
        raise ValidationError("pipeline document must be a mapping")

    resolved = _resolve_templates(document, shared_templates)

    try:
        pipeline = PipelineDefinition.model_validate(resolved)
    except PydanticValidationError as e:
        errors = _format_pydantic_errors(e)
        raise ValidationError(
            f"Malformed pipeline '{document.get('name', '?')}': {'; '.join(errors)}",
            errors=errors,
        ) from e

    validate_pipeline(pipeline)
    return pipeline


def read_document(path: Path) -> Any:
    """Decode a YAML or JSON file (chosen by suffix)."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Cannot read pipeline file {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot parse {path}: {e}") from e


def load_shared_templates(path: Path) -> dict[str, dict[str, Any]]:
    """Read a shared template library: a ``templates`` mapping, or a bare mapping."""
    document = read_document(path) or {}
    if isinstance(document, dict) and "templates" in document:
        document = document["templates"] or {}
    if not isinstance(document, dict):
        raise ValidationError(f"{path.name} must map template names to stage fields")
    for name, fields in document.items():
        if not isinstance(fields, dict):
            raise ValidationError(f"template '{name}' in {path.name} must be a mapping")
    return document


def load_pipeline(
    path: Path,
    shared_templates: dict[str, dict[str, Any]] | None = None,
) -> PipelineDefinition:
    """Load a pipeline definition from a YAML or JSON file."""
    pipeline = parse_pipeline(read_document(path), shared_templates)
    logger.debug(f"Loaded pipeline '{pipeline.name}' from {path}")
    return pipeline


def pipeline_to_document(pipeline: PipelineDefinition) -> dict[str, Any]:
    """Document form of a pipeline, camelCase keys, every field explicit."""
    return pipeline.model_dump(mode="json", by_alias=True)


def dump_pipeline(pipeline: PipelineDefinition, fmt: DocumentFormat = "yaml") -> str:
    """Serialize a pipeline so that ``parse_pipeline`` restores it unchanged."""
    document = pipeline_to_document(pipeline)
    if fmt == "json":
        return json.dumps(document, indent=2)
    return yaml.safe_dump(
        document,
        default_flow_style=False,
        allow_unicode=True,
        sort_keys=False,
    )
