"""Registry of pipeline definitions available to the trigger endpoint."""

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from conveyor.exceptions import PipelineNotFoundError, ValidationError
from conveyor.pipeline.loader import load_pipeline, load_shared_templates
from conveyor.pipeline.models import PipelineDefinition

logger = logging.getLogger(__name__)

SHARED_TEMPLATES_FILE = "templates.yaml"
PIPELINE_SUFFIXES = {".yaml", ".yml", ".json"}


class PipelineCatalog:
    """Pipelines by name, plus the shared stage template library."""

    def __init__(
        self,
        pipelines: Iterable[PipelineDefinition] = (),
        shared_templates: dict[str, dict[str, Any]] | None = None,
    ):
        self.shared_templates = dict(shared_templates or {})
        self._pipelines: dict[str, PipelineDefinition] = {}
        for pipeline in pipelines:
            self.register(pipeline)

    @classmethod
    def from_directory(cls, directory: Path) -> "PipelineCatalog":
        """Load every pipeline document in a directory.

        ``templates.yaml`` holds the shared template library and is not a
        pipeline. Invalid documents are logged and left out.
        """
        if not directory.exists():
            logger.warning(f"Pipelines directory not found: {directory}")
            return cls()

        shared_templates: dict[str, dict[str, Any]] = {}
        templates_path = directory / SHARED_TEMPLATES_FILE
        if templates_path.exists():
            try:
                shared_templates = load_shared_templates(templates_path)
            except ValidationError as e:
                logger.error(f"Ignoring shared templates in {templates_path.name}: {e}")
            else:
                logger.info(f"Loaded {len(shared_templates)} shared stage templates")

        catalog = cls(shared_templates=shared_templates)
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() not in PIPELINE_SUFFIXES or path.name == SHARED_TEMPLATES_FILE:
                continue
            try:
                catalog.register(load_pipeline(path, shared_templates))
            except ValidationError as e:
                logger.error(f"Skipping invalid pipeline {path.name}: {e}")

        logger.info(f"Loaded {len(catalog)} pipelines from {directory}")
        return catalog

    def register(self, pipeline: PipelineDefinition) -> None:
        if pipeline.name in self._pipelines:
            logger.warning(f"Replacing pipeline definition '{pipeline.name}'")
        self._pipelines[pipeline.name] = pipeline

    def get(self, name: str) -> PipelineDefinition:
        pipeline = self._pipelines.get(name)
        if pipeline is None:
            raise PipelineNotFoundError(name)
        return pipeline

    def names(self) -> list[str]:
        return sorted(self._pipelines)

    def __iter__(self):
        return iter(self._pipelines.values())

    def __len__(self) -> int:
        return len(self._pipelines)

    def __contains__(self, name: object) -> bool:
        return name in self._pipelines
