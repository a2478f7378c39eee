"""Dependency graph checks and orderings over a pipeline's stages."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from conveyor.exceptions import ValidationError
from conveyor.pipeline.models import PipelineDefinition, StageDefinition

logger = logging.getLogger(__name__)


def find_cycle(stages: Sequence[StageDefinition]) -> list[str] | None:
    """Return the first dependency cycle found, e.g. ``["a", "b", "a"]``.

    Depth-first traversal in declared order with an explicit recursion stack.
    Dependencies on unknown stages are ignored here.
    """
    edges = {stage.name: stage.depends_on for stage in stages}
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    def visit(name: str) -> list[str] | None:
        visited.add(name)
        on_stack.add(name)
        path.append(name)
        for dep in edges.get(name, ()):
            if dep not in edges:
                continue
            if dep in on_stack:
                return path[path.index(dep):] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
        on_stack.discard(name)
        path.pop()
        return None

    for stage in stages:
        if stage.name not in visited:
            cycle = visit(stage.name)
            if cycle:
                return cycle
    return None


def validate_pipeline(pipeline: PipelineDefinition) -> None:
    """Reject empty, duplicate, dangling or cyclic stage graphs."""
    errors: list[str] = []

    if not pipeline.stages:
        errors.append(f"pipeline '{pipeline.name}' has no stages")

    seen: set[str] = set()
    for stage in pipeline.stages:
        if stage.name in seen:
            errors.append(f"duplicate stage name '{stage.name}'")
        seen.add(stage.name)

    for stage in pipeline.stages:
        for dep in stage.depends_on:
            if dep not in seen:
                errors.append(f"stage '{stage.name}' depends on unknown stage '{dep}'")

    cycle = find_cycle(pipeline.stages)
    if cycle:
        errors.append("dependency cycle: " + " -> ".join(cycle))

    if errors:
        logger.debug(f"Pipeline '{pipeline.name}' rejected: {errors}")
        raise ValidationError(
            f"Invalid pipeline '{pipeline.name}': {'; '.join(errors)}",
            errors=errors,
            cycle=cycle,
        )


def topological_order(pipeline: PipelineDefinition) -> list[str]:
    """Stable topological order; declared order breaks ties.

    Assumes a validated (acyclic) pipeline.
    """
    remaining = list(pipeline.stages)
    placed: set[str] = set()
    order: list[str] = []

    while remaining:
        for index, stage in enumerate(remaining):
            if all(dep in placed for dep in stage.depends_on):
                order.append(stage.name)
                placed.add(stage.name)
                del remaining[index]
                break
        else:
            raise ValidationError(
                f"Pipeline '{pipeline.name}' has unresolvable dependencies"
            )

    return order


def transitive_dependents(pipeline: PipelineDefinition, name: str) -> list[str]:
    """Every stage that depends on ``name`` directly or transitively."""
    affected: set[str] = {name}
    changed = True
    while changed:
        changed = False
        for stage in pipeline.stages:
            if stage.name not in affected and affected.intersection(stage.depends_on):
                affected.add(stage.name)
                changed = True

    return [stage.name for stage in pipeline.stages if stage.name in affected and stage.name != name]
