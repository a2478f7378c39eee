"""Trigger service: turns an external request into a Pending run.

Validates the pipeline name and build parameters, deduplicates requests that
carry the same idempotency key, and hands the run to the engine without
waiting for it to execute.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from conveyor.config import TriggerConfig
from conveyor.engine import ExecutionEngine
from conveyor.exceptions import RunNotFoundError, ValidationError
from conveyor.pipeline import PipelineCatalog, PipelineDefinition, RunStatus
from conveyor.pipeline.models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerResult:
    run_id: str
    status: RunStatus
    created: bool


def resolve_parameters(
    pipeline: PipelineDefinition, supplied: Mapping[str, Any] | None
) -> dict[str, str]:
    """Validate supplied parameters against the declaration and fill defaults.

    Values are coerced to strings since they end up as environment variables.
    All problems are collected into a single ValidationError.
    """
    supplied = dict(supplied or {})
    declared = {p.name: p for p in pipeline.parameters}
    errors: list[str] = []

    for name in supplied:
        if name not in declared:
            errors.append(f"undeclared parameter '{name}'")

    resolved: dict[str, str] = {}
    for name, definition in declared.items():
        value = supplied.get(name, definition.default)
        if value is None:
            errors.append(f"missing required parameter '{name}'")
            continue
        if isinstance(value, (dict, list)):
            errors.append(f"parameter '{name}' must be a scalar value")
            continue
        value = str(value).lower() if isinstance(value, bool) else str(value)
        if definition.choices is not None and value not in definition.choices:
            errors.append(
                f"parameter '{name}' must be one of {', '.join(definition.choices)}; got '{value}'"
            )
            continue
        resolved[name] = value

    if errors:
        raise ValidationError(
            f"Invalid parameters for pipeline '{pipeline.name}': {'; '.join(errors)}",
            errors=errors,
        )
    return resolved


class TriggerService:
    """Starts runs on behalf of HTTP requests, the CLI and the scheduler."""

    def __init__(
        self,
        catalog: PipelineCatalog,
        engine: ExecutionEngine,
        config: TriggerConfig | None = None,
    ):
        self.catalog = catalog
        self.engine = engine
        self.config = config or TriggerConfig()
        self._keys: dict[str, tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    def _window(self) -> timedelta:
        return timedelta(seconds=self.config.idempotency_window_seconds)

    def _current_status(self, run_id: str) -> RunStatus:
        try:
            return self.engine.get_status(run_id).status
        except RunNotFoundError:
            return RunStatus.PENDING

    async def trigger(
        self,
        pipeline_name: str,
        parameters: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> TriggerResult:
        pipeline = self.catalog.get(pipeline_name)
        resolved = resolve_parameters(pipeline, parameters)

        if idempotency_key is None:
            run_id = await self.engine.start_run(pipeline, resolved)
            return TriggerResult(run_id=run_id, status=RunStatus.PENDING, created=True)

        async with self._lock:
            existing = self._keys.get(idempotency_key)
            if existing is not None:
                run_id, created_at = existing
                if utcnow() - created_at < self._window():
                    logger.info(
                        f"Idempotency key {idempotency_key!r} already used by run {run_id}"
                    )
                    return TriggerResult(
                        run_id=run_id, status=self._current_status(run_id), created=False
                    )

            run_id = await self.engine.start_run(
                pipeline, resolved, idempotency_key=idempotency_key
            )
            self._keys[idempotency_key] = (run_id, utcnow())

        return TriggerResult(run_id=run_id, status=RunStatus.PENDING, created=True)

    def purge_expired_keys(self, now: datetime | None = None) -> int:
        """Forget idempotency keys older than the window. Returns count removed."""
        cutoff = (now or utcnow()) - self._window()
        expired = [key for key, (_, created_at) in self._keys.items() if created_at <= cutoff]
        for key in expired:
            del self._keys[key]
        if expired:
            logger.info(f"Purged {len(expired)} expired idempotency keys")
        return len(expired)
