"""Explicit wiring of the service components.

Every collaborator is constructed here from a Settings instance and handed to
the components that need it; nothing reads process-wide state after this.
"""

import logging
from dataclasses import dataclass

from conveyor.config import Settings, get_settings
from conveyor.engine import ExecutionEngine, ShellExecutor, StageExecutor
from conveyor.notifier import Notifier, build_notifier
from conveyor.pipeline import PipelineCatalog
from conveyor.storage import FileRunStore, RunStore
from conveyor.trigger import TriggerService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    catalog: PipelineCatalog
    store: RunStore
    executor: StageExecutor
    notifier: Notifier
    engine: ExecutionEngine
    trigger: TriggerService


def build_runtime(
    settings: Settings | None = None,
    *,
    executor: StageExecutor | None = None,
    notifier: Notifier | None = None,
    catalog: PipelineCatalog | None = None,
    store: RunStore | None = None,
) -> Runtime:
    """Build catalog, store, engine, trigger service and notifier."""
    settings = settings or get_settings()

    if catalog is None:
        catalog = PipelineCatalog.from_directory(settings.pipelines_path)

    if store is None:
        if settings.store.backend == "file":
            store = FileRunStore(settings.runs_path)
            logger.info(f"Persisting runs to {settings.runs_path}")
        else:
            store = RunStore()

    if executor is None:
        executor = ShellExecutor(settings.executor)
    if notifier is None:
        notifier = build_notifier(settings)
    engine = ExecutionEngine(store, executor, notifier=notifier, config=settings.engine)
    trigger = TriggerService(catalog, engine, config=settings.trigger)

    return Runtime(
        settings=settings,
        catalog=catalog,
        store=store,
        executor=executor,
        notifier=notifier,
        engine=engine,
        trigger=trigger,
    )
