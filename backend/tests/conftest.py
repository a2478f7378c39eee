"""Shared helpers for the Conveyor test suite."""

import asyncio

import pytest

from conveyor.config import EngineConfig
from conveyor.engine import CallableExecutor, ExecutionEngine, StageContext
from conveyor.exceptions import StageExecutionError
from conveyor.pipeline import PipelineDefinition, Run, StageStatus, parse_pipeline
from conveyor.storage import RunStore


class Recorder:
    """Stage commands that log start/end events in the order they happen."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.attempts: dict[str, int] = {}

    def _start(self, context: StageContext) -> None:
        self.events.append(("start", context.stage.name))
        self.attempts[context.stage.name] = context.attempt

    def _end(self, context: StageContext) -> None:
        self.events.append(("end", context.stage.name))

    def ok(self, context: StageContext) -> str:
        self._start(context)
        self._end(context)
        return f"{context.stage.name} done"

    async def slow(self, context: StageContext) -> str:
        self._start(context)
        await asyncio.sleep(0.05)
        self._end(context)
        return f"{context.stage.name} done"

    def fail(self, context: StageContext) -> str:
        self._start(context)
        raise StageExecutionError("exit status 1", output="boom", exit_code=1)

    def flaky(self, context: StageContext) -> str:
        self._start(context)
        if context.attempt == 1:
            raise StageExecutionError("first attempt fails")
        self._end(context)
        return "recovered"

    async def hang(self, context: StageContext) -> str:
        """Runs until the run is cancelled."""
        self._start(context)
        await context.cancel_event.wait()
        raise StageExecutionError("stopped on cancel")

    async def stubborn(self, context: StageContext) -> str:
        """Ignores cancellation and finishes late."""
        self._start(context)
        await asyncio.sleep(0.3)
        self._end(context)
        return "finished anyway"

    def executor(self) -> CallableExecutor:
        return CallableExecutor(
            {
                "ok": self.ok,
                "slow": self.slow,
                "fail": self.fail,
                "flaky": self.flaky,
                "hang": self.hang,
                "stubborn": self.stubborn,
            }
        )

    def index(self, kind: str, stage: str) -> int:
        return self.events.index((kind, stage))

    def started(self) -> list[str]:
        return [name for kind, name in self.events if kind == "start"]


class SpyNotifier:
    def __init__(self, store: RunStore | None = None) -> None:
        self.runs: list[Run] = []
        self.store = store
        self.stored_status_at_notify: list[str] = []

    async def notify(self, run: Run) -> None:
        self.runs.append(run)
        if self.store is not None:
            self.stored_status_at_notify.append(self.store.get(run.id).status)


def make_pipeline(*stages: dict, name: str = "demo-app", **extra) -> PipelineDefinition:
    return parse_pipeline({"name": name, "stages": list(stages), **extra})


def make_engine(
    recorder: Recorder,
    store: RunStore | None = None,
    notifier=None,
    **config,
) -> ExecutionEngine:
    defaults = {
        "approval_timeout_seconds": 5.0,
        "cancel_grace_seconds": 0.5,
        "retry_backoff_seconds": 0.01,
        "retry_backoff_cap_seconds": 0.05,
    }
    defaults.update(config)
    return ExecutionEngine(
        store if store is not None else RunStore(),
        recorder.executor(),
        notifier=notifier,
        config=EngineConfig(**defaults),
    )


async def wait_for_stage(
    engine: ExecutionEngine,
    run_id: str,
    stage: str,
    status: StageStatus,
    timeout: float = 2.0,
) -> Run:
    """Poll the engine until a stage reaches the given status."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        run = engine.get_status(run_id)
        result = run.stage_results.get(stage)
        if result is not None and result.status == status:
            return run
        if loop.time() > deadline:
            raise AssertionError(
                f"stage {stage} never reached {status}; "
                f"last seen {result.status if result else 'missing'}"
            )
        await asyncio.sleep(0.01)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
