"""
Execution Engine

Runs a pipeline's stage graph for one Run at a time per driver task.

Responsibilities:
- Dispatch stages in dependency order; declared order breaks ties
- Dispatch a whole parallel group at once when its first member is next
- Suspend approval gates on an event until approve() or the approval timeout
- Skip transitive dependents of a failed stage and halt further dispatch
- Cooperative cancellation with a grace period for running stages
- Persist a snapshot to the run store after every transition
- Notify the configured sink exactly once when the run is terminal

Usage:
    engine = ExecutionEngine(store, ShellExecutor(), notifier=LogNotifier())
    run_id = await engine.start_run(pipeline, {"VERSION": "1.2.0"})
    run = await engine.wait(run_id)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from conveyor.config import EngineConfig
from conveyor.engine.executors import StageContext, StageExecutor
from conveyor.exceptions import (
    ApprovalTimeout,
    DeliveryError,
    StageExecutionError,
    StorageError,
)
from conveyor.notifier import Notifier
from conveyor.pipeline.graph import topological_order, transitive_dependents, validate_pipeline
from conveyor.pipeline.models import (
    FailureCause,
    PipelineDefinition,
    Run,
    RunStatus,
    StageDefinition,
    StageResult,
    StageStatus,
)
from conveyor.storage import RunStore

logger = logging.getLogger(__name__)


@dataclass
class _ActiveRun:
    """Engine-private state of a run that has not reached a terminal status."""

    run: Run
    pipeline: PipelineDefinition
    order: list[str]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    approvals: dict[str, asyncio.Event] = field(default_factory=dict)
    tasks: dict[str, asyncio.Task] = field(default_factory=dict)
    halted: bool = False

    @property
    def stopping(self) -> bool:
        return self.halted or self.cancel_event.is_set()


class ExecutionEngine:
    """Orchestrates runs of pipeline definitions."""

    def __init__(
        self,
        store: RunStore,
        executor: StageExecutor,
        notifier: Notifier | None = None,
        config: EngineConfig | None = None,
    ):
        self._store = store
        self._executor = executor
        self._notifier = notifier
        self.config = config or EngineConfig()
        self._active: dict[str, _ActiveRun] = {}
        self._drivers: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def start_run(
        self,
        pipeline: PipelineDefinition,
        parameters: dict[str, str] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        """Create a Pending run and start driving it in the background."""
        validate_pipeline(pipeline)

        run = Run(
            pipeline=pipeline.name,
            parameters=dict(parameters or {}),
            idempotency_key=idempotency_key,
        )
        await asyncio.to_thread(self._store.put, run)

        active = _ActiveRun(run=run, pipeline=pipeline, order=topological_order(pipeline))
        self._active[run.id] = active
        driver = asyncio.create_task(self._drive(active), name=f"run:{run.id}")
        self._drivers[run.id] = driver
        driver.add_done_callback(lambda _: self._drivers.pop(run.id, None))

        logger.info(f"Started run {run.id} of pipeline '{pipeline.name}'")
        return run.id

    def get_status(self, run_id: str) -> Run:
        """Snapshot of the run as last recorded."""
        return self._store.get(run_id)

    async def approve(self, run_id: str, stage_name: str) -> bool:
        """Release an approval gate. False if the stage is not awaiting approval."""
        active = self._active.get(run_id)
        if active is None:
            # Unknown runs raise RunNotFoundError here
            self._store.get(run_id)
            return False

        async with active.lock:
            result = active.run.stage_results.get(stage_name)
            if result is None or result.status != StageStatus.AWAITING_APPROVAL:
                logger.info(
                    f"Approval for {run_id}/{stage_name} rejected: "
                    f"stage is {result.status if result else 'unknown'}"
                )
                return False

            result.advance(StageStatus.RUNNING)
            await self._commit(active)
            active.approvals[stage_name].set()

        logger.info(f"Stage '{stage_name}' of run {run_id} approved")
        return True

    async def cancel(self, run_id: str) -> bool:
        """Request cancellation. Idempotent; False once the run already finished otherwise."""
        active = self._active.get(run_id)
        if active is None:
            return self._store.get(run_id).status == RunStatus.CANCELLED

        async with active.lock:
            if active.cancel_event.is_set():
                return True
            if active.run.is_terminal:
                # Finished while this call waited for the lock
                return active.run.status == RunStatus.CANCELLED

            logger.info(f"Cancelling run {run_id}")
            active.run.cancel_requested = True
            active.cancel_event.set()
            self._release_approval_waiters(active, FailureCause.CANCELLED)
            await self._commit(active)

        return True

    async def wait(self, run_id: str, timeout: float | None = None) -> Run:
        """Wait until the run is terminal and return its final snapshot."""
        driver = self._drivers.get(run_id)
        if driver is not None:
            await asyncio.wait_for(asyncio.shield(driver), timeout)
        return self._store.get(run_id)

    def active_runs(self) -> list[str]:
        return list(self._active)

    def recover_interrupted(self) -> int:
        """Fail runs a previous process left non-terminal in a persistent store."""
        recovered = 0
        for run in self._store.runs():
            if run.is_terminal or run.id in self._active:
                continue

            for result in run.stage_results.values():
                if result.status in (StageStatus.RUNNING, StageStatus.AWAITING_APPROVAL):
                    result.advance(StageStatus.FAILED)
                    result.cause = FailureCause.INTERRUPTED
                elif result.status == StageStatus.PENDING:
                    result.advance(StageStatus.SKIPPED)
                    result.cause = FailureCause.INTERRUPTED

            if run.status == RunStatus.PENDING:
                run.advance(RunStatus.RUNNING)
            run.advance(RunStatus.FAILED)
            run.error = "Interrupted by a service restart"
            self._store.put(run)
            recovered += 1
            logger.warning(f"Marked interrupted run {run.id} as Failed")

        return recovered

    async def shutdown(self) -> None:
        """Cancel every active run and wait for their drivers."""
        for run_id in list(self._active):
            await self.cancel(run_id)
        drivers = list(self._drivers.values())
        if drivers:
            await asyncio.gather(*drivers, return_exceptions=True)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _drive(self, active: _ActiveRun) -> None:
        run = active.run
        try:
            async with active.lock:
                if not active.cancel_event.is_set():
                    run.advance(RunStatus.RUNNING)
                    for name in active.order:
                        run.stage_results[name] = StageResult(stage_name=name)
                    await self._commit(active)

            while True:
                async with active.lock:
                    if not active.stopping:
                        await self._dispatch(active)
                    in_flight = set(active.tasks.values())

                if not in_flight:
                    break

                if active.cancel_event.is_set():
                    await self._drain(active, in_flight)
                    break

                cancel_wait = asyncio.ensure_future(active.cancel_event.wait())
                try:
                    await asyncio.wait(
                        in_flight | {cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    cancel_wait.cancel()
        except Exception as e:
            logger.exception(f"Run {run.id} driver crashed: {e}")
            run.error = f"Engine error: {e}"
            active.halted = True
        finally:
            async with active.lock:
                await self._finish(active)
            self._active.pop(run.id, None)

        await self._notify(run.model_copy(deep=True))

    async def _dispatch(self, active: _ActiveRun) -> None:
        """Start the next step. Caller holds the run lock."""
        results = active.run.stage_results

        while not any(r.status == StageStatus.RUNNING for r in results.values()):
            # Declared order; the dependency check keeps it valid
            ready = [
                stage
                for stage in active.pipeline.stages
                if results[stage.name].status == StageStatus.PENDING
                and all(results[dep].status == StageStatus.SUCCEEDED for dep in stage.depends_on)
            ]
            if not ready:
                return

            first = ready[0]
            if first.parallel_group is None:
                batch = [first]
            else:
                batch = [s for s in ready if s.parallel_group == first.parallel_group]

            for stage in batch:
                await self._launch(active, stage)

    async def _launch(self, active: _ActiveRun, stage: StageDefinition) -> None:
        result = active.run.stage_results[stage.name]
        if stage.requires_approval:
            result.advance(StageStatus.AWAITING_APPROVAL)
            active.approvals[stage.name] = asyncio.Event()
            logger.info(f"Stage '{stage.name}' of run {active.run.id} is awaiting approval")
        else:
            result.advance(StageStatus.RUNNING)
            logger.info(f"Stage '{stage.name}' of run {active.run.id} started")
        await self._commit(active)

        active.tasks[stage.name] = asyncio.create_task(
            self._run_stage(active, stage), name=f"{active.run.id}:{stage.name}"
        )

    async def _run_stage(self, active: _ActiveRun, stage: StageDefinition) -> None:
        try:
            if stage.requires_approval:
                try:
                    approved = await self._await_approval(active, stage)
                except ApprovalTimeout as e:
                    logger.warning(f"Run {active.run.id}: {e}")
                    return
                if not approved:
                    return

            await self._execute(active, stage)
        finally:
            active.tasks.pop(stage.name, None)

    async def _await_approval(self, active: _ActiveRun, stage: StageDefinition) -> bool:
        """True once approved; False when released by cancel or halt."""
        event = active.approvals[stage.name]
        timeout = self.config.approval_timeout_seconds

        try:
            if timeout is None:
                await event.wait()
            else:
                await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            async with active.lock:
                status = active.run.stage_results[stage.name].status
                if status != StageStatus.AWAITING_APPROVAL:
                    # Approved or released just as the timer fired
                    return status == StageStatus.RUNNING
                error = ApprovalTimeout(stage.name, timeout)
                await self._settle(
                    active,
                    stage.name,
                    StageStatus.FAILED,
                    cause=FailureCause.TIMEOUT,
                    error=str(error),
                )
            raise error

        return active.run.stage_results[stage.name].status == StageStatus.RUNNING

    async def _execute(self, active: _ActiveRun, stage: StageDefinition) -> None:
        run = active.run
        if not stage.command.strip():
            async with active.lock:
                await self._settle(active, stage.name, StageStatus.SUCCEEDED, output="Approved")
            return

        timeout = stage.timeout_seconds or self.config.stage_timeout_seconds
        max_attempts = stage.retries + 1

        for attempt in range(1, max_attempts + 1):
            run.stage_results[stage.name].attempts = attempt
            context = StageContext(
                run_id=run.id,
                pipeline=run.pipeline,
                stage=stage,
                parameters=dict(run.parameters),
                attempt=attempt,
                cancel_event=active.cancel_event,
            )

            try:
                if timeout:
                    output = await asyncio.wait_for(self._executor.execute(context), timeout)
                else:
                    output = await self._executor.execute(context)
            except asyncio.TimeoutError:
                logger.warning(f"Stage '{stage.name}' of run {run.id} timed out after {timeout:g}s")
                async with active.lock:
                    await self._settle(
                        active,
                        stage.name,
                        StageStatus.FAILED,
                        cause=FailureCause.TIMEOUT,
                        error=f"Stage exceeded its {timeout:g}s timeout",
                    )
                return
            except StageExecutionError as e:
                if active.cancel_event.is_set():
                    async with active.lock:
                        await self._settle(
                            active,
                            stage.name,
                            StageStatus.FAILED,
                            output=e.output,
                            cause=FailureCause.CANCELLED,
                            error=str(e),
                        )
                    return

                if attempt < max_attempts:
                    delay = min(
                        self.config.retry_backoff_seconds * 2 ** (attempt - 1),
                        self.config.retry_backoff_cap_seconds,
                    )
                    logger.warning(
                        f"Stage '{stage.name}' of run {run.id} failed "
                        f"(attempt {attempt}/{max_attempts}), retrying in {delay:g}s: {e}"
                    )
                    try:
                        await asyncio.wait_for(active.cancel_event.wait(), delay)
                    except asyncio.TimeoutError:
                        continue
                    # Cancelled during backoff
                    async with active.lock:
                        await self._settle(
                            active,
                            stage.name,
                            StageStatus.FAILED,
                            output=e.output,
                            cause=FailureCause.CANCELLED,
                            error=str(e),
                        )
                    return

                logger.error(f"Stage '{stage.name}' of run {run.id} failed: {e}")
                async with active.lock:
                    await self._settle(
                        active,
                        stage.name,
                        StageStatus.FAILED,
                        output=e.output,
                        cause=FailureCause.COMMAND_FAILED,
                        error=str(e),
                    )
                return
            except Exception as e:
                logger.exception(f"Executor error in stage '{stage.name}' of run {run.id}")
                async with active.lock:
                    await self._settle(
                        active,
                        stage.name,
                        StageStatus.FAILED,
                        cause=FailureCause.COMMAND_FAILED,
                        error=f"{type(e).__name__}: {e}",
                    )
                return

            async with active.lock:
                await self._settle(active, stage.name, StageStatus.SUCCEEDED, output=output)
            return

    # ------------------------------------------------------------------
    # Transitions (caller holds the run lock)
    # ------------------------------------------------------------------

    async def _settle(
        self,
        active: _ActiveRun,
        stage_name: str,
        status: StageStatus,
        *,
        output: str = "",
        cause: FailureCause | None = None,
        error: str | None = None,
    ) -> None:
        run = active.run
        result = run.stage_results[stage_name]
        if run.is_terminal or result.status.is_terminal:
            logger.info(f"Ignoring late result for stage '{stage_name}' of run {run.id}")
            return

        result.advance(status)
        result.output = output
        result.cause = cause
        result.error = error

        if status == StageStatus.SUCCEEDED:
            logger.info(f"Stage '{stage_name}' of run {run.id} succeeded")
        elif not active.cancel_event.is_set():
            # Stages left behind by a cancel are skipped by _finish
            self._halt(active, stage_name)

        await self._commit(active)

    def _halt(self, active: _ActiveRun, failed_stage: str) -> None:
        """Skip dependents of a failed stage and stop dispatching."""
        results = active.run.stage_results
        for name in transitive_dependents(active.pipeline, failed_stage):
            result = results[name]
            if result.status in (StageStatus.PENDING, StageStatus.AWAITING_APPROVAL):
                result.advance(StageStatus.SKIPPED)
                result.cause = FailureCause.UPSTREAM_FAILED
                event = active.approvals.get(name)
                if event is not None:
                    event.set()

        if not active.halted:
            logger.info(f"Run {active.run.id} halted after '{failed_stage}' failed")
        active.halted = True
        self._release_approval_waiters(active, FailureCause.HALTED)

    def _release_approval_waiters(self, active: _ActiveRun, cause: FailureCause) -> None:
        for name, event in active.approvals.items():
            result = active.run.stage_results[name]
            if result.status == StageStatus.AWAITING_APPROVAL:
                result.advance(StageStatus.SKIPPED)
                result.cause = cause
                event.set()

    async def _drain(self, active: _ActiveRun, in_flight: set[asyncio.Task]) -> None:
        """Give running stages the grace period to observe cancellation."""
        grace = self.config.cancel_grace_seconds
        _, stragglers = await asyncio.wait(in_flight, timeout=grace)
        for task in stragglers:
            logger.warning(
                f"Run {active.run.id}: {task.get_name()} did not stop within "
                f"{grace:g}s of cancellation; leaving it to its executor"
            )

    async def _finish(self, active: _ActiveRun) -> None:
        run = active.run
        if run.is_terminal:
            return

        cancelled = active.cancel_event.is_set()
        for result in run.stage_results.values():
            if result.status == StageStatus.RUNNING:
                result.advance(StageStatus.FAILED)
                result.cause = FailureCause.CANCELLED
                result.error = "Did not stop within the cancellation grace period"
            elif result.status in (StageStatus.PENDING, StageStatus.AWAITING_APPROVAL):
                result.advance(StageStatus.SKIPPED)
                result.cause = FailureCause.CANCELLED if cancelled else FailureCause.HALTED

        all_succeeded = bool(run.stage_results) and all(
            r.status == StageStatus.SUCCEEDED for r in run.stage_results.values()
        )
        if cancelled and not all_succeeded:
            final = RunStatus.CANCELLED
        elif all_succeeded and not active.halted:
            final = RunStatus.SUCCEEDED
        else:
            final = RunStatus.FAILED

        if run.status == RunStatus.PENDING and final != RunStatus.CANCELLED:
            run.advance(RunStatus.RUNNING)
        run.advance(final)
        await self._commit(active)

        duration = (run.ended_at - run.started_at).total_seconds() if run.started_at and run.ended_at else 0.0
        logger.info(f"Run {run.id} of '{run.pipeline}' finished: {run.status} ({duration:.1f}s)")

    async def _commit(self, active: _ActiveRun) -> None:
        """Record a snapshot; the store write runs in a worker thread."""
        snapshot = active.run.model_copy(deep=True)
        try:
            await asyncio.to_thread(self._store.put, snapshot)
        except StorageError as e:
            logger.error(f"Could not record run {active.run.id}: {e}")

    async def _notify(self, run: Run) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(run)
        except DeliveryError as e:
            logger.error(f"Failed to deliver notification for run {run.id}: {e}")
        except Exception as e:
            logger.error(f"Notifier error for run {run.id}: {e}", exc_info=True)
