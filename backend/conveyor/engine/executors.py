"""Stage executors: the injected capability that actually runs a stage's command.

Contract:
- ``execute(context)`` returns the captured output on success
- Raise StageExecutionError when the command fails
- Observe ``context.cancel_event`` and stop promptly when it is set
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import signal
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from conveyor.config import ShellConfig
from conveyor.exceptions import StageExecutionError
from conveyor.pipeline.models import StageDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageContext:
    """Everything an executor gets to know about one stage attempt."""

    run_id: str
    pipeline: str
    stage: StageDefinition
    parameters: Mapping[str, str]
    attempt: int
    cancel_event: asyncio.Event

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class StageExecutor(Protocol):
    async def execute(self, context: StageContext) -> str: ...


StageCallable = Callable[[StageContext], Any]


class CallableExecutor:
    """Runs stages by looking their command up in a table of Python callables.

    Coroutine functions run on the event loop; plain functions run in a worker
    thread, so a timeout still fires while one blocks.
    """

    def __init__(self, commands: Mapping[str, StageCallable] | None = None):
        self._commands: dict[str, StageCallable] = dict(commands or {})

    def register(self, command: str, func: StageCallable) -> None:
        self._commands[command] = func

    async def execute(self, context: StageContext) -> str:
        func = self._commands.get(context.stage.command)
        if func is None:
            raise StageExecutionError(f"Unknown command: {context.stage.command!r}")

        try:
            if inspect.iscoroutinefunction(func):
                result = await func(context)
            else:
                # Blocking callables must not stall the event loop
                result = await asyncio.to_thread(func, context)
            if inspect.isawaitable(result):
                result = await result
        except StageExecutionError:
            raise
        except Exception as e:
            raise StageExecutionError(f"{type(e).__name__}: {e}") from e

        return result or ""


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return "[output truncated]\n" + text[-limit:]


class ShellExecutor:
    """Runs stage commands through the system shell.

    Build parameters are exported as environment variables, so a command like
    ``docker build -t app:$VERSION .`` sees the VERSION parameter.
    """

    def __init__(self, config: ShellConfig | None = None):
        self.config = config or ShellConfig()

    def _environment(self, context: StageContext) -> dict[str, str]:
        env = dict(os.environ) if self.config.inherit_env else {}
        env.update(context.parameters)
        env.update(
            {
                "CONVEYOR_RUN_ID": context.run_id,
                "CONVEYOR_PIPELINE": context.pipeline,
                "CONVEYOR_STAGE": context.stage.name,
                "CONVEYOR_ATTEMPT": str(context.attempt),
            }
        )
        return env

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop the shell and everything it started (its own process group)."""
        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), self.config.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} ignored SIGTERM, killing")
            self._signal_group(process, signal.SIGKILL)
            await process.wait()

    async def execute(self, context: StageContext) -> str:
        stage = context.stage
        logger.info(f"[{context.run_id}] {stage.name}: $ {stage.command}")

        try:
            process = await asyncio.create_subprocess_shell(
                stage.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self.config.working_dir,
                env=self._environment(context),
                executable=self.config.executable,
                start_new_session=True,
            )
        except OSError as e:
            raise StageExecutionError(f"Failed to start command: {e}") from e

        communicate = asyncio.ensure_future(process.communicate())
        cancel_wait = asyncio.ensure_future(context.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            # Stage timeout: stop the process before giving up the stage
            await self._terminate(process)
            communicate.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if communicate not in done:
            await self._terminate(process)
            stdout, _ = await communicate
            raise StageExecutionError(
                "Cancelled while running",
                output=_tail(stdout.decode(errors="replace"), self.config.max_output_chars),
                exit_code=process.returncode,
            )

        stdout, _ = communicate.result()
        output = _tail(stdout.decode(errors="replace"), self.config.max_output_chars)

        if process.returncode != 0:
            raise StageExecutionError(
                f"Command exited with status {process.returncode}",
                output=output,
                exit_code=process.returncode,
            )

        return output
