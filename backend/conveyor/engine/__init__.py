"""Stage execution: the run driver and the executors it delegates to."""

from .engine import ExecutionEngine
from .executors import CallableExecutor, ShellExecutor, StageContext, StageExecutor

__all__ = [
    "ExecutionEngine",
    "CallableExecutor",
    "ShellExecutor",
    "StageContext",
    "StageExecutor",
]
