"""Storage layer for Conveyor run records.

This package provides:
- RunStore: in-memory registry with one mutation lock per run
- FileRunStore: the same registry backed by one JSON document per run
"""

from .runs import FileRunStore, RunStore

__all__ = [
    "FileRunStore",
    "RunStore",
]
