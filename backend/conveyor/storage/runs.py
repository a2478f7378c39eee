"""Run registry with per-run locking and optional JSON persistence.

The execution engine is the single writer of a run; any number of readers may
call ``get`` concurrently. Every ``put`` stores a deep copy and every ``get``
returns one, so a reader never observes a half-updated ``stageResults`` map.
"""

import itertools
import json
import logging
import shutil
import tempfile
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from conveyor.exceptions import RunNotFoundError, StorageError
from conveyor.pipeline.models import Run

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    seq: int
    run: Run | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class RunStore:
    """In-memory run store."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._index_lock = threading.Lock()
        self._counter = itertools.count()

    def _entry(self, run_id: str, create: bool = False) -> _Entry:
        entry = self._entries.get(run_id)
        if entry is not None:
            return entry
        if not create:
            raise RunNotFoundError(run_id)
        with self._index_lock:
            entry = self._entries.get(run_id)
            if entry is None:
                entry = _Entry(seq=next(self._counter))
                self._entries[run_id] = entry
            return entry

    def _persist(self, run: Run) -> None:
        """Durably write a run snapshot. No-op for the in-memory store."""

    def _discard(self, run_id: str) -> None:
        """Remove a durable run record. No-op for the in-memory store."""

    def put(self, run: Run) -> None:
        """Store a snapshot of the run, replacing the previous one atomically."""
        entry = self._entry(run.id, create=True)
        snapshot = run.model_copy(deep=True)
        with entry.lock:
            self._persist(snapshot)
            entry.run = snapshot

    def get(self, run_id: str) -> Run:
        """Return a snapshot of the run."""
        entry = self._entry(run_id)
        with entry.lock:
            if entry.run is None:
                raise RunNotFoundError(run_id)
            return entry.run.model_copy(deep=True)

    def __contains__(self, run_id: object) -> bool:
        entry = self._entries.get(run_id)  # type: ignore[arg-type]
        return entry is not None and entry.run is not None

    def __len__(self) -> int:
        return sum(1 for entry in list(self._entries.values()) if entry.run is not None)

    def runs(self) -> Iterator[Run]:
        """Snapshots of every stored run, oldest first."""
        with self._index_lock:
            entries = sorted(self._entries.items(), key=lambda item: item[1].seq)
        for run_id, _ in entries:
            try:
                yield self.get(run_id)
            except RunNotFoundError:
                continue

    def list_by_pipeline(self, pipeline: str) -> Iterator[Run]:
        """Lazily yield the pipeline's runs, newest first."""
        with self._index_lock:
            entries = list(self._entries.items())

        candidates = []
        for run_id, entry in entries:
            with entry.lock:
                run = entry.run
                if run is None or run.pipeline != pipeline:
                    continue
                candidates.append((run.created_at, entry.seq, run_id))

        for _, _, run_id in sorted(candidates, reverse=True):
            try:
                yield self.get(run_id)
            except RunNotFoundError:
                continue

    def evict(self, older_than: datetime) -> int:
        """Drop terminal runs that ended before the cutoff. Returns count removed."""
        with self._index_lock:
            entries = list(self._entries.items())

        removed = 0
        for run_id, entry in entries:
            with entry.lock:
                run = entry.run
                if run is None or not run.is_terminal:
                    continue
                if run.ended_at is None or run.ended_at >= older_than:
                    continue
                self._discard(run_id)
                entry.run = None
            with self._index_lock:
                if self._entries.get(run_id) is entry and entry.run is None:
                    del self._entries[run_id]
            removed += 1

        if removed:
            logger.info(f"Evicted {removed} runs that ended before {older_than.isoformat()}")
        return removed


class FileRunStore(RunStore):
    """Run store that also keeps one JSON document per run on disk.

    Writes use a tempfile -> rename pattern. If a write fails the previous
    document and the in-memory snapshot both stay intact.
    """

    def __init__(self, directory: Path):
        super().__init__()
        self.directory = directory
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create run directory {directory}: {e}") from e
        self._load_existing()

    def _path(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.json"

    def _load_existing(self) -> None:
        loaded = []
        for path in self.directory.glob("*.json"):
            try:
                loaded.append(Run.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, PydanticValidationError) as e:
                logger.warning(f"Failed to load run record {path}: {e}")

        for run in sorted(loaded, key=lambda r: r.created_at):
            entry = self._entry(run.id, create=True)
            entry.run = run

        if loaded:
            logger.info(f"Loaded {len(loaded)} runs from {self.directory}")

    def _persist(self, run: Run) -> None:
        target = self._path(run.id)
        temp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                dir=self.directory,
                delete=False,
                suffix=".tmp",
                encoding="utf-8",
            ) as temp_file:
                json.dump(run.model_dump(mode="json", by_alias=True), temp_file, indent=2)
                temp_path = Path(temp_file.name)

            # Atomic rename
            shutil.move(str(temp_path), str(target))
        except OSError as e:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            logger.error(f"Failed to save run {run.id}: {e}")
            raise StorageError(f"Failed to save run {run.id}: {e}") from e

    def _discard(self, run_id: str) -> None:
        try:
            self._path(run_id).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete run {run_id}: {e}") from e
