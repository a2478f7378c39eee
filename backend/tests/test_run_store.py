"""
Unit Tests: Run Store

Test cases:
- Snapshot isolation on put and get
- Listing a pipeline's runs newest first, lazily
- Eviction only touches terminal runs past the cutoff
- File-backed store: atomic writes, reload on start, failed writes keep the old record
"""

import threading
from datetime import timedelta

import pytest

from conveyor.exceptions import RunNotFoundError, StorageError
from conveyor.pipeline import Run, RunStatus, StageResult, StageStatus
from conveyor.pipeline.models import utcnow
from conveyor.scheduler import retention_cutoff
from conveyor.storage import FileRunStore, RunStore


def _finished_run(pipeline: str = "demo-app", hours_ago: float = 0, status=RunStatus.SUCCEEDED) -> Run:
    run = Run(pipeline=pipeline)
    run.advance(RunStatus.RUNNING)
    run.advance(status)
    run.ended_at = utcnow() - timedelta(hours=hours_ago)
    return run


def test_put_and_get_return_independent_copies():
    store = RunStore()
    run = Run(pipeline="demo-app")
    run.stage_results["build"] = StageResult(stage_name="build")
    store.put(run)

    run.stage_results["build"].status = StageStatus.RUNNING
    first = store.get(run.id)
    first.stage_results["build"].output = "mutated"
    second = store.get(run.id)

    assert first.stage_results["build"].status == StageStatus.PENDING
    assert second.stage_results["build"].output == ""


def test_get_unknown_run():
    with pytest.raises(RunNotFoundError):
        RunStore().get("run_000000000000")


def test_list_by_pipeline_newest_first():
    store = RunStore()
    runs = [Run(pipeline="web") for _ in range(3)]
    for offset, run in enumerate(runs):
        run.created_at = utcnow() + timedelta(seconds=offset)
        store.put(run)
    store.put(Run(pipeline="worker"))

    listed = store.list_by_pipeline("web")

    assert next(listed).id == runs[2].id
    assert [r.id for r in listed] == [runs[1].id, runs[0].id]
    assert list(store.list_by_pipeline("missing")) == []


def test_runs_are_listed_oldest_first():
    store = RunStore()
    ids = []
    for _ in range(3):
        run = Run(pipeline="web")
        store.put(run)
        ids.append(run.id)

    assert [r.id for r in store.runs()] == ids
    assert len(store) == 3


def test_evict_only_removes_old_terminal_runs():
    store = RunStore()
    old = _finished_run(hours_ago=200)
    old_failed = _finished_run(hours_ago=200, status=RunStatus.FAILED)
    recent = _finished_run(hours_ago=1)
    active = Run(pipeline="demo-app", created_at=utcnow() - timedelta(days=30))
    active.advance(RunStatus.RUNNING)
    for run in (old, old_failed, recent, active):
        store.put(run)

    removed = store.evict(retention_cutoff(168))

    assert removed == 2
    assert old.id not in store and old_failed.id not in store
    assert recent.id in store
    assert active.id in store


def test_concurrent_puts_leave_a_complete_snapshot():
    store = RunStore()
    run = Run(pipeline="demo-app")
    store.put(run)

    def writer(stage_count: int) -> None:
        copy = run.model_copy(deep=True)
        for i in range(stage_count):
            copy.stage_results[f"s{i}"] = StageResult(stage_name=f"s{i}")
        store.put(copy)

    threads = [threading.Thread(target=writer, args=(n,)) for n in (5, 10, 20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stored = store.get(run.id)
    assert len(stored.stage_results) in (5, 10, 20)
    assert list(stored.stage_results) == [f"s{i}" for i in range(len(stored.stage_results))]


def test_file_store_persists_and_reloads(tmp_path):
    store = FileRunStore(tmp_path / "runs")
    run = _finished_run(pipeline="web")
    run.parameters = {"VERSION": "1.2.0"}
    run.stage_results["build"] = StageResult(stage_name="build", status=StageStatus.SUCCEEDED)
    store.put(run)

    assert (tmp_path / "runs" / f"{run.id}.json").exists()
    assert not list((tmp_path / "runs").glob("*.tmp"))

    reloaded = FileRunStore(tmp_path / "runs").get(run.id)
    assert reloaded.parameters == {"VERSION": "1.2.0"}
    assert reloaded.status == RunStatus.SUCCEEDED
    assert reloaded.stage_results["build"].status == StageStatus.SUCCEEDED


def test_file_store_eviction_deletes_document(tmp_path):
    store = FileRunStore(tmp_path)
    run = _finished_run(hours_ago=500)
    store.put(run)

    assert store.evict(retention_cutoff(168)) == 1
    assert not (tmp_path / f"{run.id}.json").exists()


def test_file_store_skips_corrupt_documents(tmp_path):
    (tmp_path / "run_bad.json").write_text("{not json")
    store = FileRunStore(tmp_path)

    assert len(store) == 0


def test_failed_write_keeps_previous_snapshot(tmp_path):
    store = FileRunStore(tmp_path / "runs")
    run = Run(pipeline="web")
    store.put(run)

    (tmp_path / "runs").chmod(0o500)
    try:
        changed = run.model_copy(deep=True)
        changed.advance(RunStatus.RUNNING)
        try:
            store.put(changed)
        except StorageError:
            pass
        else:
            pytest.skip("filesystem permissions are not enforced for this user")
    finally:
        (tmp_path / "runs").chmod(0o700)

    assert store.get(run.id).status == RunStatus.PENDING
