"""
Unit Tests: HTTP API

Test cases:
- Trigger returns 202 with the run id before the run finishes
- 400 for bad parameters and malformed bodies, 404 for unknown pipelines and runs
- Approve: 200, 409 on a stage that is not awaiting approval, 404 unknown run
- Cancel: 202 and idempotent
- Idempotency keys, pipeline listing and run history
- 503 when the run store fails
"""

import time

import pytest
from fastapi.testclient import TestClient

from conftest import make_pipeline
from conveyor.api import create_app
from conveyor.config import EngineConfig, SchedulerConfig, Settings
from conveyor.exceptions import StorageError
from conveyor.notifier import LogNotifier
from conveyor.pipeline import PipelineCatalog
from conveyor.runtime import build_runtime
from conveyor.storage import RunStore

PIPELINES = [
    make_pipeline(
        {"name": "install", "command": "ok"},
        {"name": "test", "command": "ok", "dependsOn": ["install"]},
        name="demo-app",
        parameters=[{"name": "VERSION"}],
    ),
    make_pipeline(
        {"name": "build", "command": "ok"},
        {"name": "approve-deploy", "requiresApproval": True, "dependsOn": ["build"]},
        {"name": "deploy", "command": "ok", "dependsOn": ["approve-deploy"]},
        name="release",
    ),
    make_pipeline({"name": "soak", "command": "hang"}, name="soak-test"),
]


class _BrokenStore(RunStore):
    def _persist(self, run):
        raise StorageError("disk full")


def _app(tmp_path, recorder, store=None):
    settings = Settings(
        data_dir=tmp_path,
        logfire_token="",
        engine=EngineConfig(cancel_grace_seconds=0.5),
        scheduler=SchedulerConfig(enabled=False),
    )
    runtime = build_runtime(
        settings,
        executor=recorder.executor(),
        notifier=LogNotifier(),
        catalog=PipelineCatalog(PIPELINES),
        store=store if store is not None else RunStore(),
    )
    return create_app(runtime)


def _wait_for(client, run_id, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    body = None
    while time.monotonic() < deadline:
        body = client.get(f"/runs/{run_id}").json()
        if predicate(body):
            return body
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} did not reach the expected state: {body}")


@pytest.fixture
def client(tmp_path, recorder):
    with TestClient(_app(tmp_path, recorder)) as test_client:
        yield test_client


def test_trigger_returns_202_and_run_completes(client):
    response = client.post("/pipelines/demo-app/runs", json={"parameters": {"VERSION": "1.0"}})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "Pending"
    assert body["runId"].startswith("run_")

    run = _wait_for(client, body["runId"], lambda r: r["status"] == "Succeeded")
    assert run["pipeline"] == "demo-app"
    assert run["parameters"] == {"VERSION": "1.0"}
    assert list(run["stageResults"]) == ["install", "test"]
    assert run["stageResults"]["test"]["status"] == "Succeeded"


def test_trigger_missing_parameter_is_400(client):
    response = client.post("/pipelines/demo-app/runs", json={"parameters": {}})

    assert response.status_code == 400
    assert response.json()["errors"] == ["missing required parameter 'VERSION'"]


def test_trigger_malformed_body_is_400(client):
    not_an_object = client.post("/pipelines/demo-app/runs", json={"parameters": "VERSION=1"})
    broken_json = client.post(
        "/pipelines/demo-app/runs",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    unknown_field = client.post("/pipelines/demo-app/runs", json={"params": {}})

    assert not_an_object.status_code == 400
    assert broken_json.status_code == 400
    assert unknown_field.status_code == 400


def test_trigger_unknown_pipeline_is_404(client):
    response = client.post("/pipelines/nope/runs", json={})

    assert response.status_code == 404


def test_unknown_run_is_404(client):
    assert client.get("/runs/run_000000000000").status_code == 404
    assert client.post("/runs/run_000000000000/cancel").status_code == 404
    assert client.post("/runs/run_000000000000/stages/x/approve").status_code == 404


def test_approve_flow_and_conflict(client):
    run_id = client.post("/pipelines/release/runs").json()["runId"]
    _wait_for(
        client,
        run_id,
        lambda r: r["stageResults"].get("approve-deploy", {}).get("status") == "AwaitingApproval",
    )

    early = client.post(f"/runs/{run_id}/stages/deploy/approve")
    approved = client.post(f"/runs/{run_id}/stages/approve-deploy/approve")
    run = _wait_for(client, run_id, lambda r: r["status"] == "Succeeded")
    again = client.post(f"/runs/{run_id}/stages/approve-deploy/approve")

    assert early.status_code == 409
    assert approved.status_code == 200
    assert approved.json() == {"runId": run_id, "stageName": "approve-deploy", "approved": True}
    assert run["stageResults"]["deploy"]["status"] == "Succeeded"
    assert again.status_code == 409


def test_cancel_is_accepted_and_idempotent(client):
    run_id = client.post("/pipelines/soak-test/runs").json()["runId"]
    _wait_for(client, run_id, lambda r: r["stageResults"].get("soak", {}).get("status") == "Running")

    first = client.post(f"/runs/{run_id}/cancel")
    second = client.post(f"/runs/{run_id}/cancel")
    run = _wait_for(client, run_id, lambda r: r["status"] == "Cancelled")
    third = client.post(f"/runs/{run_id}/cancel")

    assert [r.status_code for r in (first, second, third)] == [202, 202, 202]
    assert first.json()["cancelRequested"] is True
    assert run["cancelRequested"] is True
    assert run["stageResults"]["soak"]["cause"] == "Cancelled"


def test_idempotency_key_returns_same_run(client):
    payload = {"parameters": {"VERSION": "2.0"}, "idempotencyKey": "release-2.0"}

    first = client.post("/pipelines/demo-app/runs", json=payload).json()
    second = client.post("/pipelines/demo-app/runs", json=payload).json()

    assert first["runId"] == second["runId"]


def test_pipeline_listing_and_history(client):
    names = [p["name"] for p in client.get("/pipelines").json()]
    definition = client.get("/pipelines/release").json()

    ids = []
    for version in ("1", "2"):
        run_id = client.post("/pipelines/demo-app/runs", json={"parameters": {"VERSION": version}}).json()["runId"]
        _wait_for(client, run_id, lambda r: r["status"] == "Succeeded")
        ids.append(run_id)
    history = client.get("/pipelines/demo-app/runs", params={"limit": 1}).json()

    assert names == ["demo-app", "release", "soak-test"]
    assert definition["stages"][1]["requiresApproval"] is True
    assert [r["id"] for r in history] == [ids[-1]]
    assert client.get("/pipelines/missing").status_code == 404
    assert client.get("/pipelines/demo-app/runs", params={"limit": 0}).status_code == 400


def test_health(client):
    body = client.get("/health").json()

    assert body["status"] == "ok"
    assert body["pipelines"] == 3


def test_storage_failure_is_503(tmp_path, recorder):
    with TestClient(_app(tmp_path, recorder, store=_BrokenStore())) as broken:
        response = broken.post("/pipelines/demo-app/runs", json={"parameters": {"VERSION": "1"}})

    assert response.status_code == 503
