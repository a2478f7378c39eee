"""
Unit Tests: Pipeline Definitions

Test cases:
- Document parsing (YAML and JSON) and camelCase fields
- Graph validation: cycles, unknown dependencies, duplicates, empty pipelines
- Stable topological order and transitive dependents
- Stage templates (`uses`), local and shared
- Dump / parse round trip
- Catalog loading from a directory
"""

import json

import pytest

from conveyor.exceptions import PipelineNotFoundError, ValidationError
from conveyor.pipeline import (
    PipelineCatalog,
    dump_pipeline,
    find_cycle,
    load_pipeline,
    parse_pipeline,
    pipeline_to_document,
    topological_order,
    transitive_dependents,
)
from conveyor.pipeline.loader import read_document

DEMO_YAML = """
name: demo-app
description: build and ship
parameters:
  - name: VERSION
  - name: ENVIRONMENT
    default: staging
    choices: [staging, production]
templates:
  npm:
    timeoutSeconds: 600
    retries: 1
stages:
  - name: install
    uses: npm
    command: npm ci
  - name: test
    uses: npm
    command: npm test
    dependsOn: [install]
    parallelGroup: checks
  - name: lint
    uses: npm
    command: npm run lint
    dependsOn: install
    parallelGroup: checks
  - name: build
    command: docker build .
    dependsOn: [test, lint, test]
  - name: approve-deploy
    requiresApproval: true
    dependsOn: [build]
  - name: deploy
    command: kubectl apply -f k8s/
    dependsOn: [approve-deploy]
    timeoutSeconds: 300
"""


def _doc(*stages, **extra):
    return {"name": "p", "stages": list(stages), **extra}


def test_load_yaml_pipeline(tmp_path):
    path = tmp_path / "demo-app.yaml"
    path.write_text(DEMO_YAML)

    pipeline = load_pipeline(path)

    assert pipeline.name == "demo-app"
    assert pipeline.stage_names == ["install", "test", "lint", "build", "approve-deploy", "deploy"]
    lint = pipeline.get_stage("lint")
    assert lint.depends_on == ("install",)
    assert lint.parallel_group == "checks"
    assert lint.timeout_seconds == 600
    assert lint.retries == 1
    # Duplicate dependencies collapse, order kept
    assert pipeline.get_stage("build").depends_on == ("test", "lint")
    assert pipeline.get_stage("approve-deploy").requires_approval is True
    assert pipeline.get_stage("deploy").timeout_seconds == 300
    assert [p.name for p in pipeline.parameters] == ["VERSION", "ENVIRONMENT"]
    assert pipeline.parameters[0].required is True
    assert pipeline.parameters[1].choices == ("staging", "production")


def test_load_json_pipeline(tmp_path):
    path = tmp_path / "api.json"
    path.write_text(json.dumps(_doc({"name": "a", "command": "make"})))

    assert load_pipeline(path).stage_names == ["a"]


def test_cycle_is_reported_with_its_path():
    with pytest.raises(ValidationError) as exc_info:
        parse_pipeline(
            _doc(
                {"name": "a", "command": "x", "dependsOn": ["c"]},
                {"name": "b", "command": "x", "dependsOn": ["a"]},
                {"name": "c", "command": "x", "dependsOn": ["b"]},
            )
        )

    assert exc_info.value.cycle == ["a", "c", "b", "a"]
    assert any("cycle" in error for error in exc_info.value.errors)


def test_self_dependency_is_a_cycle():
    with pytest.raises(ValidationError) as exc_info:
        parse_pipeline(_doc({"name": "a", "command": "x", "dependsOn": ["a"]}))

    assert exc_info.value.cycle == ["a", "a"]


def test_unknown_dependency_rejected():
    with pytest.raises(ValidationError) as exc_info:
        parse_pipeline(_doc({"name": "a", "command": "x", "dependsOn": ["ghost"]}))

    assert "unknown stage 'ghost'" in str(exc_info.value)
    assert exc_info.value.cycle is None


def test_duplicate_stage_names_rejected():
    with pytest.raises(ValidationError, match="duplicate stage name 'a'"):
        parse_pipeline(_doc({"name": "a", "command": "x"}, {"name": "a", "command": "y"}))


def test_empty_pipeline_rejected():
    with pytest.raises(ValidationError, match="no stages"):
        parse_pipeline(_doc())


def test_malformed_stage_rejected():
    with pytest.raises(ValidationError) as exc_info:
        parse_pipeline(_doc({"name": "a", "command": "x", "timeoutSeconds": -1, "colour": "red"}))

    assert len(exc_info.value.errors) == 2


def test_stage_without_command_needs_approval():
    with pytest.raises(ValidationError, match="needs a command"):
        parse_pipeline(_doc({"name": "a"}))

    pipeline = parse_pipeline(_doc({"name": "gate", "requiresApproval": True}))
    assert pipeline.get_stage("gate").command == ""


def test_unparseable_document(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("stages: [unclosed")

    with pytest.raises(ValidationError, match="Cannot parse"):
        read_document(path)


def test_topological_order_prefers_declared_order():
    pipeline = parse_pipeline(
        _doc(
            {"name": "deploy", "command": "x", "dependsOn": ["build"]},
            {"name": "lint", "command": "x"},
            {"name": "build", "command": "x"},
        )
    )

    assert topological_order(pipeline) == ["lint", "build", "deploy"]


def test_transitive_dependents():
    pipeline = parse_pipeline(
        _doc(
            {"name": "install", "command": "x"},
            {"name": "test", "command": "x", "dependsOn": ["install"]},
            {"name": "build", "command": "x", "dependsOn": ["test"]},
            {"name": "docs", "command": "x"},
            {"name": "push", "command": "x", "dependsOn": ["build", "docs"]},
        )
    )

    assert transitive_dependents(pipeline, "test") == ["build", "push"]
    assert transitive_dependents(pipeline, "docs") == ["push"]
    assert transitive_dependents(pipeline, "push") == []


def test_find_cycle_ignores_acyclic_graph():
    pipeline = parse_pipeline(
        _doc({"name": "a", "command": "x"}, {"name": "b", "command": "x", "dependsOn": ["a"]})
    )

    assert find_cycle(pipeline.stages) is None


def test_stage_fields_override_template():
    pipeline = parse_pipeline(
        _doc(
            {"name": "slow", "uses": "base", "command": "x", "timeoutSeconds": 30},
            templates={"base": {"timeoutSeconds": 600, "retries": 3, "command": "default"}},
        )
    )

    stage = pipeline.get_stage("slow")
    assert stage.timeout_seconds == 30
    assert stage.retries == 3
    assert stage.command == "x"
    assert stage.uses == "base"


def test_local_template_wins_over_shared():
    shared = {"docker": {"retries": 2}, "helm": {"timeoutSeconds": 120}}
    pipeline = parse_pipeline(
        _doc(
            {"name": "build", "uses": "docker", "command": "docker build ."},
            {"name": "release", "uses": "helm", "command": "helm upgrade"},
            templates={"docker": {"retries": 5}},
        ),
        shared_templates=shared,
    )

    assert pipeline.get_stage("build").retries == 5
    assert pipeline.get_stage("release").timeout_seconds == 120


def test_unknown_template_rejected():
    with pytest.raises(ValidationError, match="unknown template 'missing'"):
        parse_pipeline(_doc({"name": "a", "uses": "missing", "command": "x"}))


@pytest.mark.parametrize("fmt", ["yaml", "json"])
def test_dump_and_parse_round_trip(tmp_path, fmt):
    source = tmp_path / "demo-app.yaml"
    source.write_text(DEMO_YAML)
    pipeline = load_pipeline(source)

    target = tmp_path / f"copy.{fmt}"
    target.write_text(dump_pipeline(pipeline, fmt))

    restored = load_pipeline(target)
    assert restored.stages == pipeline.stages
    assert pipeline_to_document(restored) == pipeline_to_document(pipeline)


def test_catalog_loads_directory_with_shared_templates(tmp_path):
    (tmp_path / "templates.yaml").write_text("templates:\n  docker:\n    retries: 2\n")
    (tmp_path / "web.yaml").write_text(
        "name: web\nstages:\n  - name: build\n    uses: docker\n    command: docker build .\n"
    )
    (tmp_path / "worker.json").write_text(json.dumps(_doc({"name": "run", "command": "x"}, name="worker")))
    (tmp_path / "broken.yaml").write_text("name: broken\nstages: []\n")
    (tmp_path / "notes.txt").write_text("not a pipeline")

    catalog = PipelineCatalog.from_directory(tmp_path)

    assert catalog.names() == ["web", "worker"]
    assert "web" in catalog and "broken" not in catalog
    assert catalog.get("web").get_stage("build").retries == 2
    with pytest.raises(PipelineNotFoundError):
        catalog.get("broken")


def test_catalog_missing_directory_is_empty(tmp_path):
    catalog = PipelineCatalog.from_directory(tmp_path / "nope")

    assert len(catalog) == 0


def test_shared_template_survives_round_trip():
    shared = {"docker": {"timeoutSeconds": 1800, "retries": 2}}
    pipeline = parse_pipeline(
        _doc(
            {"name": "build", "uses": "docker", "command": "docker build ."},
            {"name": "push", "uses": "docker", "command": "docker push", "dependsOn": ["build"]},
        ),
        shared_templates=shared,
    )

    restored = parse_pipeline(pipeline_to_document(pipeline))

    assert pipeline.templates == shared
    assert restored == pipeline
    assert restored.get_stage("push").retries == 2


@pytest.mark.parametrize(
    "templates_text",
    ["templates: [docker\n", "- docker\n- helm\n", "templates:\n  - docker\n"],
)
def test_catalog_skips_unusable_shared_templates(tmp_path, templates_text):
    (tmp_path / "templates.yaml").write_text(templates_text)
    (tmp_path / "web.yaml").write_text("name: web\nstages:\n  - name: build\n    command: make\n")
    (tmp_path / "api.yaml").write_text(
        "name: api\nstages:\n  - name: build\n    uses: docker\n    command: make\n"
    )

    catalog = PipelineCatalog.from_directory(tmp_path)

    assert catalog.names() == ["web"]
    assert catalog.shared_templates == {}
