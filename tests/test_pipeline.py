import json

import pytest

from buildgraph.errors import InvalidConfigError, MissingDependencyError
from buildgraph.executor import Action
from buildgraph.pipeline import Pipeline
from buildgraph.repository import TaskRepository
from buildgraph.task import Identity, TargetArch


@pytest.fixture
def params(tmp_path):
    return {
        "project": {"name": "p", "runs_dir": str(tmp_path / "runs")},
        "cache": {"root": str(tmp_path / "cache")},
        "build": {"workers": 2, "arch": "x86_64"},
    }


def test_plan_filters_by_arch(make_task, params):
    params["build"]["arch"] = "riscv64"
    repo = TaskRepository(
        [
            (None, make_task("rv", target_arch=[TargetArch.RISCV64])),
            (None, make_task("x86", target_arch=[TargetArch.X86_64])),
        ]
    )
    bp = Pipeline(repo, params).plan(base_env={})
    assert bp.plan.as_strings() == ["rv-1.0"]
    assert bp.environment.global_vars["ARCH"] == "riscv64"


def test_strict_blocklist_breaks_dependents(make_task, params, tmp_path):
    blocklist = tmp_path / "blocklist.yaml"
    blocklist.write_text("blocked_apps:\n  - name: lib\n", encoding="utf-8")
    params["blocklist"] = {"path": str(blocklist)}
    repo = TaskRepository([(None, make_task("lib")), (None, make_task("app", deps=["lib@1.0"]))])
    with pytest.raises(MissingDependencyError):
        Pipeline(repo, params).plan()


def test_run_writes_state(make_task, params, tmp_path):
    repo = TaskRepository([(None, make_task("a")), (None, make_task("b", deps=["a@1.0"], command="exit 2"))])
    result = Pipeline(repo, params).run(Action.BUILD)
    assert [str(i) for i in result.failed] == ["b-1.0"]

    (state_file,) = (tmp_path / "runs" / "p").glob("*/state.json")
    state = json.loads(state_file.read_text())
    assert state["pipeline"] == "p"
    assert state["ok"] is False
    assert {s["name"]: s["status"] for s in state["steps"]} == {"a-1.0": "succeeded", "b-1.0": "failed"}


@pytest.mark.parametrize("workers", [0, "many"])
def test_bad_worker_count_fails_before_touching_disk(make_task, params, tmp_path, workers):
    params["build"]["workers"] = workers
    repo = TaskRepository([(None, make_task("a"))])
    with pytest.raises(InvalidConfigError, match="build.workers"):
        Pipeline(repo, params).run(Action.BUILD)
    assert not (tmp_path / "cache").exists()
    assert not (tmp_path / "runs").exists()
