import threading
import time

import pytest

from buildgraph.core import ExecutionPlan, topo_sort
from buildgraph.env import resolve_environment
from buildgraph.errors import RunFailedError
from buildgraph.executor import Action, StepOutcome, make_runner
from buildgraph.scheduler import Scheduler
from buildgraph.task import Identity, TaskState


class Recorder:
    """Fake runner: logs start/finish events and fails the named tasks."""

    def __init__(self, fail=(), delay=0.0, cached=()):
        self.fail = set(fail)
        self.delay = delay
        self.cached = set(cached)
        self.events = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def __call__(self, task):
        name = str(task.identity)
        with self._lock:
            self.events.append(("start", name))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        time.sleep(self.delay)
        with self._lock:
            self.in_flight -= 1
            self.events.append(("end", name))
        if name in self.fail:
            raise RuntimeError(f"{name} exploded")
        return StepOutcome(skipped=name in self.cached)

    def started(self):
        return [n for kind, n in self.events if kind == "start"]


def _scheduler(graph, runner, workers=2):
    return Scheduler(graph, topo_sort(graph), runner, workers=workers)


def test_failure_skips_transitive_dependents(make_task, make_graph):
    graph = make_graph(
        make_task("A"),
        make_task("B", deps=["A@1.0"]),
        make_task("C", deps=["B@1.0"]),
        make_task("X"),
    )
    runner = Recorder(fail={"A-1.0"})
    result = _scheduler(graph, runner).run()

    assert result.states[Identity("A", "1.0")] == TaskState.FAILED
    assert result.states[Identity("B", "1.0")] == TaskState.SKIPPED
    assert result.states[Identity("C", "1.0")] == TaskState.SKIPPED
    assert result.states[Identity("X", "1.0")] == TaskState.SUCCEEDED
    assert "B-1.0" not in runner.started() and "C-1.0" not in runner.started()
    assert "A-1.0 exploded" in result.errors[Identity("A", "1.0")]
    assert result.errors[Identity("C", "1.0")] == "dependency A-1.0 failed"
    assert not result.ok
    with pytest.raises(RunFailedError) as e:
        result.raise_for_status()
    assert e.value.result is result


def test_independent_branch_of_failed_diamond_still_runs(make_task, make_graph):
    graph = make_graph(
        make_task("A"),
        make_task("B", deps=["A@1.0"]),
        make_task("C", deps=["A@1.0"]),
        make_task("D", deps=["B@1.0", "C@1.0"]),
    )
    result = _scheduler(graph, Recorder(fail={"B-1.0"})).run()
    assert [str(i) for i in result.succeeded] == ["A-1.0", "C-1.0"]
    assert [str(i) for i in result.failed] == ["B-1.0"]
    assert [str(i) for i in result.skipped] == ["D-1.0"]
    assert "1 failed, 1 skipped" in result.summary()


def test_tasks_start_only_after_dependencies_finish(make_task, make_graph):
    graph = make_graph(
        make_task("libc"),
        make_task("zlib", deps=["libc@1.0"]),
        make_task("ssl", deps=["libc@1.0"]),
        make_task("curl", deps=["zlib@1.0", "ssl@1.0"]),
        make_task("app", deps=["curl@1.0"]),
    )
    runner = Recorder(delay=0.02)
    result = _scheduler(graph, runner, workers=4).run()
    assert result.ok
    position = {event: i for i, event in enumerate(runner.events)}
    for ident in graph:
        for dep in graph.dependencies(ident):
            assert position[("end", str(dep))] < position[("start", str(ident))]


def test_worker_bound_is_respected(make_task, make_graph):
    graph = make_graph(*[make_task(f"t{i}") for i in range(8)])
    runner = Recorder(delay=0.02)
    result = _scheduler(graph, runner, workers=2).run()
    assert len(result.succeeded) == 8
    assert runner.max_in_flight <= 2


def test_single_worker_follows_plan_order(make_task, make_graph):
    graph = make_graph(
        make_task("D", deps=["B@1.0", "C@1.0"]),
        make_task("B", deps=["A@1.0"]),
        make_task("C", deps=["A@1.0"]),
        make_task("A"),
    )
    runner = Recorder()
    plan = topo_sort(graph)
    Scheduler(graph, plan, runner, workers=1).run()
    assert runner.started() == plan.as_strings()


def test_cached_outcomes_are_reported(make_task, make_graph):
    graph = make_graph(make_task("A"), make_task("B", deps=["A@1.0"]))
    result = _scheduler(graph, Recorder(cached={"A-1.0"})).run()
    assert result.ok
    assert result.cached == {Identity("A", "1.0")}
    assert result.to_dict()["steps"][0] == {
        "name": "A-1.0",
        "status": "succeeded",
        "cached": True,
        "error": None,
        "artifacts": [],
    }


def test_snapshot_starts_pending(make_task, make_graph):
    graph = make_graph(make_task("A"))
    sched = _scheduler(graph, Recorder())
    assert sched.snapshot() == {Identity("A", "1.0"): TaskState.PENDING}
    sched.run()
    assert sched.state(Identity("A", "1.0")) == TaskState.SUCCEEDED


def test_invalid_construction(make_task, make_graph):
    graph = make_graph(make_task("A"), make_task("B"))
    with pytest.raises(ValueError, match="workers"):
        Scheduler(graph, topo_sort(graph), Recorder(), workers=0)
    with pytest.raises(ValueError, match="does not match"):
        Scheduler(graph, ExecutionPlan((Identity("A", "1.0"),)), Recorder())


def test_unordered_run_ignores_failures(make_task, make_graph):
    graph = make_graph(make_task("A"), make_task("B", deps=["A@1.0"]))
    result = _scheduler(graph, Recorder(fail={"A-1.0"})).run_unordered()
    assert result.states[Identity("A", "1.0")] == TaskState.FAILED
    assert result.states[Identity("B", "1.0")] == TaskState.SUCCEEDED


def test_real_build_once_is_idempotent(make_task, make_graph, store):
    graph = make_graph(
        make_task("lib", command='echo built >> "$BUILDGRAPH_CURRENT_BUILD_DIR/count"', build_once=True),
        make_task(
            "app",
            deps=["lib@1.0"],
            command='cat "$BUILDGRAPH_BUILD_CACHE_DIR_LIB_1_0/count" > "$BUILDGRAPH_CURRENT_BUILD_DIR/seen"',
            build_once=True,
        ),
    )
    env = resolve_environment(graph, store.layout, base_env={"PATH": "/usr/bin:/bin"})
    runner = make_runner(Action.BUILD, store, env, origins=graph.origins)

    first = Scheduler(graph, topo_sort(graph), runner, workers=2).run()
    assert first.ok and not first.cached
    assert (store.layout.build_dir(graph.task(Identity("app", "1.0"))) / "seen").read_text() == "built\n"

    second = Scheduler(graph, topo_sort(graph), runner, workers=2).run()
    assert second.ok
    assert second.cached == {Identity("lib", "1.0"), Identity("app", "1.0")}
    assert (store.layout.build_dir(graph.task(Identity("lib", "1.0"))) / "count").read_text() == "built\n"


def test_real_failure_propagates(make_task, make_graph, store):
    graph = make_graph(
        make_task("lib", command="exit 1"),
        make_task("app", deps=["lib@1.0"]),
    )
    env = resolve_environment(graph, store.layout, base_env={"PATH": "/usr/bin:/bin"})
    result = Scheduler(graph, topo_sort(graph), make_runner(Action.BUILD, store, env), workers=2).run()
    assert result.failed == [Identity("lib", "1.0")]
    assert result.skipped == [Identity("app", "1.0")]
    assert "exited with code 1" in result.errors[Identity("lib", "1.0")]
