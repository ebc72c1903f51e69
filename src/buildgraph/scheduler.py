"""Bounded-parallel execution of an ``ExecutionPlan``.

A task is dispatched once every dependency has succeeded; readiness, not plan
position, gates dispatch, and ready tasks are taken in plan order. When a task
fails, every task that transitively depends on it is marked skipped and never
dispatched. Independent branches keep running.
"""

from __future__ import annotations

import heapq
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from .core import ExecutionPlan, TaskGraph
from .errors import RunFailedError
from .executor import Runner
from .logging import get_logger
from .task import Identity, TaskState


log = get_logger("buildgraph.scheduler")


@dataclass
class RunResult:
    plan: tuple[Identity, ...]
    states: dict[Identity, TaskState]
    errors: dict[Identity, str] = field(default_factory=dict)
    artifacts: dict[Identity, list[Path]] = field(default_factory=dict)
    cached: set[Identity] = field(default_factory=set)

    def _with(self, state: TaskState) -> list[Identity]:
        return [i for i in self.plan if self.states.get(i) == state]

    @property
    def succeeded(self) -> list[Identity]:
        return self._with(TaskState.SUCCEEDED)

    @property
    def failed(self) -> list[Identity]:
        return self._with(TaskState.FAILED)

    @property
    def skipped(self) -> list[Identity]:
        return self._with(TaskState.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    def summary(self) -> str:
        lines = [
            f"{len(self.succeeded)} succeeded ({len(self.cached)} cached), "
            f"{len(self.failed)} failed, {len(self.skipped)} skipped"
        ]
        for ident in self.failed:
            lines.append(f"  failed:  {ident}: {self.errors.get(ident, '')}")
        for ident in self.skipped:
            lines.append(f"  skipped: {ident}: {self.errors.get(ident, '')}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "steps": [
                {
                    "name": str(i),
                    "status": self.states[i].value,
                    "cached": i in self.cached,
                    "error": self.errors.get(i),
                    "artifacts": [str(p) for p in self.artifacts.get(i, [])],
                }
                for i in self.plan
            ],
        }

    def raise_for_status(self) -> None:
        if not self.ok:
            raise RunFailedError(self)


class Scheduler:
    def __init__(
        self,
        graph: TaskGraph,
        plan: ExecutionPlan,
        runner: Runner,
        workers: int | None = None,
    ):
        if set(plan.order) != set(graph.identities()) or len(plan) != len(graph):
            raise ValueError("Execution plan does not match the task graph")
        workers = workers if workers is not None else (os.cpu_count() or 1)
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.graph = graph
        self.plan = plan
        self.runner = runner
        self.workers = workers
        self._position = {ident: i for i, ident in enumerate(plan.order)}
        self._lock = threading.Lock()
        self._states: dict[Identity, TaskState] = {i: TaskState.PENDING for i in plan}
        self._errors: dict[Identity, str] = {}
        self._artifacts: dict[Identity, list[Path]] = {}
        self._cached: set[Identity] = set()

    def state(self, identity: Identity) -> TaskState:
        with self._lock:
            return self._states[identity]

    def snapshot(self) -> dict[Identity, TaskState]:
        with self._lock:
            return dict(self._states)

    def _set(self, identity: Identity, state: TaskState) -> None:
        with self._lock:
            self._states[identity] = state

    def _result(self) -> RunResult:
        with self._lock:
            return RunResult(
                plan=self.plan.order,
                states=dict(self._states),
                errors=dict(self._errors),
                artifacts={k: list(v) for k, v in self._artifacts.items()},
                cached=set(self._cached),
            )

    def _finish(self, ident: Identity, fut: Future) -> bool:
        """Record the outcome of a finished task; True if it succeeded."""
        try:
            outcome = fut.result()
        except Exception as e:  # noqa: BLE001
            log.error("Task %s failed: %s", ident, e)
            with self._lock:
                self._states[ident] = TaskState.FAILED
                self._errors[ident] = str(e)
            return False
        with self._lock:
            self._states[ident] = TaskState.SUCCEEDED
            self._artifacts[ident] = list(outcome.artifacts) if outcome else []
            if outcome is not None and outcome.skipped:
                self._cached.add(ident)
        log.info("Task %s succeeded%s", ident, " (cached)" if outcome and outcome.skipped else "")
        return True

    def _skip_dependents(self, failed: Identity) -> None:
        with self._lock:
            for ident in sorted(self.graph.descendants(failed)):
                if self._states[ident] == TaskState.PENDING:
                    self._states[ident] = TaskState.SKIPPED
                    self._errors[ident] = f"dependency {failed} failed"
                    log.warning("Skip %s: dependency %s failed", ident, failed)

    def run(self) -> RunResult:
        """Run every task in dependency order with at most ``workers`` in flight."""
        waiting = {i: len(self.graph.dependencies(i)) for i in self.plan}
        ready: list[tuple[int, Identity]] = [
            (self._position[i], i) for i in self.plan if waiting[i] == 0
        ]
        heapq.heapify(ready)
        log.info("Running %d tasks with %d workers", len(self.plan), self.workers)

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            running: dict[Future, Identity] = {}
            while ready or running:
                while ready and len(running) < self.workers:
                    _, ident = heapq.heappop(ready)
                    if self.state(ident) != TaskState.PENDING:
                        continue
                    self._set(ident, TaskState.RUNNING)
                    log.info("Run: %s", ident)
                    running[pool.submit(self.runner, self.graph.task(ident))] = ident
                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: self._position[running[f]]):
                    ident = running.pop(fut)
                    if not self._finish(ident, fut):
                        self._skip_dependents(ident)
                        continue
                    for child in self.graph.dependents(ident):
                        waiting[child] -= 1
                        if waiting[child] == 0 and self.state(child) == TaskState.PENDING:
                            heapq.heappush(ready, (self._position[child], child))

        result = self._result()
        stuck = [i for i, s in result.states.items() if not s.terminal]
        if stuck:
            raise RuntimeError(f"Tasks never became ready: {', '.join(map(str, stuck))}")
        log.info("Run finished: %s", result.summary().splitlines()[0])
        return result

    def run_unordered(self) -> RunResult:
        """Run every task with no ordering constraint (used for clean)."""
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            running: dict[Future, Identity] = {}
            for ident in self.plan:
                self._set(ident, TaskState.RUNNING)
                running[pool.submit(self.runner, self.graph.task(ident))] = ident
            for fut in sorted(running, key=lambda f: self._position[running[f]]):
                self._finish(running[fut], fut)
        return self._result()
