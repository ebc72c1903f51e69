from __future__ import annotations

import json
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from . import utils
from .blocklist import Blocklist
from .cache import CacheLayout, CacheStore, ensure_cache_root, resolve_cache_root
from .core import ExecutionPlan, TaskGraph, build_graph, check_acyclic
from .env import EnvironmentSet, resolve_environment
from .errors import InvalidConfigError
from .executor import Action, CleanLevel, make_runner
from .logging import get_logger
from .repository import TaskRepository
from .scheduler import RunResult, Scheduler
from .task import Identity, TargetArch


@dataclass(frozen=True)
class BuildPlan:
    """Everything decided before the first task runs."""

    graph: TaskGraph
    plan: ExecutionPlan
    environment: EnvironmentSet
    layout: CacheLayout
    arch: TargetArch


class Pipeline:
    def __init__(self, repository: TaskRepository, params: dict, name: str | None = None):
        self.repository = repository
        self.params = params
        self.name = name or utils.project_name(params)
        self.logger = get_logger(f"buildgraph.{self.name}")

    def arch(self) -> TargetArch:
        value = utils.arch(self.params)
        return TargetArch.parse(value) if value else TargetArch.default()

    def blocklist(self) -> Blocklist:
        path = utils.blocklist_path(self.params)
        return Blocklist.load(path) if path else Blocklist()

    def layout(self) -> CacheLayout:
        return CacheLayout(resolve_cache_root(utils.cache_root(self.params)))

    def workers(self, override: int | None = None) -> int | None:
        workers = override if override is not None else utils.workers(self.params)
        if workers is not None and workers < 1:
            raise InvalidConfigError(f"build.workers must be >= 1, got {workers}")
        return workers

    def plan(
        self,
        targets: Iterable[Identity] | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> BuildPlan:
        """Filter, build, sort and resolve; every fatal error raises here.

        ``base_env`` defaults to the process environment.
        """
        arch = self.arch()
        repo = self.repository.filter_arch(arch).apply_blocklist(self.blocklist())
        graph = build_graph(repo)
        targets = list(targets or [])
        if targets:
            graph = graph.subgraph(targets)
        plan = check_acyclic(graph)
        layout = self.layout()
        environment = resolve_environment(
            graph, layout, base_env=os.environ if base_env is None else base_env, arch=arch
        )
        self.logger.info("Execution plan: %s", " → ".join(plan.as_strings()) or "<empty>")
        return BuildPlan(graph, plan, environment, layout, arch)

    def run(
        self,
        action: Action,
        targets: Iterable[Identity] | None = None,
        clean_level: CleanLevel = CleanLevel.ALL,
        workers: int | None = None,
    ) -> RunResult:
        workers = self.workers(workers)
        bp = self.plan(targets)
        ensure_cache_root(bp.layout.root)

        run_id = time.strftime("%Y%m%d-%H%M%S")
        run_dir = Path(utils.runs_dir(self.params)) / self.name / run_id
        os.makedirs(run_dir, exist_ok=True)

        sysroot = utils.sysroot(self.params)
        runner = make_runner(
            action,
            CacheStore(bp.layout),
            bp.environment,
            sysroot_dir=Path(sysroot) if sysroot else None,
            origins=bp.graph.origins,
            clean_level=clean_level,
        )
        scheduler = Scheduler(bp.graph, bp.plan, runner, workers=workers)
        self.logger.info("%s: %d tasks, run id %s", action.value, len(bp.plan), run_id)

        result = scheduler.run() if action.ordered else scheduler.run_unordered()

        state = {
            "pipeline": self.name,
            "run_id": run_id,
            "action": action.value,
            "arch": bp.arch.value,
            "python": sys.version,
            **result.to_dict(),
        }
        _write_state(run_dir, state)
        if result.ok:
            self.logger.info("%s finished: %s", action.value, result.summary())
        else:
            self.logger.error("%s finished with errors:\n%s", action.value, result.summary())
        return result


def _write_state(run_dir: Path, state: dict) -> None:
    with open(run_dir / "state.json", "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2)
