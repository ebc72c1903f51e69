"""Running one task's build, install or clean step."""

from __future__ import annotations

import enum
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from . import cache as cache_mod
from .cache import CacheLayout, CacheStore
from .env import EnvironmentSet
from .errors import TaskExecutionError
from .logging import task_logger
from .source import prepare_archive, prepare_git
from .task import (
    ArchiveSource,
    BuildFromSource,
    GitSource,
    InstallFromPrebuilt,
    LocalSource,
    Task,
)
from .utils import copy_dir_all


STDERR_TAIL_LINES = 100


class Action(str, enum.Enum):
    BUILD = "build"
    INSTALL = "install"
    CLEAN = "clean"

    @property
    def ordered(self) -> bool:
        """Build and install follow dependency order; clean does not."""
        return self is not Action.CLEAN


class CleanLevel(str, enum.Enum):
    ALL = "all"
    IN_SRC = "in-src"
    OUTPUT = "output"


@dataclass
class StepOutcome:
    skipped: bool = False
    artifacts: list[Path] = field(default_factory=list)


class TaskExecutor:
    def __init__(
        self,
        task: Task,
        action: Action,
        store: CacheStore,
        env: Mapping[str, str],
        sysroot_dir: Path | None = None,
        origin: str | None = None,
        clean_level: CleanLevel = CleanLevel.ALL,
    ):
        self.task = task
        self.action = action
        self.store = store
        self.layout: CacheLayout = store.layout
        self.env = dict(env)
        self.sysroot_dir = Path(sysroot_dir) if sysroot_dir else None
        self.origin = origin
        self.clean_level = clean_level
        self.build_dir = self.layout.build_dir(task)
        self.source_dir = self.layout.source_dir(task) if task.needs_source_cache() else None
        self.log = task_logger(
            task.identity.name_version,
            log_file=self.layout.task_data_dir(task) / "task.log",
        )

    def execute(self) -> StepOutcome:
        self.log.info("Execute task: %s (%s)", self.task, self.action.value)
        # The cache record only changes after a step succeeds.
        if self.action is Action.BUILD:
            outcome = self.build()
            if not outcome.skipped:
                self.store.record_build(self.task)
        elif self.action is Action.INSTALL:
            outcome = self.install()
            if not outcome.skipped:
                self.store.record_install(self.task)
        elif self.action is Action.CLEAN:
            outcome = self.clean()
            self.store.clear(self.task)
        else:
            raise ValueError(f"Unsupported action: {self.action!r}")
        self.log.info("Task %s finished", self.task)
        return outcome

    # build -----------------------------------------------------------------

    def build(self) -> StepOutcome:
        tl = self.store.load(self.task)
        if cache_mod.should_skip_build(self.task, tl, self.layout, self.origin):
            self.log.info("Task %s has been built successfully, skip build.", self.task)
            return StepOutcome(skipped=True, artifacts=[self.build_dir])

        cache_mod.ensure_dir(self.build_dir)
        if self.task.pre_build:
            self.run_command(self.task.pre_build, "pre-build", cwd=self.build_dir)
        self.prepare_input()
        command = self.command_for(Action.BUILD)
        if command:
            self.run_command(command, "build")
        if self.task.post_build:
            self.run_command(self.task.post_build, "post-build", cwd=self.build_dir)

        if cache_mod.is_empty(self.build_dir):
            self.log.warning(
                "Task %s: build result is empty, did you forget to copy the result to $%s?",
                self.task,
                "BUILDGRAPH_CURRENT_BUILD_DIR",
            )
        return StepOutcome(artifacts=[self.build_dir])

    def prepare_input(self) -> None:
        tt = self.task.task_type
        src = tt.source
        if isinstance(tt, BuildFromSource):
            if isinstance(src, LocalSource):
                return
            if isinstance(src, GitSource):
                prepare_git(src, self.source_dir)
            elif isinstance(src, ArchiveSource):
                prepare_archive(src, self.source_dir)
            else:
                raise TypeError(f"Unknown code source: {src!r}")
        elif isinstance(tt, InstallFromPrebuilt):
            if isinstance(src, LocalSource):
                copy_dir_all(Path(src.path), self.build_dir)
            elif isinstance(src, ArchiveSource):
                prepare_archive(src, self.build_dir)
            else:
                raise TypeError(f"Unknown prebuilt source: {src!r}")
        else:
            raise TypeError(f"Unknown task type: {tt!r}")

    def command_for(self, action: Action) -> str | None:
        tt = self.task.task_type
        if not isinstance(tt, (BuildFromSource, InstallFromPrebuilt)):
            raise TypeError(f"Unknown task type: {tt!r}")
        if action is Action.BUILD:
            return self.task.build_command
        if action is Action.CLEAN:
            return self.task.clean_command
        raise ValueError(f"No command for action {action.value}")

    def work_dir(self) -> Path:
        return self.layout.src_work_dir(self.task)

    def run_command(self, command: str, what: str, cwd: Path | None = None) -> None:
        cwd = cwd or self.work_dir()
        self.log.debug("Running %s command in %s: %s", what, cwd, command)
        try:
            proc = subprocess.run(
                ["bash", "-c", command],
                cwd=cwd,
                env=self.env,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise TaskExecutionError(self.task.identity, f"{what} command error: {e}") from e
        for line in proc.stdout.splitlines():
            self.log.debug("%s", line)
        if proc.returncode != 0:
            tail = proc.stderr.splitlines()[-STDERR_TAIL_LINES:]
            self.log.error(
                "Task %s %s failed, exit code = %d", self.task, what, proc.returncode
            )
            for line in tail:
                self.log.error("%s", line)
            raise TaskExecutionError(
                self.task.identity,
                f"{what} command exited with code {proc.returncode}",
                returncode=proc.returncode,
                stderr_tail=tail,
            )

    # install ---------------------------------------------------------------

    def install(self) -> StepOutcome:
        tl = self.store.load(self.task)
        if cache_mod.should_skip_install(self.task, tl, self.layout, self.origin):
            self.log.info("install: Task %s not changed.", self.task)
            return StepOutcome(skipped=True)
        if not self.task.install_path:
            return StepOutcome()
        if self.sysroot_dir is None:
            raise TaskExecutionError(self.task.identity, "install requires a sysroot dir")
        install_dir = self.sysroot_dir / self.task.install_path.lstrip("/")
        self.log.info("Installing task %s into %s", self.task, install_dir)
        try:
            copy_dir_all(self.build_dir, install_dir)
        except OSError as e:
            raise TaskExecutionError(self.task.identity, f"install failed: {e}") from e
        return StepOutcome(artifacts=[install_dir])

    # clean -----------------------------------------------------------------

    def clean(self) -> StepOutcome:
        self.log.info("Cleaning task: %s, level=%s", self.task, self.clean_level.value)
        if self.clean_level is CleanLevel.ALL:
            self.clean_src()
            self.clean_target()
            self.clean_cache()
        elif self.clean_level is CleanLevel.IN_SRC:
            self.clean_src()
        elif self.clean_level is CleanLevel.OUTPUT:
            self.clean_target()
            self.clean_cache()
        return StepOutcome()

    def clean_src(self) -> None:
        command = self.command_for(Action.CLEAN)
        if not command or not self.work_dir().exists():
            return
        self.log.info("%s: Cleaning in source directory: %s", self.task, self.work_dir())
        self.run_command(command, "clean")

    def clean_target(self) -> None:
        self.log.info("%s: Cleaning build target directory: %s", self.task, self.build_dir)
        cache_mod.remove(self.build_dir)

    def clean_cache(self) -> None:
        if self.source_dir is None:
            return
        self.log.info("%s: Cleaning cache directory: %s", self.task, self.source_dir)
        cache_mod.remove(self.source_dir)


Runner = Callable[[Task], StepOutcome]


def make_runner(
    action: Action,
    store: CacheStore,
    environment: EnvironmentSet,
    sysroot_dir: Path | None = None,
    origins: Mapping | None = None,
    clean_level: CleanLevel = CleanLevel.ALL,
) -> Runner:
    """Runner for the scheduler: one ``TaskExecutor`` per dispatched task."""
    origins = origins or {}

    def run(task: Task) -> StepOutcome:
        found = origins.get(task.identity) or ()
        return TaskExecutor(
            task,
            action,
            store,
            environment.for_task(task.identity),
            sysroot_dir=sysroot_dir,
            origin=found[0] if found else None,
            clean_level=clean_level,
        ).execute()

    return run
