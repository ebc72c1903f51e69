from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator

import yaml

from .blocklist import Blocklist
from .errors import InvalidTaskError
from .logging import get_logger
from .task import Identity, TargetArch, Task


log = get_logger("buildgraph.repository")


class TaskRepository:
    """Every parsed task declaration, duplicates included, with its origin."""

    def __init__(self, declarations: Iterable[tuple[str | None, Task]] = ()):
        self._decls: list[tuple[str | None, Task]] = []
        self.extend(declarations)

    def add(self, task: Task, origin: str | Path | None = None) -> None:
        self._decls.append((str(origin) if origin is not None else None, task))

    def extend(self, declarations: Iterable[tuple[str | None, Task]]) -> None:
        for origin, task in declarations:
            self.add(task, origin)

    def declarations(self) -> list[tuple[str | None, Task]]:
        return list(self._decls)

    def identities(self) -> list[Identity]:
        return sorted({t.identity for _, t in self._decls})

    def get(self, identity: Identity) -> Task | None:
        for _, t in self._decls:
            if t.identity == identity:
                return t
        return None

    def __len__(self) -> int:
        return len(self._decls)

    def __iter__(self) -> Iterator[Task]:
        return (t for _, t in self._decls)

    def filter_arch(self, arch: TargetArch) -> "TaskRepository":
        kept = []
        for origin, task in self._decls:
            if arch in task.target_arch:
                kept.append((origin, task))
            else:
                log.info("Task %s is not for target arch %s, ignored", task, arch.value)
        return TaskRepository(kept)

    def apply_blocklist(self, blocklist: Blocklist) -> "TaskRepository":
        """Drop blocked tasks in strict mode; only warn about them otherwise."""
        if not len(blocklist):
            return TaskRepository(self._decls)
        kept = []
        blocked: list[str] = []
        for origin, task in self._decls:
            if not blocklist.is_blocked(task.name, task.version):
                kept.append((origin, task))
                continue
            blocked.append(str(task))
            if blocklist.log_skipped:
                if blocklist.strict:
                    log.warning("Skipping blocked task %s (config: %s)", task, origin)
                else:
                    log.warning("Task %s is in blocklist but not skipped (strict mode off)", task)
            if not blocklist.strict:
                kept.append((origin, task))
        if blocked and blocklist.log_skipped:
            if blocklist.strict:
                log.info("Skipped %d blocked tasks: %s", len(blocked), ", ".join(blocked))
            else:
                log.info(
                    "Found %d tasks in blocklist but not skipped (strict mode off): %s",
                    len(blocked),
                    ", ".join(blocked),
                )
        return TaskRepository(kept)


def _task_files(paths: Iterable[str | Path]) -> list[Path]:
    files: list[Path] = []
    for p in paths:
        pp = Path(p)
        if pp.is_dir():
            files.extend(
                sorted(f for f in pp.iterdir() if f.suffix in (".yaml", ".yml") and f.is_file())
            )
        elif pp.exists():
            files.append(pp)
        else:
            raise FileNotFoundError(f"Task declaration path not found: {pp}")
    return files


def load_repository(paths: Iterable[str | Path]) -> TaskRepository:
    """Read task declarations from YAML files or directories of YAML files."""
    repo = TaskRepository()
    for f in _task_files(paths):
        with open(f, "r", encoding="utf-8") as fh:
            try:
                data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as e:
                raise InvalidTaskError(f"{f}: invalid YAML: {e}") from e
        docs = data.get("tasks") if isinstance(data, dict) and "tasks" in data else [data]
        for doc in docs or []:
            try:
                repo.add(Task.from_dict(doc), origin=f)
            except InvalidTaskError as e:
                raise InvalidTaskError(f"{f}: {e}") from e
    log.info("Loaded %d task declarations", len(repo))
    return repo
