from __future__ import annotations

import hashlib
import json
import os
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .errors import CacheError
from .logging import get_logger
from .task import Task
from .utils import modified_since


log = get_logger("buildgraph.cache")

CACHE_ROOT_ENV = "BUILDGRAPH_CACHE_ROOT"
TASK_LOG_FILE_NAME = "task_log.json"

SUCCESS = "success"
FAILED = "failed"


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def task_digest(task: Task) -> str:
    """Digest of the material content of a declaration."""
    data = json.dumps(repr(task.content_key()), sort_keys=True).encode("utf-8")
    return sha256_bytes(data)


def resolve_cache_root(path: str | Path | None = None) -> Path:
    if path is None:
        env = os.getenv(CACHE_ROOT_ENV)
        path = env if env else Path.cwd() / "buildgraph_cache"
    return Path(path).expanduser().absolute()


def ensure_dir(path: Path) -> Path:
    if path.exists() and not path.is_dir():
        raise CacheError(f"Cache dir is not a directory: {path}")
    if not path.exists():
        log.info("Cache dir not exists, create it: %s", path)
        path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_cache_root(root: Path) -> Path:
    return ensure_dir(root)


def is_empty(path: Path) -> bool:
    if not path.exists():
        return True
    return next(path.iterdir(), None) is None


def remove(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)


class CacheLayout:
    """Path arithmetic under the cache root; creates nothing."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def build_dir(self, task: Task) -> Path:
        return self.root / "build" / task.identity.name_version

    def source_dir(self, task: Task) -> Path:
        return self.root / "source" / task.identity.name_version

    def task_data_dir(self, task: Task) -> Path:
        return self.root / "task_data" / task.identity.name_version

    def task_log_path(self, task: Task) -> Path:
        return self.task_data_dir(task) / TASK_LOG_FILE_NAME

    def src_work_dir(self, task: Task) -> Path:
        """Where the task's commands run: its local path or the source cache."""
        local = task.source_path()
        if local is not None:
            return Path(local)
        if task.needs_source_cache():
            return self.source_dir(task)
        return self.build_dir(task)


@dataclass
class TaskLog:
    """Cache Record of one task: outcome and time of its last build/install."""

    build_status: str | None = None
    build_time: datetime | None = None
    install_status: str | None = None
    install_time: datetime | None = None
    task_digest: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "TaskLog":
        return cls(
            build_status=_status(data.get("build_status"), "build"),
            build_time=_time(data.get("build_time")),
            install_status=_status(data.get("install_status"), "install"),
            install_time=_time(data.get("install_time")),
            task_digest=data.get("task_digest"),
        )

    def to_dict(self) -> dict:
        return {
            "build_status": self.build_status,
            "build_time": self.build_time.isoformat() if self.build_time else None,
            "install_status": self.install_status,
            "install_time": self.install_time.isoformat() if self.install_time else None,
            "task_digest": self.task_digest,
        }

    @property
    def built(self) -> bool:
        return self.build_status == SUCCESS and self.build_time is not None

    @property
    def installed(self) -> bool:
        return self.install_status == SUCCESS and self.install_time is not None


def _status(value, what: str) -> str | None:
    if value is None:
        return None
    v = str(value).lower()
    if v not in (SUCCESS, FAILED):
        log.warning("invalid %s status: %s", what, value)
        return FAILED
    return v


def _time(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        log.warning("invalid timestamp in task log: %s", value)
        return None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:
    """Reads and writes Cache Records; one lock serialises every update."""

    def __init__(self, layout: CacheLayout):
        self.layout = layout
        self._lock = threading.Lock()

    def load(self, task: Task) -> TaskLog:
        path = self.layout.task_log_path(task)
        if not path.exists():
            return TaskLog()
        try:
            with open(path, "r", encoding="utf-8") as f:
                return TaskLog.from_dict(json.load(f))
        except json.JSONDecodeError:
            log.warning("Corrupt task log for %s, ignored: %s", task, path)
            return TaskLog()

    def save(self, task: Task, task_log: TaskLog) -> None:
        path = self.layout.task_log_path(task)
        ensure_dir(path.parent)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(task_log.to_dict(), f, indent=2)
        os.replace(tmp, path)

    def record_build(self, task: Task) -> TaskLog:
        with self._lock:
            tl = self.load(task)
            tl.build_status = SUCCESS
            tl.build_time = _now()
            tl.task_digest = task_digest(task)
            self.save(task, tl)
            return tl

    def record_install(self, task: Task) -> TaskLog:
        with self._lock:
            tl = self.load(task)
            tl.install_status = SUCCESS
            tl.install_time = _now()
            self.save(task, tl)
            return tl

    def clear(self, task: Task) -> TaskLog:
        with self._lock:
            tl = self.load(task)
            tl.build_status = None
            tl.install_status = None
            self.save(task, tl)
            return tl


def should_skip_build(
    task: Task, task_log: TaskLog, layout: CacheLayout, origin: str | None = None
) -> bool:
    """A successful earlier build is reused if ``build_once`` is set or nothing changed."""
    if not task_log.built:
        return False
    if task.build_once:
        return True
    if task_log.task_digest != task_digest(task):
        return False
    since = task_log.build_time.timestamp()
    if modified_since(origin, since):
        return False
    return not modified_since(layout.src_work_dir(task), since)


def should_skip_install(
    task: Task, task_log: TaskLog, layout: CacheLayout, origin: str | None = None
) -> bool:
    if not task_log.installed:
        return False
    if task.install_once:
        return True
    since = task_log.install_time.timestamp()
    if modified_since(origin, since):
        return False
    return not modified_since(layout.build_dir(task), since)
