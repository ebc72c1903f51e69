"""Small helpers: settings lookups, directory copy, modification scans."""

from __future__ import annotations

import os
import shutil
from collections import deque
from pathlib import Path
from typing import Dict

from .errors import InvalidConfigError


def _get(d: Dict, *keys, default=None):
    cur = d
    for k in keys:
        if not isinstance(cur, dict):
            return default
        cur = cur.get(k)
        if cur is None:
            return default
    return cur


def project_name(p: Dict) -> str:
    return str(_get(p, "project", "name", default="buildgraph"))


def runs_dir(p: Dict) -> str:
    return str(_get(p, "project", "runs_dir", default="runs"))


def cache_root(p: Dict) -> str | None:
    return _get(p, "cache", "root")


def workers(p: Dict) -> int | None:
    w = _get(p, "build", "workers")
    if w is None:
        return None
    try:
        return int(w)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(f"build.workers must be an integer, got {w!r}") from e


def arch(p: Dict) -> str | None:
    return _get(p, "build", "arch")


def sysroot(p: Dict) -> str | None:
    return _get(p, "build", "sysroot")


def task_paths(p: Dict) -> list[str]:
    paths = _get(p, "tasks", "paths", default=[])
    if isinstance(paths, str):
        paths = [paths]
    return [str(x) for x in paths]


def blocklist_path(p: Dict) -> str | None:
    return _get(p, "blocklist", "path")


def copy_dir_all(src: Path, dst: Path) -> None:
    """Copy a file or the contents of a directory into ``dst``."""
    src, dst = Path(src), Path(dst)
    dst.mkdir(parents=True, exist_ok=True)
    if src.is_file():
        shutil.copy2(src, dst / src.name)
        return
    for item in src.iterdir():
        target = dst / item.name
        if item.is_dir():
            shutil.copytree(item, target, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(item, target, follow_symlinks=False)


def modified_since(path: str | Path | None, since: float) -> bool:
    """True if ``path`` or anything beneath it has an mtime newer than ``since``.

    ``target`` directories (build products) are ignored. A missing path counts
    as unmodified.
    """
    if path is None:
        return False
    root = Path(path)
    if not root.exists():
        return False
    queue = deque([root])
    while queue:
        cur = queue.popleft()
        try:
            st = cur.stat()
        except FileNotFoundError:
            continue
        if st.st_mtime > since:
            return True
        if cur.is_dir():
            for entry in os.scandir(cur):
                if entry.name == "target" and entry.is_dir():
                    continue
                queue.append(Path(entry.path))
    return False
