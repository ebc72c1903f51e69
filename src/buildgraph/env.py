"""Environment variables exported to task commands.

Global variables (visible to every task):

- ``BUILDGRAPH_CACHE_ROOT``: the cache root.
- ``ARCH``: the target architecture of the run, when known.
- ``BUILDGRAPH_BUILD_CACHE_DIR_<SUFFIX>``: build output directory of a task.
- ``BUILDGRAPH_SOURCE_CACHE_DIR_<SUFFIX>``: where a task's sources live: the
  source cache for git and archive sources, the local path otherwise.

``<SUFFIX>`` is ``name-version`` upper-cased with ``. - + *``, tab and space
replaced by ``_``; ``libc``/``0.1.0`` gives
``BUILDGRAPH_BUILD_CACHE_DIR_LIBC_0_1_0``.

Per task, the declared ``envs`` and ``BUILDGRAPH_CURRENT_BUILD_DIR`` are
overlaid on the global set without replacing any generated variable.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .cache import CACHE_ROOT_ENV, CacheLayout
from .core import TaskGraph
from .errors import EnvNameCollisionError
from .logging import get_logger
from .task import Identity, TargetArch


log = get_logger("buildgraph.env")

BUILD_CACHE_DIR_PREFIX = "BUILDGRAPH_BUILD_CACHE_DIR"
SOURCE_CACHE_DIR_PREFIX = "BUILDGRAPH_SOURCE_CACHE_DIR"
CURRENT_BUILD_DIR = "BUILDGRAPH_CURRENT_BUILD_DIR"


def build_dir_key(identity: Identity) -> str:
    return f"{BUILD_CACHE_DIR_PREFIX}_{identity.env_suffix}"


def source_dir_key(identity: Identity) -> str:
    return f"{SOURCE_CACHE_DIR_PREFIX}_{identity.env_suffix}"


@dataclass(frozen=True)
class EnvironmentSet:
    global_vars: Mapping[str, str]
    task_vars: Mapping[Identity, Mapping[str, str]]

    def for_task(self, identity: Identity) -> dict[str, str]:
        env = dict(self.global_vars)
        env.update(self.task_vars.get(identity, {}))
        return env


def resolve_environment(
    graph: TaskGraph,
    layout: CacheLayout,
    base_env: Mapping[str, str] | None = None,
    arch: TargetArch | None = None,
) -> EnvironmentSet:
    """Derive a fresh ``EnvironmentSet`` from the graph; no side effects."""
    generated: dict[str, str] = {CACHE_ROOT_ENV: str(layout.root)}
    if arch is not None:
        generated["ARCH"] = arch.value

    owners: dict[str, Identity] = {}
    for ident in graph.identities():
        prev = owners.get(ident.env_suffix)
        if prev is not None:
            raise EnvNameCollisionError(build_dir_key(ident), prev, ident)
        owners[ident.env_suffix] = ident

        task = graph.task(ident)
        generated[build_dir_key(ident)] = str(layout.build_dir(task))
        generated[source_dir_key(ident)] = str(layout.src_work_dir(task))

    global_vars = dict(base_env or {})
    global_vars.update(generated)

    task_vars: dict[Identity, Mapping[str, str]] = {}
    for ident in graph.identities():
        task = graph.task(ident)
        overlay: dict[str, str] = {}
        for key, value in task.envs.items():
            if key in generated:
                log.warning(
                    "Task %s: env %s would override a generated variable, ignored", ident, key
                )
                continue
            overlay[key] = value
        overlay[CURRENT_BUILD_DIR] = str(layout.build_dir(task))
        task_vars[ident] = MappingProxyType(overlay)

    return EnvironmentSet(MappingProxyType(global_vars), MappingProxyType(task_vars))
