"""Dependency-ordered build orchestrator.

Reads task declarations, builds and validates the dependency graph, resolves
per-task environment variables, and runs build/install/clean steps with
bounded parallelism and a persistent per-task cache.
"""

from .core import ExecutionPlan, TaskGraph, build_graph, check_acyclic, topo_sort
from .env import EnvironmentSet, resolve_environment
from .errors import (
    BuildGraphError,
    DependencyCycleError,
    DuplicateTaskError,
    EnvNameCollisionError,
    MissingDependencyError,
    RunFailedError,
)
from .pipeline import Pipeline
from .repository import TaskRepository, load_repository
from .scheduler import RunResult, Scheduler
from .task import Identity, Task, TaskState

__all__ = [
    "BuildGraphError",
    "DependencyCycleError",
    "DuplicateTaskError",
    "EnvNameCollisionError",
    "EnvironmentSet",
    "ExecutionPlan",
    "Identity",
    "MissingDependencyError",
    "Pipeline",
    "RunFailedError",
    "RunResult",
    "Scheduler",
    "Task",
    "TaskGraph",
    "TaskRepository",
    "TaskState",
    "build_graph",
    "check_acyclic",
    "load_repository",
    "resolve_environment",
    "topo_sort",
]
