from __future__ import annotations

import os
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
import yaml

from . import utils
from .errors import BuildGraphError, RunFailedError
from .executor import Action, CleanLevel
from .logging import configure, get_logger
from .pipeline import Pipeline
from .repository import load_repository
from .task import Identity


app = typer.Typer(add_completion=False, help="Dependency-ordered build orchestrator CLI")
log = get_logger("buildgraph.cli")

DEFAULT_CONFIG = "configs/base.yaml"

# Exit codes: task failures vs. errors found before anything ran.
EXIT_FAILED = 1
EXIT_INVALID = 2


def load_config(path: str | Path) -> dict:
    p = Path(path)
    if not p.exists() and str(path) == DEFAULT_CONFIG:
        return {}
    with open(p, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _settings(
    config: str,
    tasks: Optional[List[str]] = None,
    cache_dir: Optional[str] = None,
    sysroot: Optional[str] = None,
    arch: Optional[str] = None,
    workers: Optional[int] = None,
) -> dict:
    """Config file values with command-line overrides applied."""
    try:
        params = load_config(config)
    except (OSError, yaml.YAMLError) as e:
        _fail(e)
    if tasks:
        params.setdefault("tasks", {})["paths"] = list(tasks)
    if cache_dir:
        params.setdefault("cache", {})["root"] = cache_dir
    if sysroot:
        params.setdefault("build", {})["sysroot"] = sysroot
    if arch:
        params.setdefault("build", {})["arch"] = arch
    if workers is not None:
        params.setdefault("build", {})["workers"] = workers
    return params


def _pipeline(params: dict) -> Pipeline:
    paths = utils.task_paths(params)
    if not paths:
        typer.echo("No task declarations configured. Set tasks.paths or pass --tasks.")
        raise typer.Exit(code=EXIT_INVALID)
    return Pipeline(load_repository(paths), params)


def _fail(e: Exception) -> NoReturn:
    log.debug("Aborted before execution", exc_info=e)
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(code=EXIT_INVALID)


ConfigOpt = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config")
TasksOpt = typer.Option(None, "--tasks", help="Task declaration file or directory (repeatable)")
CacheOpt = typer.Option(None, "--cache-dir", help="Cache root (default: $BUILDGRAPH_CACHE_ROOT)")
ArchOpt = typer.Option(None, "--arch", help="Target architecture (x86_64, riscv64)")
TargetOpt = typer.Option(None, "--target", "-t", help="Only these tasks and their dependencies")


@app.command("list")
def list_tasks(
    config: str = ConfigOpt,
    tasks: Optional[List[str]] = TasksOpt,
):
    """List declared tasks."""
    params = _settings(config, tasks=tasks)
    try:
        pipe = _pipeline(params)
        blocklist = pipe.blocklist()
    except (BuildGraphError, OSError) as e:
        _fail(e)
    if not len(pipe.repository):
        typer.echo("No tasks declared.")
        raise typer.Exit(code=0)
    typer.echo("Declared tasks:")
    for ident in pipe.repository.identities():
        task = pipe.repository.get(ident)
        line = f"- {ident}"
        if task.description:
            line += f": {task.description}"
        if blocklist.is_blocked(ident.name, ident.version):
            line += " [blocked]"
        typer.echo(line)


@app.command()
def plan(
    config: str = ConfigOpt,
    tasks: Optional[List[str]] = TasksOpt,
    cache_dir: Optional[str] = CacheOpt,
    arch: Optional[str] = ArchOpt,
    target: Optional[List[str]] = TargetOpt,
):
    """Print the execution plan, one task per line."""
    params = _settings(config, tasks=tasks, cache_dir=cache_dir, arch=arch)
    try:
        bp = _pipeline(params).plan([Identity.parse(t) for t in target or []])
    except (BuildGraphError, OSError) as e:
        _fail(e)
    for i, ident in enumerate(bp.plan, start=1):
        deps = ", ".join(str(d) for d in bp.graph.dependencies(ident))
        typer.echo(f"{i}. {ident}" + (f" (depends on: {deps})" if deps else ""))


@app.command()
def env(
    config: str = ConfigOpt,
    tasks: Optional[List[str]] = TasksOpt,
    cache_dir: Optional[str] = CacheOpt,
    arch: Optional[str] = ArchOpt,
    task: Optional[str] = typer.Option(None, "--task", help="Show the environment of one task"),
    all_vars: bool = typer.Option(False, "--all", help="Include inherited process variables"),
):
    """Print the generated environment variables."""
    params = _settings(config, tasks=tasks, cache_dir=cache_dir, arch=arch)
    try:
        bp = _pipeline(params).plan(base_env=os.environ if all_vars else {})
        ident = Identity.parse(task) if task else None
        if ident is not None and ident not in bp.graph:
            raise BuildGraphError(f"Unknown task: {ident}")
    except (BuildGraphError, OSError) as e:
        _fail(e)
    if ident is None:
        values = dict(bp.environment.global_vars)
    else:
        values = bp.environment.for_task(ident)
    for key in sorted(values):
        typer.echo(f"{key}={values[key]}")


def _run(params: dict, action: Action, target: Optional[List[str]], **kwargs) -> None:
    try:
        pipe = _pipeline(params)
        result = pipe.run(action, targets=[Identity.parse(t) for t in target or []], **kwargs)
    except (BuildGraphError, OSError) as e:
        _fail(e)
    typer.echo(result.summary())
    try:
        result.raise_for_status()
    except RunFailedError:
        raise typer.Exit(code=EXIT_FAILED)


@app.command()
def build(
    config: str = ConfigOpt,
    tasks: Optional[List[str]] = TasksOpt,
    cache_dir: Optional[str] = CacheOpt,
    arch: Optional[str] = ArchOpt,
    target: Optional[List[str]] = TargetOpt,
    workers: Optional[int] = typer.Option(None, "--workers", "-j", min=1, help="Parallel workers"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Build tasks in dependency order."""
    if verbose:
        configure("DEBUG")
    params = _settings(config, tasks=tasks, cache_dir=cache_dir, arch=arch, workers=workers)
    _run(params, Action.BUILD, target)


@app.command()
def install(
    config: str = ConfigOpt,
    tasks: Optional[List[str]] = TasksOpt,
    cache_dir: Optional[str] = CacheOpt,
    sysroot: Optional[str] = typer.Option(None, "--sysroot", help="Install destination root"),
    arch: Optional[str] = ArchOpt,
    target: Optional[List[str]] = TargetOpt,
    workers: Optional[int] = typer.Option(None, "--workers", "-j", min=1, help="Parallel workers"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Install built tasks into the sysroot in dependency order."""
    if verbose:
        configure("DEBUG")
    params = _settings(
        config, tasks=tasks, cache_dir=cache_dir, sysroot=sysroot, arch=arch, workers=workers
    )
    if not utils.sysroot(params):
        typer.echo("No sysroot configured. Set build.sysroot or pass --sysroot.", err=True)
        raise typer.Exit(code=EXIT_INVALID)
    _run(params, Action.INSTALL, target)


@app.command()
def clean(
    config: str = ConfigOpt,
    tasks: Optional[List[str]] = TasksOpt,
    cache_dir: Optional[str] = CacheOpt,
    arch: Optional[str] = ArchOpt,
    target: Optional[List[str]] = TargetOpt,
    level: CleanLevel = typer.Option(CleanLevel.ALL, "--level", help="What to clean"),
    workers: Optional[int] = typer.Option(None, "--workers", "-j", min=1, help="Parallel workers"),
):
    """Clean task build outputs and caches (no ordering)."""
    params = _settings(config, tasks=tasks, cache_dir=cache_dir, arch=arch, workers=workers)
    _run(params, Action.CLEAN, target, clean_level=level)


def main():  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
