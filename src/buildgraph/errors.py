"""Error taxonomy.

Construction and planning errors are raised before anything executes and also
subclass ``ValueError``. Runtime errors are recorded per task by the scheduler
and surfaced through ``RunResult``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .task import Identity


class BuildGraphError(Exception):
    """Base class for every error raised by buildgraph."""


class InvalidTaskError(BuildGraphError, ValueError):
    """A task declaration is malformed."""


class InvalidConfigError(BuildGraphError, ValueError):
    """A settings value or the blocklist file is malformed."""


class MissingDependencyError(BuildGraphError, ValueError):
    """``task`` is None when ``missing`` was requested as a run target."""

    def __init__(
        self, task: "Identity | None", missing: "Identity", origin: str | None = None
    ):
        self.task = task
        self.missing = missing
        self.origin = origin
        if task is None:
            super().__init__(f"Unknown target task: {missing}")
            return
        where = f" (declared in {origin})" if origin else ""
        super().__init__(f"Task {task}{where}: dependency not found: {missing}")


class DuplicateTaskError(BuildGraphError, ValueError):
    def __init__(self, identity: "Identity", origins: Sequence[str | None]):
        self.identity = identity
        self.origins = list(origins)
        files = ", ".join(str(o) for o in self.origins if o) or "<unknown>"
        super().__init__(
            f"Duplicate identity, conflicting definition: {identity} (declared in: {files})"
        )


class DependencyCycleError(BuildGraphError, ValueError):
    """Raised when the graph contains a cycle.

    ``path`` lists the identities along the loop with the first element
    repeated at the end, each element depending on the next one.
    """

    def __init__(
        self, path: Sequence["Identity"], origins: dict | None = None
    ):
        self.path = list(path)
        self.origins = origins or {}
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(str(i) for i in self.path)
        )

    def edges(self) -> list[tuple["Identity", "Identity"]]:
        return list(zip(self.path, self.path[1:]))

    def describe(self) -> str:
        lines = ["Dependency cycle detected:", "Start ->"]
        for current, dep in self.edges():
            lines.append(
                f"->\t{current} ({self._origin(current)})\t--depends-->\t"
                f"{dep} ({self._origin(dep)})"
            )
        lines.append("-> End")
        return "\n".join(lines)

    def _origin(self, identity: "Identity") -> str:
        origins = self.origins.get(identity) or []
        return ", ".join(str(o) for o in origins if o) or "<unknown>"


class EnvNameCollisionError(BuildGraphError, ValueError):
    def __init__(self, variable: str, first: "Identity", second: "Identity"):
        self.variable = variable
        self.identities = (first, second)
        super().__init__(
            f"Environment variable {variable} is derived from both {first} and {second}"
        )


class CacheError(BuildGraphError):
    """Cache root or cache directory cannot be used."""


class SourcePrepareError(BuildGraphError):
    """Fetching or unpacking a task's sources failed."""


class TaskExecutionError(BuildGraphError):
    def __init__(
        self,
        task: "Identity",
        message: str,
        returncode: int | None = None,
        stderr_tail: Iterable[str] = (),
    ):
        self.task = task
        self.returncode = returncode
        self.stderr_tail = list(stderr_tail)
        super().__init__(f"Task {task} failed: {message}")


class RunFailedError(BuildGraphError):
    def __init__(self, result):
        self.result = result
        super().__init__(
            "Run failed: %d failed, %d skipped"
            % (len(result.failed), len(result.skipped))
        )
