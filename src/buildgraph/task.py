"""Task data model.

A task is identified by its ``(name, version)`` pair. The kind of a task is a
closed variant: either ``BuildFromSource`` (code from a local path, an online
archive or a git repository) or ``InstallFromPrebuilt`` (a local path or an
online archive holding ready-made build output).
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Mapping, Union

from .errors import InvalidTaskError


# Characters that cannot appear in cache directory or variable names.
NAME_VERSION_REPLACE_TABLE = (" ", "\t", "-", ".", "+", "*")


def name_version(name: str, version: str) -> str:
    """``libc``/``0.1.0`` -> ``libc_0_1_0``."""
    out = f"{name}-{version}"
    for ch in NAME_VERSION_REPLACE_TABLE:
        out = out.replace(ch, "_")
    return out


def env_suffix(name: str, version: str) -> str:
    """``libc``/``0.1.0`` -> ``LIBC_0_1_0``."""
    return name_version(name.upper(), version.upper())


@dataclass(frozen=True)
class Identity:
    name: str
    version: str

    def __str__(self) -> str:
        return f"{self.name}-{self.version}"

    def __lt__(self, other: "Identity") -> bool:
        if not isinstance(other, Identity):
            return NotImplemented
        # Distinct identities can print alike ("a-b"/"1" and "a"/"b-1").
        return (str(self), self.name, self.version) < (str(other), other.name, other.version)

    @property
    def env_suffix(self) -> str:
        return env_suffix(self.name, self.version)

    @property
    def name_version(self) -> str:
        return name_version(self.name, self.version)

    @classmethod
    def parse(cls, text: str) -> "Identity":
        """Parse ``name@version`` (or ``name-version`` split on the last dash)."""
        text = text.strip()
        sep = "@" if "@" in text else "-"
        name, _, version = text.rpartition(sep)
        if not name or not version:
            raise InvalidTaskError(f"Cannot parse task identity: {text!r}")
        return cls(name, version)


class TargetArch(str, enum.Enum):
    X86_64 = "x86_64"
    RISCV64 = "riscv64"

    @classmethod
    def parse(cls, value: str) -> "TargetArch":
        v = (value or "").strip().lower()
        for arch in cls:
            if arch.value == v:
                return arch
        raise InvalidTaskError(
            f"Unknown target arch: {value!r}, expected one of {[a.value for a in cls]}"
        )

    @classmethod
    def default(cls) -> "TargetArch":
        return cls.parse(os.getenv("ARCH", "x86_64"))


class TaskState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.SKIPPED)


@dataclass(frozen=True)
class LocalSource:
    path: str

    def validate(self) -> None:
        if not self.path:
            raise InvalidTaskError("local source: path is empty")


@dataclass(frozen=True)
class ArchiveSource:
    url: str

    def validate(self) -> None:
        if not self.url:
            raise InvalidTaskError("archive source: url is empty")
        if not self.url.startswith(("http://", "https://")):
            raise InvalidTaskError(f"archive source: unsupported url {self.url!r}")


@dataclass(frozen=True)
class GitSource:
    url: str
    branch: str | None = None
    revision: str | None = None

    def validate(self) -> "GitSource":
        """Return the validated source, with ``branch`` defaulting to ``master``."""
        if not self.url:
            raise InvalidTaskError("git source: url is empty")
        if self.branch is not None and self.revision is not None:
            raise InvalidTaskError("git source: branch and revision are both specified")
        if self.branch is None and self.revision is None:
            return GitSource(self.url, "master", None)
        if self.branch is not None and not self.branch:
            raise InvalidTaskError("git source: branch is empty")
        if self.revision is not None and not self.revision:
            raise InvalidTaskError("git source: revision is empty")
        return self


CodeSource = Union[LocalSource, ArchiveSource, GitSource]
PrebuiltSource = Union[LocalSource, ArchiveSource]


@dataclass(frozen=True)
class BuildFromSource:
    source: CodeSource


@dataclass(frozen=True)
class InstallFromPrebuilt:
    source: PrebuiltSource


TaskType = Union[BuildFromSource, InstallFromPrebuilt]


@dataclass
class Task:
    name: str
    version: str
    task_type: TaskType
    description: str = ""
    depends: list[Identity] = field(default_factory=list)
    build_command: str | None = None
    pre_build: str | None = None
    post_build: str | None = None
    install_path: str | None = None
    clean_command: str | None = None
    envs: dict[str, str] = field(default_factory=dict)
    build_once: bool = False
    install_once: bool = False
    target_arch: list[TargetArch] = field(default_factory=lambda: [TargetArch.default()])

    @property
    def identity(self) -> Identity:
        return Identity(self.name, self.version)

    def __str__(self) -> str:
        return str(self.identity)

    def content_key(self) -> tuple:
        """Everything that makes two declarations of one identity differ materially."""
        return (
            self.task_type,
            self.build_command,
            self.pre_build,
            self.post_build,
            self.install_path,
            self.clean_command,
            tuple(sorted(set(self.depends))),
            tuple(sorted(self.envs.items())),
            self.build_once,
            self.install_once,
            tuple(sorted({a.value for a in self.target_arch})),
        )

    def source_path(self) -> str | None:
        """Local source directory, or None when the source must be fetched."""
        src = self.task_type.source
        if isinstance(src, LocalSource):
            return src.path
        return None

    def needs_source_cache(self) -> bool:
        tt = self.task_type
        if isinstance(tt, BuildFromSource):
            return isinstance(tt.source, (GitSource, ArchiveSource))
        if isinstance(tt, InstallFromPrebuilt):
            return False
        raise TypeError(f"Unknown task type: {tt!r}")

    def trim(self) -> None:
        self.name = self.name.strip()
        self.version = self.version.strip()
        self.description = (self.description or "").strip()
        self.build_command = _strip_opt(self.build_command)
        self.pre_build = _strip_opt(self.pre_build)
        self.post_build = _strip_opt(self.post_build)
        self.install_path = _strip_opt(self.install_path)
        self.clean_command = _strip_opt(self.clean_command)
        self.depends = [Identity(d.name.strip(), d.version.strip()) for d in self.depends]
        self.envs = {k.strip(): str(v).strip() for k, v in self.envs.items()}

    def validate(self) -> None:
        if not self.name:
            raise InvalidTaskError("name is empty")
        if not self.version:
            raise InvalidTaskError(f"{self.name}: version is empty")
        tt = self.task_type
        if isinstance(tt, BuildFromSource):
            src = tt.source
            if isinstance(src, GitSource):
                self.task_type = BuildFromSource(src.validate())
            else:
                src.validate()
            if not self.build_command:
                raise InvalidTaskError(f"{self}: build command is empty")
        elif isinstance(tt, InstallFromPrebuilt):
            if isinstance(tt.source, GitSource):
                raise InvalidTaskError(f"{self}: install from prebuilt doesn't support git")
            tt.source.validate()
            if self.build_command:
                raise InvalidTaskError(
                    f"{self}: build command should be empty when install from prebuilt"
                )
        else:
            raise InvalidTaskError(f"{self}: unknown task type {tt!r}")
        if self.install_path and not PurePosixPath(self.install_path).is_absolute():
            raise InvalidTaskError(f"{self}: install path should be an absolute path")
        for dep in self.depends:
            if not dep.name or not dep.version:
                raise InvalidTaskError(f"{self}: dependency with empty name or version")
        for key in self.envs:
            if not key:
                raise InvalidTaskError(f"{self}: env key is empty")
        if not self.target_arch:
            raise InvalidTaskError(f"{self}: target arch is empty")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Task":
        """Build a task from a plain mapping, e.g. one YAML document."""
        if not isinstance(data, Mapping):
            raise InvalidTaskError(f"Task declaration must be a mapping, got {type(data).__name__}")
        build = data.get("build") or {}
        install = data.get("install") or {}
        clean = data.get("clean") or {}
        arch = data.get("target-arch")
        if isinstance(arch, str):
            arch = [arch]
        task = cls(
            name=_text(data, "name"),
            version=_text(data, "version"),
            description=str(data.get("description") or ""),
            task_type=_task_type_from_dict(data.get("task-source") or {}),
            depends=[_identity_from_dict(d) for d in data.get("depends") or []],
            build_command=build.get("build-command"),
            pre_build=build.get("pre-build"),
            post_build=build.get("post-build"),
            install_path=install.get("in-sysroot-path"),
            clean_command=clean.get("clean-command"),
            envs=_envs_from_dict(data.get("envs")),
            build_once=bool(data.get("build-once", False)),
            install_once=bool(data.get("install-once", False)),
            target_arch=(
                [TargetArch.parse(a) for a in arch] if arch is not None else [TargetArch.default()]
            ),
        )
        task.trim()
        task.validate()
        return task


def _strip_opt(value: str | None) -> str | None:
    if value is None:
        return None
    return str(value).strip()


def _text(data: Mapping[str, Any], key: str) -> str:
    """A required string field; YAML numbers are rejected rather than re-spelled."""
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidTaskError(
            f"{key} must be a string, got {type(value).__name__} {value!r} (quote it in YAML)"
        )
    return value


def _identity_from_dict(d: Any) -> Identity:
    if isinstance(d, str):
        return Identity.parse(d)
    if not isinstance(d, Mapping):
        raise InvalidTaskError(f"Invalid dependency declaration: {d!r}")
    return Identity(_text(d, "name"), _text(d, "version"))


def _envs_from_dict(envs: Any) -> dict[str, str]:
    if not envs:
        return {}
    if isinstance(envs, Mapping):
        return {str(k): "" if v is None else str(v) for k, v in envs.items()}
    out: dict[str, str] = {}
    for item in envs:
        if not isinstance(item, Mapping):
            raise InvalidTaskError(f"Invalid env declaration: {item!r}")
        value = item.get("value")
        out[str(item.get("key") or "")] = "" if value is None else str(value)
    return out


def _task_type_from_dict(src: Mapping[str, Any]) -> TaskType:
    kind = str(src.get("type") or "").strip()
    source = str(src.get("source") or "").strip()
    path = str(src.get("source-path") or "").strip()
    if kind == "build_from_source":
        if source == "git":
            return BuildFromSource(GitSource(path, src.get("branch"), src.get("revision")))
        if source == "local":
            return BuildFromSource(LocalSource(path))
        if source == "archive":
            return BuildFromSource(ArchiveSource(path))
    elif kind == "install_from_prebuilt":
        if source == "git":
            raise InvalidTaskError("install_from_prebuilt doesn't support git")
        if source == "local":
            return InstallFromPrebuilt(LocalSource(path))
        if source == "archive":
            return InstallFromPrebuilt(ArchiveSource(path))
    else:
        raise InvalidTaskError(f"Unknown task source type: {kind!r}")
    raise InvalidTaskError(f"Unknown source: {source!r}")
