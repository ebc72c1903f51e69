"""Blocklist of tasks excluded from a run.

Patterns are either a bare name (``app1``), a name with a version
(``openssl@1.1.1``), or globs on either side (``test-*``, ``app1@1.*``).
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import InvalidConfigError


@dataclass(frozen=True)
class BlockedTask:
    name: str
    reason: str | None = None


@dataclass
class Blocklist:
    blocked: list[BlockedTask] = field(default_factory=list)
    strict: bool = True
    log_skipped: bool = True

    @classmethod
    def load(cls, path: str | Path) -> "Blocklist":
        p = Path(path)
        if not p.exists():
            return cls()
        try:
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise InvalidConfigError(f"Blocklist {p}: invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise InvalidConfigError(f"Blocklist {p}: expected a mapping, got {type(data).__name__}")
        try:
            return cls.from_dict(data)
        except InvalidConfigError as e:
            raise InvalidConfigError(f"Blocklist {p}: {e}") from e

    @classmethod
    def from_dict(cls, data: dict) -> "Blocklist":
        blocked = []
        for item in data.get("blocked_apps") or []:
            if isinstance(item, str):
                blocked.append(BlockedTask(item))
            elif isinstance(item, dict) and item.get("name"):
                blocked.append(BlockedTask(str(item["name"]), item.get("reason")))
            else:
                raise InvalidConfigError(f"blocked_apps entry without a name: {item!r}")
        return cls(
            blocked=blocked,
            strict=bool(data.get("strict", True)),
            log_skipped=bool(data.get("log_skipped", True)),
        )

    def __len__(self) -> int:
        return len(self.blocked)

    def is_blocked(self, name: str, version: str | None = None) -> bool:
        return self._find(name, version) is not None

    def reason(self, name: str, version: str | None = None) -> str | None:
        entry = self._find(name, version)
        return entry.reason if entry else None

    def names(self) -> list[str]:
        return [b.name for b in self.blocked]

    def with_reason(self) -> list[tuple[str, str]]:
        return [(b.name, b.reason) for b in self.blocked if b.reason is not None]

    def _find(self, name: str, version: str | None) -> BlockedTask | None:
        for b in self.blocked:
            if b.name == name:
                return b
        if version is not None:
            versioned = f"{name}@{version}"
            for b in self.blocked:
                if b.name == versioned:
                    return b
        for b in self.blocked:
            if _match_pattern(name, version, b.name):
                return b
        return None


def _is_glob(s: str) -> bool:
    return "*" in s or "?" in s


def _match_pattern(name: str, version: str | None, pattern: str) -> bool:
    if "@" in pattern:
        name_pat, _, version_pat = pattern.partition("@")
        if _is_glob(name_pat):
            if not fnmatch.fnmatchcase(name, name_pat):
                return False
        elif name_pat != name:
            return False
        if version is None:
            return False
        if _is_glob(version_pat):
            return fnmatch.fnmatchcase(version, version_pat)
        return version_pat == version
    if _is_glob(pattern):
        return fnmatch.fnmatchcase(name, pattern)
    return False
