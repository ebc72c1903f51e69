import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from buildgraph.cache import CacheLayout, CacheStore  # noqa: E402
from buildgraph.core import build_graph  # noqa: E402
from buildgraph.repository import TaskRepository  # noqa: E402
from buildgraph.task import BuildFromSource, Identity, LocalSource, Task  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.setenv("ARCH", "x86_64")
    monkeypatch.delenv("BUILDGRAPH_CACHE_ROOT", raising=False)


@pytest.fixture
def src_root(tmp_path):
    p = tmp_path / "src"
    p.mkdir()
    return p


@pytest.fixture
def make_task(src_root):
    """Factory for build-from-local-source tasks; ``deps`` are ``name@version`` strings."""

    def _make(name, version="1.0", deps=(), command="true", **kwargs):
        src = src_root / f"{name}-{version}"
        src.mkdir(exist_ok=True)
        return Task(
            name=name,
            version=version,
            task_type=BuildFromSource(LocalSource(str(src))),
            depends=[Identity.parse(d) for d in deps],
            build_command=command,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_graph():
    def _make(*tasks):
        repo = TaskRepository()
        for t in tasks:
            repo.add(t, origin=f"{t.name}.yaml")
        return build_graph(repo)

    return _make


@pytest.fixture
def cache_root(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def store(cache_root):
    return CacheStore(CacheLayout(cache_root))
