import pytest
import yaml

from buildgraph.errors import InvalidTaskError
from buildgraph.task import (
    ArchiveSource,
    BuildFromSource,
    GitSource,
    Identity,
    InstallFromPrebuilt,
    LocalSource,
    TargetArch,
    Task,
    TaskState,
    env_suffix,
    name_version,
)


def test_env_suffix_upper_cases_and_replaces_separators():
    assert env_suffix("libc", "0.1.0") == "LIBC_0_1_0"
    assert Identity("my-lib", "1.2+git*").env_suffix == "MY_LIB_1_2_GIT_"
    assert name_version("a b", "1\t2") == "a_b_1_2"


def test_identity_parse_and_ordering():
    assert Identity.parse("libc@0.1.0") == Identity("libc", "0.1.0")
    assert Identity.parse("my-lib-2.0") == Identity("my-lib", "2.0")
    assert str(Identity("libc", "0.1.0")) == "libc-0.1.0"
    assert sorted([Identity("b", "1"), Identity("a", "2")])[0] == Identity("a", "2")
    with pytest.raises(InvalidTaskError):
        Identity.parse("noversion")


def test_from_dict_full_declaration():
    task = Task.from_dict(
        {
            "name": " app ",
            "version": "1.0",
            "description": "demo",
            "task-source": {
                "type": "build_from_source",
                "source": "git",
                "source-path": "https://example.com/app.git",
            },
            "depends": ["libc@0.1.0", {"name": "zlib", "version": "1.3"}],
            "build": {"build-command": " make ", "pre-build": "echo pre"},
            "install": {"in-sysroot-path": "/usr"},
            "envs": [{"key": "CFLAGS", "value": "-O2"}],
            "build-once": True,
            "target-arch": ["riscv64"],
        }
    )
    assert task.identity == Identity("app", "1.0")
    assert task.build_command == "make"
    assert task.task_type == BuildFromSource(GitSource("https://example.com/app.git", "master"))
    assert task.depends == [Identity("libc", "0.1.0"), Identity("zlib", "1.3")]
    assert task.envs == {"CFLAGS": "-O2"}
    assert task.build_once and not task.install_once
    assert task.target_arch == [TargetArch.RISCV64]
    assert task.needs_source_cache()


def test_default_target_arch_follows_env(monkeypatch):
    monkeypatch.setenv("ARCH", "riscv64")
    task = Task.from_dict(
        {
            "name": "a",
            "version": "1",
            "task-source": {"type": "install_from_prebuilt", "source": "local", "source-path": "/opt/a"},
        }
    )
    assert task.target_arch == [TargetArch.RISCV64]
    assert task.task_type == InstallFromPrebuilt(LocalSource("/opt/a"))
    assert not task.needs_source_cache()


@pytest.mark.parametrize(
    "data, message",
    [
        ({"name": "", "version": "1"}, "name is empty"),
        (
            {"name": "a", "version": "1", "task-source": {"type": "build_from_source", "source": "local", "source-path": "."}},
            "build command is empty",
        ),
        (
            {"name": "a", "version": "1", "task-source": {"type": "install_from_prebuilt", "source": "git", "source-path": "u"}},
            "doesn't support git",
        ),
        (
            {
                "name": "a",
                "version": "1",
                "task-source": {"type": "build_from_source", "source": "local", "source-path": "."},
                "build": {"build-command": "make"},
                "install": {"in-sysroot-path": "usr/lib"},
            },
            "absolute path",
        ),
        (
            {
                "name": "a",
                "version": "1",
                "task-source": {"type": "build_from_source", "source": "archive", "source-path": "ftp://x/a.tgz"},
                "build": {"build-command": "make"},
            },
            "unsupported url",
        ),
    ],
)
def test_invalid_declarations(data, message):
    data.setdefault("task-source", {"type": "build_from_source", "source": "local", "source-path": "."})
    with pytest.raises(InvalidTaskError, match=message):
        Task.from_dict(data)


def test_git_source_rejects_branch_and_revision():
    with pytest.raises(InvalidTaskError):
        GitSource("u", branch="main", revision="abc").validate()
    assert GitSource("u", revision="abc").validate().branch is None


def test_archive_source_requires_http():
    ArchiveSource("https://example.com/a.tar.gz").validate()
    with pytest.raises(InvalidTaskError):
        ArchiveSource("file:///tmp/a.tar.gz").validate()


def test_terminal_states():
    assert not TaskState.PENDING.terminal
    assert not TaskState.RUNNING.terminal
    assert all(s.terminal for s in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.SKIPPED))


def test_identities_that_print_alike_still_sort_stably():
    first, second = Identity("a", "b-1"), Identity("a-b", "1")
    assert str(first) == str(second)
    assert sorted([first, second]) == [first, second]
    assert sorted([second, first]) == [first, second]


def test_numeric_version_must_be_quoted():
    raw = yaml.safe_load(
        "name: a\n"
        "version: 1.10\n"
        "task-source: {type: build_from_source, source: local, source-path: /src/a}\n"
        "build: {build-command: make}\n"
    )
    with pytest.raises(InvalidTaskError, match="version must be a string"):
        Task.from_dict(raw)

    raw["version"] = "1.10"
    assert Task.from_dict(raw).identity == Identity("a", "1.10")


def test_numeric_dependency_version_is_rejected():
    data = {
        "name": "a",
        "version": "1",
        "task-source": {"type": "build_from_source", "source": "local", "source-path": "/src/a"},
        "build": {"build-command": "make"},
        "depends": [{"name": "zlib", "version": 0}],
    }
    with pytest.raises(InvalidTaskError, match="version must be a string"):
        Task.from_dict(data)
