"""Fetching task sources into the cache: git checkouts and online archives."""

from __future__ import annotations

import shutil
import subprocess
import tarfile
import zipfile
from pathlib import Path
from urllib.parse import urlparse

import requests

from .cache import ensure_dir, is_empty
from .errors import SourcePrepareError
from .logging import get_logger
from .task import ArchiveSource, GitSource


log = get_logger("buildgraph.source")

ARCHIVE_TEMP_DIR = ".buildgraph_archive_tmp"
DOWNLOAD_TIMEOUT = 120


def _git(args: list[str], cwd: Path) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=False
    )
    if proc.returncode != 0:
        raise SourcePrepareError(
            f"git {' '.join(args)} failed in {cwd}: {proc.stderr.strip()}"
        )
    return proc.stdout.strip()


def prepare_git(source: GitSource, target: Path) -> None:
    """Make ``target`` a checkout of ``source`` at its branch or revision."""
    source = source.validate()
    log.info(
        "Preparing git repo: %s, branch: %s, revision: %s",
        source.url,
        source.branch,
        source.revision,
    )
    ensure_dir(target)
    if is_empty(target):
        log.info("Target dir is empty, cloning repo into %s", target)
        _git(["clone", source.url, "."], target)
    else:
        try:
            current = _git(["remote", "get-url", "origin"], target)
        except SourcePrepareError as e:
            raise SourcePrepareError(
                f"{target} is not empty and is not a git checkout"
            ) from e
        if current != source.url:
            log.info("Target dir isn't the specified repo, change remote url")
            _git(["remote", "set-url", "origin", source.url], target)

    if source.revision:
        _git(["fetch", "origin"], target)
        _git(["checkout", source.revision], target)
    else:
        _git(["fetch", "origin", source.branch], target)
        _git(["checkout", source.branch], target)
        _git(["pull", "origin", source.branch], target)


def archive_name(url: str) -> str:
    name = Path(urlparse(url).path).name
    if not name:
        raise SourcePrepareError(f"Cannot determine archive name from url: {url}")
    return name


def download_file(url: str, dest: Path) -> Path:
    log.info("downloading %s", url)
    try:
        with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as r:
            r.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in r.iter_content(chunk_size=1024 * 1024):
                    f.write(chunk)
    except requests.RequestException as e:
        raise SourcePrepareError(f"Failed to download {url}: {e}") from e
    return dest


def unpack(archive: Path, target: Path) -> None:
    """Extract ``archive`` into ``target``; a single top-level dir is flattened."""
    staging = archive.parent / "unpacked"
    staging.mkdir(parents=True, exist_ok=True)
    name = archive.name
    if name.endswith(".zip"):
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(staging)
    elif name.endswith((".tar.gz", ".tgz", ".tar.xz", ".tar.bz2", ".tar")):
        with tarfile.open(archive, mode="r:*") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(staging, filter="data")
            else:
                tar.extractall(staging)
    else:
        raise SourcePrepareError(f"Unsupported archive type: {name}")

    entries = list(staging.iterdir())
    root = entries[0] if len(entries) == 1 and entries[0].is_dir() else staging
    for item in root.iterdir():
        dst = target / item.name
        if dst.exists():
            if dst.is_dir():
                shutil.rmtree(dst)
            else:
                dst.unlink()
        shutil.move(str(item), str(dst))


def prepare_archive(source: ArchiveSource, target: Path) -> None:
    """Download and unpack into ``target`` unless an earlier download completed."""
    source.validate()
    ensure_dir(target)
    tmp = target / ARCHIVE_TEMP_DIR
    if not tmp.exists() and not is_empty(target):
        log.info(
            "Source files already exist in %s, using the cache. Clean it to re-download.",
            target,
        )
        return
    if tmp.exists():
        shutil.rmtree(tmp)
    tmp.mkdir()
    try:
        archive = download_file(source.url, tmp / archive_name(source.url))
        log.info("download %s finished, start unpacking", archive.name)
        unpack(archive, target)
    except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
        raise SourcePrepareError(f"Failed to unpack {source.url}: {e}") from e
    shutil.rmtree(tmp)
