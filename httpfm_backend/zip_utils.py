from __future__ import annotations

import logging
import os
import tempfile
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .security import normalize_relative_path, resolve_path


logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "httpfm-"
MULTI_ARCHIVE_NAME = "files.zip"


@dataclass(frozen=True)
class SelectionPlan:
    """How a selection is delivered: a single file as-is, or an archive."""

    single_file: Optional[Path]
    download_name: str


def plan_selection(root: Path, selection: list[str]) -> SelectionPlan:
    """Decide between a direct file stream and an archive.

    Raises ValueError for an empty selection and FileNotFoundError when a
    lone selected entry is missing.
    """
    if not selection:
        raise ValueError("No files selected")
    if len(selection) == 1:
        path = resolve_path(root, selection[0])
        if path.is_file():
            return SelectionPlan(single_file=path, download_name=path.name)
        if path.is_dir():
            return SelectionPlan(single_file=None, download_name=f"{path.name}.zip")
        raise FileNotFoundError(selection[0])
    return SelectionPlan(single_file=None, download_name=MULTI_ARCHIVE_NAME)


def iter_directory_files(directory: Path) -> Iterator[Path]:
    """Yield every file under directory, depth first, in a stable order.

    Iterative so deep trees cannot exhaust the recursion limit. Symlinked
    directories are not followed.
    """
    stack = [directory]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.warning("Skipping unreadable directory %s: %s", current, e)
            continue
        subdirs = []
        for child in children:
            try:
                if child.is_dir(follow_symlinks=False):
                    subdirs.append(Path(child.path))
                elif child.is_file():
                    yield Path(child.path)
            except OSError:
                continue
        stack.extend(reversed(subdirs))


def iter_archive_members(root: Path, selection: Iterable[str]) -> Iterator[tuple[str, Path]]:
    """Yield (archive path, source file) pairs for a selection.

    Files keep their path relative to the storage root; directories are
    namespaced by their own name. Missing or escaping entries are skipped.
    """
    for raw in selection:
        rel = normalize_relative_path(raw)
        try:
            path = resolve_path(root, rel)
        except FileNotFoundError:
            logger.info("Skipping missing selection entry %r", raw)
            continue
        if path.is_file():
            yield rel or path.name, path
        elif path.is_dir():
            for source in iter_directory_files(path):
                inner = source.relative_to(path).as_posix()
                yield f"{path.name}/{inner}", source


def write_zip(members: Iterable[tuple[str, Path]], dest: Path) -> int:
    """Write members into a ZIP at dest; returns the number of entries written."""
    count = 0
    with zipfile.ZipFile(dest, mode="w", compression=zipfile.ZIP_DEFLATED, allowZip64=True) as zf:
        for arcname, source in members:
            try:
                zf.write(source, arcname)
            except OSError as e:
                # File vanished or became unreadable between traversal and write.
                logger.warning("Skipping %s: %s", source, e)
                continue
            count += 1
    return count


def build_selection_zip(root: Path, selection: list[str], cache_dir: Path) -> Path:
    """Build an archive for the selection inside cache_dir.

    The caller (or purge_archive_cache) owns removal of the returned file.
    """
    cache_dir.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=ARCHIVE_PREFIX, suffix=".zip", dir=cache_dir)
    os.close(fd)
    dest = Path(name)
    try:
        count = write_zip(iter_archive_members(root, selection), dest)
    except Exception:
        dest.unlink(missing_ok=True)
        raise
    logger.info("Archived %d files from %d selected entries into %s", count, len(selection), dest.name)
    return dest


def purge_archive_cache(cache_dir: Path, ttl_hours: float) -> int:
    """Delete cached archives older than ttl_hours.

    Returns the number of deleted archives.
    """
    if not cache_dir.exists():
        return 0
    ttl_seconds = max(0.0, ttl_hours) * 3600.0
    now = time.time()
    deleted = 0
    for child in cache_dir.iterdir():
        if not (child.is_file() and child.name.startswith(ARCHIVE_PREFIX) and child.suffix == ".zip"):
            continue
        try:
            if now - child.stat().st_mtime >= ttl_seconds:
                child.unlink()
                deleted += 1
        except OSError:
            continue
    return deleted
