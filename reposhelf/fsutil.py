"""
Filesystem primitives shared by the tree store and the history log.

Everything that touches a project directory goes through here:

- ``normalize_path`` turns a caller-supplied relative path into a
  canonical POSIX path or raises ``InvalidPath``
- ``walk_tree`` is the one recursive walk used for listing, copying and
  snapshotting; it never follows symlinks and never descends into the
  reserved history directory
- ``copy_tree`` / ``remove_tree`` are built on the same rules
- ``atomic_write`` writes via temp file + fsync + rename so readers see
  either the old content or the new content, never a torn file
"""

import logging
import os
import shutil
import stat
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

from .errors import InvalidPath

logger = logging.getLogger(__name__)

# Reserved entry inside every project tree holding its history
HISTORY_DIR_NAME = ".reposhelf"

DEFAULT_MAX_DEPTH = 100


class TreeDepthLimitError(InvalidPath):
    """Raised when a tree is nested deeper than the configured limit."""


@dataclass(frozen=True)
class WalkEntry:
    rel_path: str  # POSIX path relative to the walk root
    path: Path
    is_dir: bool
    stat: os.stat_result


def validate_project_id(project_id: str):
    """A project id must be a single, non-hidden path segment."""
    if not isinstance(project_id, str) or not project_id:
        raise InvalidPath("Project id cannot be empty")
    if "\0" in project_id:
        raise InvalidPath(f"Project id contains null byte: {project_id!r}")
    if "/" in project_id or "\\" in project_id:
        raise InvalidPath(f"Project id contains path separator: {project_id!r}")
    if project_id.startswith("."):
        raise InvalidPath(f"Project id cannot start with '.': {project_id!r}")


def normalize_path(path: str, project_id: str | None = None) -> str:
    """
    Canonicalize a relative file path.

    ``./src//app.js`` becomes ``src/app.js``. Absolute paths, ``..``
    segments, backslashes, NUL bytes and paths into the reserved history
    directory are rejected.
    """
    if not isinstance(path, str) or not path:
        raise InvalidPath("Path cannot be empty", project_id=project_id, path=path)
    if "\0" in path:
        raise InvalidPath(f"Path contains null byte: {path!r}", project_id=project_id)
    if "\\" in path:
        raise InvalidPath(
            f"Path contains backslash: {path!r}. Use '/' as separator",
            project_id=project_id,
            path=path,
        )
    if path.startswith("/"):
        raise InvalidPath(
            f"Absolute paths are not allowed: {path!r}", project_id=project_id, path=path
        )

    parts = [p for p in path.split("/") if p not in ("", ".")]
    if ".." in parts:
        raise InvalidPath(
            f"Path contains '..': {path!r}", project_id=project_id, path=path
        )
    if not parts:
        raise InvalidPath(f"Path names no file: {path!r}", project_id=project_id, path=path)
    if parts[0] == HISTORY_DIR_NAME:
        raise InvalidPath(
            f"Path is inside the reserved {HISTORY_DIR_NAME} directory: {path!r}",
            project_id=project_id,
            path=path,
        )
    return "/".join(parts)


def resolve_within(root: Path, rel_path: str) -> Path:
    """Join rel_path onto root and make sure the result stays inside root.

    Catches escapes through symlinked parent directories, which
    ``normalize_path`` alone cannot see.
    """
    target = root / rel_path
    try:
        target.resolve().relative_to(root.resolve())
    except ValueError:
        raise InvalidPath(f"Path traversal detected: {rel_path} is outside {root}", path=rel_path)
    return target


def walk_tree(
    root: Path,
    skip: frozenset = frozenset({HISTORY_DIR_NAME}),
    max_depth: int = DEFAULT_MAX_DEPTH,
    _prefix: str = "",
    _depth: int = 0,
):
    """
    Depth-first walk yielding a ``WalkEntry`` per directory and regular file.

    Entries are visited in name order so the sequence is deterministic
    for a given on-disk state. Directories are yielded before their
    contents. Symlinks and anything that is neither file nor directory
    are skipped. Names in ``skip`` are only skipped at the top level.
    """
    if _depth >= max_depth:
        raise TreeDepthLimitError(
            f"Tree depth {_depth} exceeds limit of {max_depth} at {root}"
        )

    with os.scandir(root) as it:
        entries = sorted(it, key=lambda e: e.name)

    for entry in entries:
        if _depth == 0 and entry.name in skip:
            continue
        rel = f"{_prefix}{entry.name}"
        if entry.is_symlink():
            logger.debug("Skipping symlink: %s", entry.path)
            continue
        st = entry.stat(follow_symlinks=False)
        if stat.S_ISDIR(st.st_mode):
            yield WalkEntry(rel, Path(entry.path), True, st)
            yield from walk_tree(
                Path(entry.path), skip, max_depth, _prefix=f"{rel}/", _depth=_depth + 1
            )
        elif stat.S_ISREG(st.st_mode):
            yield WalkEntry(rel, Path(entry.path), False, st)


def walk_files(root: Path, skip=frozenset({HISTORY_DIR_NAME}), max_depth=DEFAULT_MAX_DEPTH):
    """Like ``walk_tree`` but yields regular files only."""
    for entry in walk_tree(root, skip, max_depth):
        if not entry.is_dir:
            yield entry


def copy_tree(
    src: Path,
    dst: Path,
    skip: frozenset = frozenset({HISTORY_DIR_NAME}),
    max_depth: int = DEFAULT_MAX_DEPTH,
):
    """
    Full-depth copy of src into dst (which must already exist).

    Regular files are copied byte-for-byte with their permission bits;
    directories are recreated, including empty ones.
    """
    for entry in walk_tree(src, skip, max_depth):
        target = dst / entry.rel_path
        if entry.is_dir:
            target.mkdir(exist_ok=True)
        else:
            shutil.copy2(entry.path, target, follow_symlinks=False)


def remove_tree(path: Path):
    """
    Recursively delete path without ever following a symlink.

    A symlink (at any level, including path itself) is unlinked; its
    target is left alone.
    """
    st = os.lstat(path)
    if not stat.S_ISDIR(st.st_mode):
        os.unlink(path)
        return
    with os.scandir(path) as it:
        children = list(it)
    for child in children:
        if child.is_dir(follow_symlinks=False):
            remove_tree(Path(child.path))
        else:
            os.unlink(child.path)
    os.rmdir(path)


def cleanup_empty_parents(dir_path: Path, stop_at: Path):
    """Remove empty parent directories up to (not including) stop_at."""
    current = dir_path
    stop_resolved = stop_at.resolve()
    while current != stop_at and current.exists():
        try:
            current.resolve().relative_to(stop_resolved)
        except ValueError:
            break
        try:
            if not any(current.iterdir()):
                current.rmdir()
                current = current.parent
            else:
                break
        except OSError:
            break


def _replace_with_retry(src: Path, dst: Path):
    """Replace dst with src, retrying on Windows PermissionError.

    Antivirus or indexing services can briefly lock files on Windows.
    On POSIX any error is raised immediately.
    """
    if os.name == "nt":
        for attempt in range(5):
            try:
                src.replace(dst)
                return
            except PermissionError:
                if attempt == 4:
                    raise
                time.sleep(0.01 * (2**attempt))
    else:
        src.replace(dst)


def atomic_write(path: Path, content: bytes | str):
    """Write content to path via write-to-temp + rename."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        # mkstemp creates 0600 files; give new files the usual mode
        if path.exists():
            os.chmod(tmp_path, stat.S_IMODE(path.stat().st_mode))
        else:
            os.chmod(tmp_path, 0o644)
        _replace_with_retry(Path(tmp_path), path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
