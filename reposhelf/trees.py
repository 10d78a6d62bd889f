"""
Tree Store

Owns the physical layout of project trees: one directory per project id
under a shared store root. It knows nothing about history beyond
keeping its hands off the reserved ``.reposhelf/`` entry.

Layout:

    <root>/
    ├── config.json
    ├── .trash/                 ← trees being deleted
    ├── k3j9x2/                 ← project tree
    │   ├── .reposhelf/         ← history (owned by HistoryLog)
    │   ├── App.js
    │   └── src/example.js
    └── p0q8w1/

Deletion renames the tree into ``.trash/`` first, so a project vanishes
in one atomic step even if the recursive delete afterwards is slow or
interrupted.
"""

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path

from .errors import (
    AlreadyExists,
    FileNotFound,
    IOFailure,
    InvalidPath,
    ProjectNotFound,
    SourceMissing,
    TargetExists,
)
from .fsutil import (
    DEFAULT_MAX_DEPTH,
    HISTORY_DIR_NAME,
    TreeDepthLimitError,
    atomic_write,
    cleanup_empty_parents,
    copy_tree,
    normalize_path,
    remove_tree,
    resolve_within,
    validate_project_id,
    walk_files,
)

logger = logging.getLogger(__name__)

TRASH_DIR_NAME = ".trash"


@dataclass(frozen=True)
class FileEntry:
    """One regular file in a project tree."""

    path: str
    size: int
    modified: float

    def to_dict(self) -> dict:
        return {"path": self.path, "size": self.size, "modified": self.modified}


class TreeStore:
    """Creates, enumerates, copies and destroys project directories."""

    def __init__(self, root: Path, max_depth: int = 0):
        self.root = Path(root)
        self.max_depth = max_depth if max_depth > 0 else DEFAULT_MAX_DEPTH

    # ── Layout ────────────────────────────────────────────────────

    def path_for(self, project_id: str) -> Path:
        validate_project_id(project_id)
        return self.root / project_id

    def history_dir(self, project_id: str) -> Path:
        return self.path_for(project_id) / HISTORY_DIR_NAME

    def exists(self, project_id: str) -> bool:
        return self.path_for(project_id).is_dir()

    def list_projects(self) -> list[str]:
        """Project ids with a tree on disk, sorted."""
        if not self.root.exists():
            return []
        return sorted(
            p.name
            for p in self.root.iterdir()
            if p.is_dir() and not p.is_symlink() and not p.name.startswith(".")
        )

    def _require(self, project_id: str) -> Path:
        tree = self.path_for(project_id)
        if not tree.is_dir():
            raise ProjectNotFound(project_id)
        return tree

    # ── Lifecycle ─────────────────────────────────────────────────

    def create(self, project_id: str) -> Path:
        tree = self.path_for(project_id)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tree.mkdir()
        except FileExistsError:
            raise AlreadyExists(f"Project already exists: {project_id}", project_id=project_id)
        except OSError as e:
            raise IOFailure(
                f"Could not create tree for {project_id}: {e}", project_id=project_id
            ) from e
        logger.debug("Created tree %s", tree)
        return tree

    def remove(self, project_id: str) -> bool:
        """Delete the tree and everything in it. False if it never existed."""
        tree = self.path_for(project_id)
        if not os.path.lexists(tree):
            return False

        trash = self.root / TRASH_DIR_NAME
        try:
            trash.mkdir(exist_ok=True)
            doomed = trash / f"{project_id}.{uuid.uuid4().hex}"
            tree.rename(doomed)
            remove_tree(doomed)
        except FileNotFoundError:
            # Lost a race with another remover
            return False
        except OSError as e:
            raise IOFailure(
                f"Could not remove tree for {project_id}: {e}", project_id=project_id
            ) from e
        logger.debug("Removed tree %s", tree)
        return True

    def copy_into(self, source_id: str, target_id: str) -> Path:
        """Deep-copy the source tree into a new target tree, minus history."""
        source = self.path_for(source_id)
        target = self.path_for(target_id)
        if not source.is_dir():
            raise SourceMissing(f"Source project does not exist: {source_id}", project_id=source_id)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            target.mkdir()
        except FileExistsError:
            raise TargetExists(f"Target project already exists: {target_id}", project_id=target_id)
        except OSError as e:
            raise IOFailure(f"Could not create tree for {target_id}: {e}", project_id=target_id) from e

        try:
            copy_tree(source, target, max_depth=self.max_depth)
        except TreeDepthLimitError as e:
            self.remove(target_id)
            raise TreeDepthLimitError(f"{source_id}: {e.message}", project_id=source_id) from e
        except BaseException:
            self.remove(target_id)
            raise
        logger.debug("Copied tree %s -> %s", source, target)
        return target

    def purge_trash(self) -> int:
        """Finish deletions a crash interrupted. Returns how many were removed."""
        trash = self.root / TRASH_DIR_NAME
        if not trash.exists():
            return 0
        count = 0
        for item in trash.iterdir():
            remove_tree(item)
            count += 1
        return count

    # ── Files ─────────────────────────────────────────────────────

    def list(self, project_id: str) -> list[FileEntry]:
        tree = self._require(project_id)
        try:
            return [
                FileEntry(path=e.rel_path, size=e.stat.st_size, modified=e.stat.st_mtime)
                for e in walk_files(tree, max_depth=self.max_depth)
            ]
        except TreeDepthLimitError as e:
            raise TreeDepthLimitError(f"{project_id}: {e.message}", project_id=project_id) from e
        except OSError as e:
            raise IOFailure(f"Could not list {project_id}: {e}", project_id=project_id) from e

    def read_file(self, project_id: str, path: str) -> bytes | None:
        """File content, or None when path is not an existing regular file."""
        rel = normalize_path(path, project_id)
        tree = self._require(project_id)
        target = resolve_within(tree, rel)
        if target.is_symlink() or not target.is_file():
            return None
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise IOFailure(
                f"Could not read {rel} in {project_id}: {e}", project_id=project_id, path=rel
            ) from e

    def write_file(self, project_id: str, path: str, content: bytes) -> str:
        """Create or overwrite a file. Returns the normalized path."""
        rel = normalize_path(path, project_id)
        tree = self._require(project_id)
        *dirs, _name = rel.split("/")
        if len(dirs) >= self.max_depth:
            raise TreeDepthLimitError(
                f"Path {rel} in {project_id} is nested {len(dirs)} directories deep,"
                f" limit is {self.max_depth - 1}",
                project_id=project_id,
                path=rel,
            )
        target = resolve_within(tree, rel)
        if target.is_dir() and not target.is_symlink():
            raise InvalidPath(
                f"Path is a directory in {project_id}: {rel}", project_id=project_id, path=rel
            )
        parent = tree
        for part in dirs:
            parent = parent / part
            if parent.exists() and not parent.is_dir():
                raise InvalidPath(
                    f"Parent of {rel} is a file in {project_id}: {parent.relative_to(tree).as_posix()}",
                    project_id=project_id,
                    path=rel,
                )
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(target, content)
        except OSError as e:
            raise IOFailure(
                f"Could not write {rel} in {project_id}: {e}", project_id=project_id, path=rel
            ) from e
        return rel

    def remove_file(self, project_id: str, path: str) -> str:
        """Delete a file, pruning directories left empty. Returns the normalized path."""
        rel = normalize_path(path, project_id)
        tree = self._require(project_id)
        target = resolve_within(tree, rel)
        if target.is_symlink() or not target.is_file():
            raise FileNotFound(project_id, rel)
        try:
            target.unlink()
        except FileNotFoundError:
            raise FileNotFound(project_id, rel)
        except OSError as e:
            raise IOFailure(
                f"Could not delete {rel} in {project_id}: {e}", project_id=project_id, path=rel
            ) from e
        cleanup_empty_parents(target.parent, tree)
        return rel
