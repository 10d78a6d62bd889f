"""
Versioned Project Store

The API the rest of the system calls. It ties together the tree store,
the history log, templates and per-project locks:

    store = ProjectStore.open("/srv/projects")
    store.create_project("k3j9x2", template="default")
    store.put_file("k3j9x2", "src/app.js", b"...", message="Add app")
    store.file_history("k3j9x2", "src/app.js")

Every public method is one atomic unit for its caller. Internally a
mutation is a tree operation followed by a commit, run under the
project's write lock. Between the two a pending marker sits in the
project's history directory. If the commit fails after the tree was
changed, the marker stays, the caller gets ``InconsistentState``, and
further mutations are refused until ``recover`` has committed what is on
disk. Nothing is retried internally.
"""

import json
import logging
import time
from pathlib import Path

from .cas import ContentStore, ContentStoreLimitError
from .config import StoreConfig
from .errors import (
    FileNotFound,
    HistoryNotFound,
    IOFailure,
    InconsistentState,
    NothingToCommit,
    ProjectNotFound,
    TargetExists,
)
from .fsutil import atomic_write, normalize_path, validate_project_id
from .history import Commit, HistoryLog
from .locks import ProjectLocks
from .templates import TemplateManager
from .trees import FileEntry, TreeStore

logger = logging.getLogger(__name__)

INITIAL_COMMIT_MESSAGE = "Initial commit with template files"
CLONE_COMMIT_MESSAGE = "Initial import from shared project"
PENDING_MARKER = "pending.json"


class ProjectStore:
    """Owns every project's tree and history under one store root."""

    def __init__(self, config: StoreConfig | Path | str):
        if not isinstance(config, StoreConfig):
            config = StoreConfig(root=Path(config))
        self.config = config
        self.root = config.root
        self.trees = TreeStore(config.root, max_depth=config.max_tree_depth)
        self.history = HistoryLog(self.trees, max_blob_size=config.max_blob_size)
        self.templates = TemplateManager(config.templates_dir)
        self.locks = ProjectLocks()

    @classmethod
    def open(cls, root: Path | str | None = None) -> "ProjectStore":
        """Open a store, reading ``config.json`` and env overrides."""
        return cls(StoreConfig.load(root))

    def _author(self, author: str | None) -> str:
        return author or self.config.default_author

    # ── Pending markers ───────────────────────────────────────────

    def _marker_path(self, project_id: str) -> Path:
        return self.trees.history_dir(project_id) / PENDING_MARKER

    def pending(self, project_id: str) -> dict | None:
        """The interrupted operation recorded for a project, if any."""
        marker = self._marker_path(project_id)
        if not marker.exists():
            return None
        try:
            return json.loads(marker.read_text())
        except (json.JSONDecodeError, OSError):
            return {"error": "unreadable pending marker"}

    def _begin(self, project_id: str, operation: str, path: str | None):
        try:
            atomic_write(
                self._marker_path(project_id),
                json.dumps({"operation": operation, "path": path, "started_at": time.time()}),
            )
        except OSError as e:
            raise IOFailure(
                f"Could not record pending {operation} in {project_id}: {e}",
                project_id=project_id,
            ) from e

    def _end(self, project_id: str):
        try:
            self._marker_path(project_id).unlink(missing_ok=True)
        except OSError as e:
            raise IOFailure(
                f"Could not clear pending marker in {project_id}: {e}", project_id=project_id
            ) from e

    def _require_active(self, project_id: str):
        """Project exists, has history, and no interrupted mutation."""
        if not self.trees.exists(project_id):
            raise ProjectNotFound(project_id)
        if not self.history.is_initialized(project_id):
            raise HistoryNotFound(project_id)
        marker = self.pending(project_id)
        if marker is not None:
            raise InconsistentState(
                f"Project {project_id} has an interrupted {marker.get('operation', 'operation')}"
                f" of {marker.get('path')}; run recover before changing it",
                project_id=project_id,
                path=marker.get("path"),
            )

    def _commit_after_change(self, project_id: str, rel: str, message: str, author: str) -> str:
        """Commit a path the tree already changed; failure leaves the marker behind."""
        try:
            commit_hash = self.history.commit_path(project_id, rel, message, author)
        except NothingToCommit:
            self._end(project_id)
            raise
        except Exception as e:
            logger.error("Commit failed after changing %s in %s: %s", rel, project_id, e)
            raise InconsistentState(
                f"{rel} changed in {project_id} but the commit failed: {e}",
                project_id=project_id,
                path=rel,
            ) from e
        self._end(project_id)
        return commit_hash

    def _discard(self, project_id: str):
        """Remove a half-built project after a failed create or clone."""
        try:
            self.trees.remove(project_id)
        except IOFailure:
            logger.error("Could not clean up partial project %s", project_id, exc_info=True)

    # ── Project lifecycle ─────────────────────────────────────────

    def create_project(
        self, project_id: str, template: str | None = "default", author: str | None = None
    ) -> Path:
        """Create a tree, fill it from a template, and make the first commit."""
        validate_project_id(project_id)
        with self.locks.write(project_id):
            tree = self.trees.create(project_id)
            try:
                chosen = self.templates.resolve(template)
                for path, content in chosen.bundle().items():
                    self.trees.write_file(project_id, path, content.encode("utf-8"))
                self.history.init(project_id)
                self.history.commit_all(
                    project_id, INITIAL_COMMIT_MESSAGE, self._author(author), allow_empty=True
                )
            except BaseException:
                self._discard(project_id)
                raise
        logger.info("Created project %s from template %r", project_id, chosen.name)
        return tree

    def clone_project(
        self,
        source_id: str,
        new_id: str,
        with_history: bool = False,
        author: str | None = None,
    ) -> Path:
        """
        Copy source's tree into a new project.

        By default the copy starts a fresh history with a single import
        commit. with_history=True carries the source's whole commit log
        over instead.
        """
        validate_project_id(source_id)
        validate_project_id(new_id)
        if source_id == new_id:
            raise TargetExists(f"Target project already exists: {new_id}", project_id=new_id)

        with self.locks.read_write(source_id, new_id):
            tree = self.trees.copy_into(source_id, new_id)
            try:
                if with_history:
                    self.history.copy_history(source_id, new_id)
                    try:
                        self.history.commit_all(new_id, CLONE_COMMIT_MESSAGE, self._author(author))
                    except NothingToCommit:
                        pass  # tree equals the copied head
                else:
                    self.history.init(new_id)
                    self.history.commit_all(
                        new_id, CLONE_COMMIT_MESSAGE, self._author(author), allow_empty=True
                    )
            except BaseException:
                self._discard(new_id)
                raise
        logger.info("Cloned project %s -> %s (history=%s)", source_id, new_id, with_history)
        return tree

    def delete_project(self, project_id: str) -> bool:
        """Destroy tree and history together. False if there was nothing to delete."""
        validate_project_id(project_id)
        with self.locks.write(project_id):
            existed = self.trees.remove(project_id)
        if existed:
            logger.info("Deleted project %s", project_id)
        return existed

    def exists(self, project_id: str) -> bool:
        return self.trees.exists(project_id)

    def list_projects(self) -> list[str]:
        return self.trees.list_projects()

    # ── Files ─────────────────────────────────────────────────────

    def get_file(self, project_id: str, path: str) -> bytes:
        with self.locks.read(project_id):
            content = self.trees.read_file(project_id, path)
        if content is None:
            raise FileNotFound(project_id, normalize_path(path, project_id))
        return content

    def put_file(
        self,
        project_id: str,
        path: str,
        content: bytes,
        message: str | None = None,
        author: str | None = None,
    ) -> str:
        """Write a file and commit it. Returns the new commit hash."""
        rel = normalize_path(path, project_id)
        limit = self.config.max_blob_size or ContentStore.DEFAULT_MAX_BLOB_SIZE
        if len(content) > limit:
            raise ContentStoreLimitError(
                f"Blob size {len(content)} bytes exceeds limit of {limit} bytes"
            )
        with self.locks.write(project_id):
            self._require_active(project_id)
            self._begin(project_id, "write", rel)
            try:
                self.trees.write_file(project_id, rel, content)
            except BaseException:
                # atomic write: the old content is still in place
                self._end(project_id)
                raise
            return self._commit_after_change(
                project_id, rel, message or f"Update {rel}", self._author(author)
            )

    def remove_file(
        self,
        project_id: str,
        path: str,
        message: str | None = None,
        author: str | None = None,
    ) -> str:
        """Delete a file and commit the deletion. Returns the new commit hash."""
        rel = normalize_path(path, project_id)
        with self.locks.write(project_id):
            self._require_active(project_id)
            self._begin(project_id, "delete", rel)
            try:
                self.trees.remove_file(project_id, rel)
            except BaseException:
                self._end(project_id)
                raise
            return self._commit_after_change(
                project_id, rel, message or f"Delete {rel}", self._author(author)
            )

    def list_files(self, project_id: str) -> list[FileEntry]:
        with self.locks.read(project_id):
            return self.trees.list(project_id)

    # ── History ───────────────────────────────────────────────────

    def project_history(self, project_id: str, limit: int | None = None) -> list[Commit]:
        with self.locks.read(project_id):
            return self.history.log(project_id, limit=limit)

    def file_history(self, project_id: str, path: str, limit: int | None = None) -> list[Commit]:
        with self.locks.read(project_id):
            return self.history.log(project_id, path=path, limit=limit)

    def head(self, project_id: str) -> Commit | None:
        with self.locks.read(project_id):
            return self.history.head(project_id)

    def get_commit(self, project_id: str, commit_ref: str) -> Commit:
        """A commit by full hash or unique prefix."""
        with self.locks.read(project_id):
            return self.history.get_commit(project_id, commit_ref)

    def file_at(self, project_id: str, commit_ref: str, path: str) -> bytes:
        """A file's content as of an earlier commit."""
        with self.locks.read(project_id):
            content = self.history.read_file_at(project_id, commit_ref, path)
        if content is None:
            raise FileNotFound(project_id, normalize_path(path, project_id))
        return content

    # ── Health ────────────────────────────────────────────────────

    def status(self, project_id: str) -> dict:
        with self.locks.read(project_id):
            files = self.trees.list(project_id)
            if not self.history.is_initialized(project_id):
                raise HistoryNotFound(project_id)
            head = self.history.head(project_id)
            return {
                "project_id": project_id,
                "path": str(self.trees.path_for(project_id)),
                "head": head.hash if head else None,
                "commits": self.history.count(project_id),
                "files": len(files),
                "bytes": sum(f.size for f in files),
                "uncommitted": self.history.uncommitted(project_id),
                "pending": self.pending(project_id),
            }

    def verify(self, project_id: str) -> list[str]:
        """Check the hash chain and that the tree matches the head commit."""
        with self.locks.read(project_id):
            problems = self.history.verify(project_id)
            for path, change in self.history.uncommitted(project_id).items():
                problems.append(f"uncommitted change: {change} {path}")
            marker = self.pending(project_id)
            if marker is not None:
                problems.append(
                    f"interrupted {marker.get('operation', 'operation')} of {marker.get('path')}"
                )
        return problems

    def recover(self, project_id: str, author: str | None = None) -> dict:
        """
        Bring tree and history back into agreement.

        Commits whatever the tree holds now (initializing history if a
        crash left a tree without one) and clears the pending marker.
        """
        validate_project_id(project_id)
        with self.locks.write(project_id):
            if not self.trees.exists(project_id):
                raise ProjectNotFound(project_id)
            marker = self.pending(project_id)
            commit_hash = None
            if not self.history.is_initialized(project_id):
                self.history.init(project_id)
                commit_hash = self.history.commit_all(
                    project_id, INITIAL_COMMIT_MESSAGE, self._author(author), allow_empty=True
                )
            else:
                if marker is not None:
                    message = (
                        f"Recover interrupted {marker.get('operation', 'operation')}"
                        f" of {marker.get('path')}"
                    )
                else:
                    message = "Recover uncommitted changes"
                try:
                    commit_hash = self.history.commit_all(
                        project_id, message, self._author(author)
                    )
                except NothingToCommit:
                    commit_hash = None
            self._end(project_id)

        if commit_hash or marker:
            logger.warning(
                "Recovered project %s (commit=%s, pending=%s)", project_id, commit_hash, marker
            )
        return {"project_id": project_id, "commit": commit_hash, "pending": marker}

    def purge_trash(self) -> int:
        """Finish deletions interrupted by a crash."""
        try:
            return self.trees.purge_trash()
        except OSError as e:
            raise IOFailure(f"Could not purge trash under {self.root}: {e}") from e
