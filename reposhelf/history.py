"""
History Log

Each project carries a linear, append-only log of commits. A commit is
a complete snapshot of the tree (a root tree hash in the project's
content store) plus the parent commit, a message, an author and a
timestamp. The commit hash is the content hash of exactly those fields,
so the log is a hash chain: rewriting any commit, tree or blob breaks
every hash after it, which ``verify`` detects.

There are no branches. The parent of a new commit is always the
current head, and the order of the log is an integer sequence number,
never the wall clock.

Besides the snapshot, every commit records which paths it added,
modified or deleted. That index answers "which commits touched
src/app.js" without diffing trees at query time.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .cas import ContentStore, ObjectType
from .errors import (
    AlreadyExists,
    HistoryNotFound,
    IOFailure,
    NotFound,
    NothingToCommit,
    ProjectNotFound,
)
from .fsutil import HISTORY_DIR_NAME, normalize_path, resolve_within, walk_files
from .trees import TreeStore

logger = logging.getLogger(__name__)

ADDED = "added"
MODIFIED = "modified"
DELETED = "deleted"


@dataclass(frozen=True)
class Commit:
    hash: str
    seq: int
    parent: str | None
    tree: str
    message: str
    author: str
    timestamp: float
    changes: dict = field(default_factory=dict)  # path -> added/modified/deleted

    @property
    def date(self) -> str:
        return datetime.fromtimestamp(self.timestamp, timezone.utc).isoformat()

    def touches(self, path: str) -> bool:
        """Does this commit change path (or anything below it)?"""
        prefix = f"{path}/"
        return any(p == path or p.startswith(prefix) for p in self.changes)

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "parent": self.parent,
            "tree": self.tree,
            "message": self.message,
            "author": self.author,
            "timestamp": self.timestamp,
            "date": self.date,
            "changes": dict(self.changes),
        }


def commit_payload(tree: str, parent: str | None, message: str, author: str, timestamp: float) -> bytes:
    """Canonical bytes a commit hash is computed over."""
    return json.dumps(
        {
            "tree": tree,
            "parent": parent,
            "message": message,
            "author": author,
            "timestamp": timestamp,
        },
        sort_keys=True,
    ).encode()


def diff_files(old: dict, new: dict) -> dict:
    """Compare two ``{path: (blob_hash, mode)}`` maps."""
    changes = {}
    for path in sorted(set(old) | set(new)):
        before = old.get(path)
        after = new.get(path)
        if before is None:
            changes[path] = ADDED
        elif after is None:
            changes[path] = DELETED
        elif before != after:
            changes[path] = MODIFIED
    return changes


class HistoryLog:
    """Per-project commit log stored in ``<tree>/.reposhelf/history.db``."""

    DB_NAME = "history.db"

    def __init__(self, trees: TreeStore, max_blob_size: int = 0):
        self.trees = trees
        self.max_blob_size = max_blob_size

    # ── Storage ───────────────────────────────────────────────────

    def _db_path(self, project_id: str) -> Path:
        return self.trees.history_dir(project_id) / self.DB_NAME

    def is_initialized(self, project_id: str) -> bool:
        return self._db_path(project_id).exists()

    @staticmethod
    def _init_tables(store: ContentStore):
        store.conn.executescript("""
            CREATE TABLE IF NOT EXISTS commits (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                parent TEXT,
                tree TEXT NOT NULL,
                message TEXT NOT NULL,
                author TEXT NOT NULL,
                timestamp REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS commit_changes (
                commit_hash TEXT NOT NULL,
                path TEXT NOT NULL,
                change TEXT NOT NULL,
                PRIMARY KEY (commit_hash, path),
                FOREIGN KEY (commit_hash) REFERENCES commits(hash)
            );

            CREATE INDEX IF NOT EXISTS idx_commit_changes_path
                ON commit_changes(path);
        """)
        store.conn.commit()

    @contextmanager
    def _open(self, project_id: str):
        """Open the project's store for one operation; storage errors become IOFailure."""
        if not self.trees.exists(project_id):
            raise ProjectNotFound(project_id)
        db_path = self._db_path(project_id)
        if not db_path.exists():
            raise HistoryNotFound(project_id)

        store = None
        try:
            store = ContentStore(db_path, max_blob_size=self.max_blob_size)
            self._init_tables(store)
            yield store
        except sqlite3.Error as e:
            raise IOFailure(
                f"History store error in {project_id}: {e}", project_id=project_id
            ) from e
        except OSError as e:
            raise IOFailure(
                f"Storage error in {project_id}: {e}", project_id=project_id
            ) from e
        finally:
            if store is not None:
                store.close()

    def init(self, project_id: str):
        """Create an empty history for a freshly created tree."""
        if not self.trees.exists(project_id):
            raise ProjectNotFound(project_id)
        if self.is_initialized(project_id):
            raise AlreadyExists(
                f"History already initialized for {project_id}", project_id=project_id
            )
        try:
            self.trees.history_dir(project_id).mkdir(exist_ok=True)
            store = ContentStore(self._db_path(project_id), max_blob_size=self.max_blob_size)
            try:
                self._init_tables(store)
            finally:
                store.close()
        except (sqlite3.Error, OSError) as e:
            raise IOFailure(
                f"Could not initialize history for {project_id}: {e}", project_id=project_id
            ) from e
        logger.debug("Initialized history for %s", project_id)

    def copy_history(self, source_id: str, target_id: str):
        """Give target an exact copy of source's commit log and objects."""
        if not self.trees.exists(target_id):
            raise ProjectNotFound(target_id)
        if self.is_initialized(target_id):
            raise AlreadyExists(
                f"History already initialized for {target_id}", project_id=target_id
            )
        target_db = self._db_path(target_id)
        with self._open(source_id) as store:
            self.trees.history_dir(target_id).mkdir(exist_ok=True)
            store.backup(target_db)
        logger.debug("Copied history %s -> %s", source_id, target_id)

    # ── Snapshot helpers ──────────────────────────────────────────

    def _blob_entry(self, store: ContentStore, path: Path) -> tuple:
        st = path.stat()
        blob_hash = store.store_blob(path.read_bytes())
        return (blob_hash, st.st_mode & 0o777)

    def _snapshot_files(self, store: ContentStore, root: Path, prefix: str = "") -> dict:
        """Store every regular file under root; returns {path: (blob_hash, mode)}."""
        skip = frozenset() if prefix else frozenset({HISTORY_DIR_NAME})
        files = {}
        for entry in walk_files(root, skip=skip, max_depth=self.trees.max_depth):
            blob_hash = store.store_blob(entry.path.read_bytes())
            files[f"{prefix}{entry.rel_path}"] = (blob_hash, entry.stat.st_mode & 0o777)
        return files

    @staticmethod
    def _store_file_map(store: ContentStore, files: dict) -> str:
        """Build nested tree objects from a flat file map; returns the root tree hash."""
        root: dict = {}
        for path, (blob_hash, mode) in files.items():
            node = root
            *dirs, name = path.split("/")
            for d in dirs:
                node = node.setdefault(d, {})
            node[name] = (blob_hash, mode)

        def store_node(node: dict) -> str:
            entries = {}
            for name, value in node.items():
                if isinstance(value, dict):
                    entries[name] = ("tree", store_node(value), 0o755)
                else:
                    entries[name] = ("blob", value[0], value[1])
            return store.store_tree(entries)

        return store_node(root)

    @classmethod
    def _flatten_tree(cls, store: ContentStore, tree_hash: str, prefix: str = "") -> dict:
        """Flatten a tree into {path: (blob_hash, mode)}."""
        result = {}
        for name, (typ, hash_val, mode) in store.read_tree(tree_hash).items():
            full_path = f"{prefix}/{name}" if prefix else name
            if typ == "blob":
                result[full_path] = (hash_val, mode)
            elif typ == "tree":
                result.update(cls._flatten_tree(store, hash_val, full_path))
        return result

    # ── Commits ───────────────────────────────────────────────────

    @staticmethod
    def _head_row(store: ContentStore):
        return store.conn.execute(
            "SELECT hash, tree FROM commits ORDER BY seq DESC LIMIT 1"
        ).fetchone()

    def _append(
        self,
        store: ContentStore,
        parent: str | None,
        tree_hash: str,
        changes: dict,
        message: str,
        author: str,
    ) -> str:
        now = time.time()
        payload = commit_payload(tree_hash, parent, message, author, now)
        commit_hash = store.store(payload, ObjectType.COMMIT)
        store.conn.execute(
            """INSERT INTO commits (hash, parent, tree, message, author, timestamp)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (commit_hash, parent, tree_hash, message, author, now),
        )
        store.conn.executemany(
            "INSERT INTO commit_changes (commit_hash, path, change) VALUES (?, ?, ?)",
            [(commit_hash, path, change) for path, change in changes.items()],
        )
        return commit_hash

    def commit_all(
        self, project_id: str, message: str, author: str, allow_empty: bool = False
    ) -> str:
        """
        Snapshot the whole tree as a new commit.

        Raises NothingToCommit when the tree matches the head commit,
        unless allow_empty is set (initial commits use it so a new
        history always starts with exactly one entry).
        """
        tree_dir = self.trees.path_for(project_id)
        with self._open(project_id) as store, store.batch():
            head = self._head_row(store)
            parent_files = self._flatten_tree(store, head[1]) if head else {}
            files = self._snapshot_files(store, tree_dir)
            changes = diff_files(parent_files, files)
            if not changes and not allow_empty:
                raise NothingToCommit(
                    f"Nothing to commit in {project_id}: tree matches head",
                    project_id=project_id,
                )
            tree_hash = self._store_file_map(store, files)
            commit_hash = self._append(
                store, head[0] if head else None, tree_hash, changes, message, author
            )
        logger.debug("Committed %s in %s (%d changes)", commit_hash[:12], project_id, len(changes))
        return commit_hash

    def commit_path(self, project_id: str, path: str, message: str, author: str) -> str:
        """
        Commit the current on-disk state of one path.

        Everything outside path is carried over from the head commit
        untouched. path may name a file or a directory; a path missing
        from disk records deletions.
        """
        rel = normalize_path(path, project_id)
        tree_dir = self.trees.path_for(project_id)
        with self._open(project_id) as store, store.batch():
            head = self._head_row(store)
            files = self._flatten_tree(store, head[1]) if head else {}

            prefix = f"{rel}/"
            scoped_old = {p: v for p, v in files.items() if p == rel or p.startswith(prefix)}
            scoped_new = {}
            target = resolve_within(tree_dir, rel)
            if not target.is_symlink():
                if target.is_file():
                    scoped_new[rel] = self._blob_entry(store, target)
                elif target.is_dir():
                    scoped_new = self._snapshot_files(store, target, prefix=prefix)

            changes = diff_files(scoped_old, scoped_new)
            if not changes:
                raise NothingToCommit(
                    f"Nothing to commit in {project_id}: {rel} is unchanged",
                    project_id=project_id,
                    path=rel,
                )
            new_files = {p: v for p, v in files.items() if p not in scoped_old}
            new_files.update(scoped_new)
            tree_hash = self._store_file_map(store, new_files)
            commit_hash = self._append(
                store, head[0] if head else None, tree_hash, changes, message, author
            )
        logger.debug("Committed %s in %s (%s)", commit_hash[:12], project_id, rel)
        return commit_hash

    # ── Querying ──────────────────────────────────────────────────

    @staticmethod
    def _rows_to_commits(store: ContentStore, rows) -> list[Commit]:
        if not rows:
            return []
        hashes = [r[1] for r in rows]
        changes: dict[str, dict] = {h: {} for h in hashes}
        for i in range(0, len(hashes), 500):
            batch = hashes[i : i + 500]
            placeholders = ",".join("?" for _ in batch)
            for commit_hash, path, change in store.conn.execute(
                f"""SELECT commit_hash, path, change FROM commit_changes
                    WHERE commit_hash IN ({placeholders}) ORDER BY path""",
                batch,
            ):
                changes[commit_hash][path] = change
        return [
            Commit(
                hash=r[1],
                seq=r[0],
                parent=r[2],
                tree=r[3],
                message=r[4],
                author=r[5],
                timestamp=r[6],
                changes=changes[r[1]],
            )
            for r in rows
        ]

    def log(self, project_id: str, path: str | None = None, limit: int | None = None) -> list[Commit]:
        """Commits, most recent first; with path, only those touching it."""
        query = "SELECT seq, hash, parent, tree, message, author, timestamp FROM commits c"
        params: list = []
        if path is not None:
            rel = normalize_path(path, project_id)
            query += """
                WHERE EXISTS (
                    SELECT 1 FROM commit_changes x
                    WHERE x.commit_hash = c.hash
                      AND (x.path = ? OR substr(x.path, 1, ?) = ?)
                )"""
            params += [rel, len(rel) + 1, f"{rel}/"]
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(limit if limit is not None else -1)

        with self._open(project_id) as store:
            rows = store.conn.execute(query, params).fetchall()
            return self._rows_to_commits(store, rows)

    def count(self, project_id: str) -> int:
        with self._open(project_id) as store:
            return store.conn.execute("SELECT COUNT(*) FROM commits").fetchone()[0]

    def head(self, project_id: str) -> Commit | None:
        commits = self.log(project_id, limit=1)
        return commits[0] if commits else None

    def get_commit(self, project_id: str, commit_ref: str) -> Commit:
        """Look up a commit by full hash or unique prefix."""
        if not commit_ref:
            raise NotFound(f"Empty commit reference for {project_id}", project_id=project_id)
        with self._open(project_id) as store:
            rows = store.conn.execute(
                """SELECT seq, hash, parent, tree, message, author, timestamp
                   FROM commits WHERE substr(hash, 1, ?) = ? LIMIT 2""",
                (len(commit_ref), commit_ref),
            ).fetchall()
            if not rows:
                raise NotFound(
                    f"Commit not found in {project_id}: {commit_ref}", project_id=project_id
                )
            if len(rows) > 1:
                raise NotFound(
                    f"Ambiguous commit prefix in {project_id}: {commit_ref}",
                    project_id=project_id,
                )
            return self._rows_to_commits(store, rows)[0]

    def files_at(self, project_id: str, commit_ref: str) -> dict[str, str]:
        """{path: blob_hash} as of a commit."""
        commit = self.get_commit(project_id, commit_ref)
        with self._open(project_id) as store:
            return {p: v[0] for p, v in self._flatten_tree(store, commit.tree).items()}

    def read_file_at(self, project_id: str, commit_ref: str, path: str) -> bytes | None:
        """File content as of a commit, or None if the path did not exist then."""
        rel = normalize_path(path, project_id)
        blob_hash = self.files_at(project_id, commit_ref).get(rel)
        if blob_hash is None:
            return None
        with self._open(project_id) as store:
            obj = store.retrieve(blob_hash)
            return obj.data if obj is not None else None

    def uncommitted(self, project_id: str) -> dict:
        """Differences between the working tree and the head commit.

        Hashes files without storing them, so it is safe on a read path.
        """
        tree_dir = self.trees.path_for(project_id)
        with self._open(project_id) as store:
            head = self._head_row(store)
            committed = self._flatten_tree(store, head[1]) if head else {}
            current = {
                e.rel_path: (
                    store.hash_content(e.path.read_bytes(), ObjectType.BLOB),
                    e.stat.st_mode & 0o777,
                )
                for e in walk_files(tree_dir, max_depth=self.trees.max_depth)
            }
        return diff_files(committed, current)

    # ── Integrity ─────────────────────────────────────────────────

    def verify(self, project_id: str) -> list[str]:
        """
        Re-derive every hash in the log. Returns a list of problems;
        an empty list means the history is intact.
        """
        problems = []
        with self._open(project_id) as store:
            rows = store.conn.execute(
                """SELECT seq, hash, parent, tree, message, author, timestamp
                   FROM commits ORDER BY seq"""
            ).fetchall()
            checked: set[str] = set()
            expected_parent = None
            for seq, commit_hash, parent, tree, message, author, ts in rows:
                short = commit_hash[:12]
                if parent != expected_parent:
                    problems.append(
                        f"commit {short}: parent {parent} does not match previous {expected_parent}"
                    )
                payload = commit_payload(tree, parent, message, author, ts)
                if store.hash_content(payload, ObjectType.COMMIT) != commit_hash:
                    problems.append(f"commit {short}: hash does not match its contents")
                if not store.exists(commit_hash):
                    problems.append(f"commit {short}: commit object missing")
                problems.extend(self._verify_object(store, tree, ObjectType.TREE, checked))
                expected_parent = commit_hash
        return problems

    def _verify_object(
        self, store: ContentStore, obj_hash: str, expected: ObjectType, checked: set
    ) -> list[str]:
        if obj_hash in checked:
            return []
        checked.add(obj_hash)
        obj = store.retrieve(obj_hash)
        if obj is None:
            return [f"{expected.value} {obj_hash[:12]}: missing"]
        if obj.type != expected:
            return [f"{expected.value} {obj_hash[:12]}: stored as {obj.type.value}"]
        if store.hash_content(obj.data, obj.type) != obj_hash:
            return [f"{expected.value} {obj_hash[:12]}: content does not match hash"]
        problems = []
        if expected == ObjectType.TREE:
            for typ, child, _mode in store.read_tree(obj_hash).values():
                child_type = ObjectType.TREE if typ == "tree" else ObjectType.BLOB
                problems.extend(self._verify_object(store, child, child_type, checked))
        return problems
