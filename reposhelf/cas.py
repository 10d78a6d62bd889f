"""
Content-Addressed Store (CAS)

The storage layer under every project's history. Every piece of content
is stored exactly once, addressed by its SHA-256 hash:

- Automatic deduplication (rewriting an unchanged file costs nothing)
- Integrity verification (a commit hash covers its tree, which covers
  its blobs)
- Cheap snapshots (successive commits share unchanged blobs)

Each project owns one store, kept in the reserved ``.reposhelf/``
directory inside its tree, so deleting the tree deletes the history.
"""

import hashlib
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class ObjectType(Enum):
    BLOB = "blob"  # Raw file content
    TREE = "tree"  # Directory listing: name -> (type, hash, mode)
    COMMIT = "commit"  # Commit record: tree + parent + metadata


@dataclass(frozen=True)
class CASObject:
    """An immutable content-addressed object."""

    hash: str
    type: ObjectType
    data: bytes
    size: int


class ContentStoreLimitError(ValueError):
    """Raised when a store operation exceeds configured limits."""


class ContentStore:
    """
    SQLite-backed content-addressed store.

    Thread Safety:
        Not safe for concurrent use from multiple threads. The history log
        opens one ContentStore per operation and closes it afterwards;
        several stores may share one database file via WAL mode +
        busy_timeout.
    """

    # Default: 100 MB max blob size
    # Note: 0 or missing value uses DEFAULT_MAX_BLOB_SIZE
    DEFAULT_MAX_BLOB_SIZE = 100 * 1024 * 1024

    def __init__(self, db_path: Path, max_blob_size: int = 0):
        self.db_path = db_path
        self.max_blob_size = max_blob_size if max_blob_size > 0 else self.DEFAULT_MAX_BLOB_SIZE
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout = 30000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self._in_batch = False
        self._closed = False
        self._init_tables()

    def _init_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS objects (
                hash TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                data BLOB NOT NULL,
                size INTEGER NOT NULL,
                created_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_objects_type
                ON objects(type);
        """)
        self.conn.commit()

    # ── Batch Transactions ────────────────────────────────────────

    @contextmanager
    def batch(self):
        """Context manager for batched writes; one commit at the end."""
        if self._in_batch:
            yield  # nested: pass through
            return
        self._in_batch = True
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            self._in_batch = False

    # ── Core Operations ───────────────────────────────────────────

    @staticmethod
    def hash_content(content: bytes, obj_type: ObjectType) -> str:
        """
        Hash content with a type prefix so a blob and a tree with the
        same bytes never share an address.
        """
        header = f"{obj_type.value}:{len(content)}:".encode()
        return hashlib.sha256(header + content).hexdigest()

    def store(self, content: bytes, obj_type: ObjectType) -> str:
        """
        Store content and return its hash. Idempotent: storing the same
        content twice returns the same hash.

        The size limit is checked after deduplication so existing large
        blobs stay usable if the limit is lowered.
        """
        content_hash = self.hash_content(content, obj_type)

        existing = self.conn.execute(
            "SELECT hash FROM objects WHERE hash = ?", (content_hash,)
        ).fetchone()
        if existing is not None:
            return content_hash

        if obj_type == ObjectType.BLOB and len(content) > self.max_blob_size:
            raise ContentStoreLimitError(
                f"Blob size {len(content)} bytes exceeds limit of {self.max_blob_size} bytes"
            )

        self.conn.execute(
            """INSERT OR IGNORE INTO objects
               (hash, type, data, size, created_at) VALUES (?, ?, ?, ?, ?)""",
            (content_hash, obj_type.value, content, len(content), time.time()),
        )
        if not self._in_batch:
            self.conn.commit()

        return content_hash

    def retrieve(self, content_hash: str) -> CASObject | None:
        """Retrieve an object by its hash."""
        row = self.conn.execute(
            "SELECT hash, type, data, size FROM objects WHERE hash = ?", (content_hash,)
        ).fetchone()
        if row is None:
            return None
        return CASObject(hash=row[0], type=ObjectType(row[1]), data=row[2], size=row[3])

    def exists(self, content_hash: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM objects WHERE hash = ?", (content_hash,)).fetchone()
        return row is not None

    def store_blob(self, content: bytes) -> str:
        """Store raw file content."""
        return self.store(content, ObjectType.BLOB)

    def store_tree(self, entries: dict) -> str:
        """
        Store a directory tree.

        entries: {name: (type, hash, mode)} where type is 'blob' or 'tree'.
                 mode may be omitted (0o644 for blobs, 0o755 for trees).

        Entries are sorted for deterministic hashing: the same set of
        files always produces the same tree hash.
        """
        normalized = {}
        for name, entry in entries.items():
            if len(entry) == 2:
                typ, h = entry
                mode = 0o755 if typ == "tree" else 0o644
                normalized[name] = (typ, h, mode)
            else:
                normalized[name] = tuple(entry)

        sorted_entries = sorted(normalized.items())
        data = json.dumps(sorted_entries).encode()
        return self.store(data, ObjectType.TREE)

    def read_tree(self, tree_hash: str) -> dict[str, tuple]:
        """Read a tree back into ``{name: (type, hash, mode)}``."""
        obj = self.retrieve(tree_hash)
        if obj is None or obj.type != ObjectType.TREE:
            raise ValueError(f"Not a tree: {tree_hash}")
        return {name: tuple(entry) for name, entry in json.loads(obj.data.decode())}

    # ── Maintenance ───────────────────────────────────────────────

    def backup(self, target_path: Path):
        """Copy the whole database to target_path (SQLite online backup)."""
        target = sqlite3.connect(str(target_path))
        try:
            self.conn.backup(target)
        finally:
            target.close()

    def stats(self) -> dict:
        """Storage statistics."""
        row = self.conn.execute("SELECT COUNT(*), COALESCE(SUM(size), 0) FROM objects").fetchone()
        by_type = {}
        for row2 in self.conn.execute(
            "SELECT type, COUNT(*), COALESCE(SUM(size), 0) FROM objects GROUP BY type"
        ):
            by_type[row2[0]] = {"count": row2[1], "bytes": row2[2]}

        return {
            "total_objects": row[0],
            "total_bytes": row[1],
            "by_type": by_type,
        }

    def close(self):
        """Close the SQLite connection. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        try:
            self.conn.close()
        except sqlite3.Error:
            logger.debug("Error closing %s", self.db_path, exc_info=True)
