"""
Per-project readers-writer locks.

Mutations of one project (write, delete, commit, clone into it) run one
at a time; reads run concurrently with each other but never alongside a
mutation of the same project. Different projects never contend.

Locks are created on first use and dropped once nobody holds or waits
for them, so the table only ever holds projects with in-flight work.
Waiting writers block new readers, so a steady stream of reads cannot
starve a write.
"""

import threading
from contextlib import ExitStack, contextmanager


class _RWLock:
    def __init__(self):
        self.cond = threading.Condition(threading.Lock())
        self.readers = 0
        self.writer = False
        self.waiting_writers = 0
        self.users = 0  # holders + waiters; guarded by the table lock


class ProjectLocks:
    """Table of readers-writer locks keyed by project id."""

    def __init__(self):
        self._table_lock = threading.Lock()
        self._locks: dict[str, _RWLock] = {}

    def _checkout(self, project_id: str) -> _RWLock:
        with self._table_lock:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = self._locks[project_id] = _RWLock()
            lock.users += 1
            return lock

    def _checkin(self, project_id: str, lock: _RWLock):
        with self._table_lock:
            lock.users -= 1
            if lock.users == 0:
                del self._locks[project_id]

    @contextmanager
    def read(self, project_id: str):
        """Shared access to one project."""
        lock = self._checkout(project_id)
        try:
            with lock.cond:
                while lock.writer or lock.waiting_writers:
                    lock.cond.wait()
                lock.readers += 1
            try:
                yield
            finally:
                with lock.cond:
                    lock.readers -= 1
                    if lock.readers == 0:
                        lock.cond.notify_all()
        finally:
            self._checkin(project_id, lock)

    @contextmanager
    def write(self, project_id: str):
        """Exclusive access to one project."""
        lock = self._checkout(project_id)
        try:
            with lock.cond:
                lock.waiting_writers += 1
                try:
                    while lock.writer or lock.readers:
                        lock.cond.wait()
                finally:
                    lock.waiting_writers -= 1
                lock.writer = True
            try:
                yield
            finally:
                with lock.cond:
                    lock.writer = False
                    lock.cond.notify_all()
        finally:
            self._checkin(project_id, lock)

    @contextmanager
    def read_write(self, read_id: str, write_id: str):
        """Shared access to read_id plus exclusive access to write_id.

        Acquired in sorted id order so two opposite clones cannot deadlock.
        """
        if read_id == write_id:
            with self.write(write_id):
                yield
            return
        order = sorted([(read_id, self.read), (write_id, self.write)], key=lambda x: x[0])
        with ExitStack() as stack:
            for project_id, acquire in order:
                stack.enter_context(acquire(project_id))
            yield

    def active(self) -> list[str]:
        """Project ids that currently have holders or waiters."""
        with self._table_lock:
            return sorted(self._locks)
