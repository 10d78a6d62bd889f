"""
Errors

Every failure the store can report carries a stable, machine-readable
``kind`` plus a human message. Callers branch on the class (or on
``kind`` once it has crossed a process boundary); the message is for
people.

    StoreError
    ├── AlreadyExists         already_exists
    ├── NotFound              not_found
    │   ├── ProjectNotFound
    │   ├── FileNotFound
    │   └── HistoryNotFound
    ├── SourceMissing         source_missing
    ├── TargetExists          target_exists
    ├── NothingToCommit       nothing_to_commit
    ├── InvalidPath           invalid_path
    ├── InvalidData           invalid_data
    ├── AccessDenied          access_denied
    └── IOFailure             io_failure
        └── InconsistentState inconsistent

``IOFailure`` means the storage medium misbehaved (disk full, permission
denied). ``InconsistentState`` is the dangerous variant: the tree was
changed but the matching commit never landed, so the operation must not
simply be retried. See ``ProjectStore.recover``.
"""


class StoreError(Exception):
    """Base class for all store failures."""

    kind = "store_error"

    def __init__(self, message: str, project_id: str | None = None, path: str | None = None):
        super().__init__(message)
        self.message = message
        self.project_id = project_id
        self.path = path

    def to_dict(self) -> dict:
        d = {"kind": self.kind, "message": self.message}
        if self.project_id is not None:
            d["project_id"] = self.project_id
        if self.path is not None:
            d["path"] = self.path
        return d


class AlreadyExists(StoreError):
    kind = "already_exists"


class NotFound(StoreError, LookupError):
    kind = "not_found"


class ProjectNotFound(NotFound):
    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}", project_id=project_id)


class FileNotFound(NotFound):
    def __init__(self, project_id: str, path: str):
        super().__init__(
            f"File not found in project {project_id}: {path}",
            project_id=project_id,
            path=path,
        )


class HistoryNotFound(NotFound):
    def __init__(self, project_id: str):
        super().__init__(
            f"Project {project_id} has no initialized history", project_id=project_id
        )


class SourceMissing(StoreError):
    kind = "source_missing"


class TargetExists(StoreError):
    kind = "target_exists"


class NothingToCommit(StoreError):
    kind = "nothing_to_commit"


class InvalidPath(StoreError, ValueError):
    kind = "invalid_path"


class InvalidData(StoreError, ValueError):
    """A document handed in for import is malformed."""

    kind = "invalid_data"


class AccessDenied(StoreError):
    kind = "access_denied"


class IOFailure(StoreError):
    kind = "io_failure"


class InconsistentState(IOFailure):
    """The tree and its history disagree and need reconciliation."""

    kind = "inconsistent"
