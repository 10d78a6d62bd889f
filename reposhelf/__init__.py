"""
Reposhelf: Versioned Project Store

Keeps many small code projects on disk, one directory tree each, and
gives every change to a project an ordered, immutable commit in a
per-project history log.
"""

__version__ = "0.1.0"

__all__ = [
    # Store
    "ProjectStore",
    "StoreConfig",
    # Errors
    "StoreError",
    "AlreadyExists",
    "NotFound",
    "ProjectNotFound",
    "FileNotFound",
    "HistoryNotFound",
    "SourceMissing",
    "TargetExists",
    "NothingToCommit",
    "InvalidPath",
    "InvalidData",
    "AccessDenied",
    "IOFailure",
    "InconsistentState",
    # History
    "Commit",
    "FileEntry",
    # Sessions
    "ProjectService",
    "ProjectDirectory",
    "ProjectRecord",
    "SessionRegistry",
]

_ERRORS = frozenset({
    "StoreError",
    "AlreadyExists",
    "NotFound",
    "ProjectNotFound",
    "FileNotFound",
    "HistoryNotFound",
    "SourceMissing",
    "TargetExists",
    "NothingToCommit",
    "InvalidPath",
    "InvalidData",
    "AccessDenied",
    "IOFailure",
    "InconsistentState",
})


# Lazy imports, resolved on first access
def __getattr__(name):
    if name == "ProjectStore":
        from .store import ProjectStore

        return ProjectStore
    if name == "StoreConfig":
        from .config import StoreConfig

        return StoreConfig
    if name in _ERRORS:
        from . import errors

        return getattr(errors, name)
    if name == "Commit":
        from .history import Commit

        return Commit
    if name == "FileEntry":
        from .trees import FileEntry

        return FileEntry
    if name == "ProjectService":
        from .service import ProjectService

        return ProjectService
    if name in ("ProjectDirectory", "ProjectRecord", "SessionRegistry"):
        from . import registry

        return getattr(registry, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
