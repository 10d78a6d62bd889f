"""
Project Service

Session-scoped front door to the store. Every call first checks with
the project directory that the session owns the project, then makes one
store call and keeps the directory's metadata in step:

    service = ProjectService(store, ProjectDirectory(), SessionRegistry())
    session = service.sessions.create_session()
    record = service.create_project(session, "Todo app")
    service.put_file(session, record.id, "App.js", b"...")

Sharing hands out a token for a whole session; importing it clones
every project of that session into the caller's session. Exporting a
session produces a plain dict of its project records; importing that
dict moves the records, trees untouched, into another session.
"""

import logging
import time
import uuid

from .errors import AccessDenied, InvalidData, InvalidPath, NotFound, SourceMissing
from .fsutil import validate_project_id
from .history import Commit
from .registry import ProjectDirectory, ProjectRecord, SessionRegistry
from .store import ProjectStore
from .trees import FileEntry

logger = logging.getLogger(__name__)

PROJECT_ID_LENGTH = 10


def new_project_id() -> str:
    return uuid.uuid4().hex[:PROJECT_ID_LENGTH]


class ProjectService:
    def __init__(
        self,
        store: ProjectStore,
        directory: ProjectDirectory | None = None,
        sessions: SessionRegistry | None = None,
    ):
        self.store = store
        self.directory = directory if directory is not None else ProjectDirectory()
        self.sessions = (
            sessions
            if sessions is not None
            else SessionRegistry(token_ttl=store.config.share_token_ttl)
        )

    # ── Projects ──────────────────────────────────────────────────

    def create_project(
        self,
        session_id: str,
        name: str,
        description: str = "",
        template: str | None = None,
    ) -> ProjectRecord:
        session_id = self.sessions.ensure(session_id)
        project_id = new_project_id()
        self.store.create_project(project_id, template=template, author=session_id)
        record = self.directory.add(
            ProjectRecord(id=project_id, name=name, session_id=session_id, description=description)
        )
        logger.info("Session %s created project %s (%r)", session_id, project_id, name)
        return record

    def get_project(self, session_id: str, project_id: str) -> ProjectRecord:
        return self.directory.authorize(project_id, session_id)

    def list_projects(self, session_id: str) -> list[ProjectRecord]:
        return self.directory.for_session(session_id)

    def delete_project(self, session_id: str, project_id: str) -> bool:
        self.directory.authorize(project_id, session_id)
        existed = self.store.delete_project(project_id)
        self.directory.remove(project_id)
        return existed

    # ── Files ─────────────────────────────────────────────────────

    def get_file(self, session_id: str, project_id: str, path: str) -> bytes:
        self.directory.authorize(project_id, session_id)
        return self.store.get_file(project_id, path)

    def put_file(
        self,
        session_id: str,
        project_id: str,
        path: str,
        content: bytes,
        message: str | None = None,
    ) -> str:
        self.directory.authorize(project_id, session_id)
        commit_hash = self.store.put_file(
            project_id, path, content, message=message, author=session_id
        )
        self.directory.touch(project_id)
        return commit_hash

    def remove_file(
        self, session_id: str, project_id: str, path: str, message: str | None = None
    ) -> str:
        self.directory.authorize(project_id, session_id)
        commit_hash = self.store.remove_file(project_id, path, message=message, author=session_id)
        self.directory.touch(project_id)
        return commit_hash

    def list_files(self, session_id: str, project_id: str) -> list[FileEntry]:
        self.directory.authorize(project_id, session_id)
        return self.store.list_files(project_id)

    # ── History ───────────────────────────────────────────────────

    def project_history(
        self, session_id: str, project_id: str, limit: int | None = None
    ) -> list[Commit]:
        self.directory.authorize(project_id, session_id)
        return self.store.project_history(project_id, limit=limit)

    def file_history(
        self, session_id: str, project_id: str, path: str, limit: int | None = None
    ) -> list[Commit]:
        self.directory.authorize(project_id, session_id)
        return self.store.file_history(project_id, path, limit=limit)

    # ── Sharing ───────────────────────────────────────────────────

    def share(self, session_id: str) -> str:
        """A token another session can use to import this session's projects."""
        if self.sessions.get(session_id) is None:
            raise NotFound(f"Session not found: {session_id}")
        return self.sessions.create_share_token(session_id)

    def import_shared(self, token: str, session_id: str) -> list[ProjectRecord]:
        """Clone every project of the token's session into session_id."""
        source_session = self.sessions.resolve_share_token(token)
        if source_session is None:
            raise AccessDenied("Invalid or expired share token")
        session_id = self.sessions.ensure(session_id)

        imported = []
        for source in self.directory.for_session(source_session):
            project_id = new_project_id()
            try:
                self.store.clone_project(source.id, project_id, author=session_id)
            except SourceMissing:
                logger.warning("Shared project %s has no tree, skipping", source.id)
                continue
            imported.append(
                self.directory.add(
                    ProjectRecord(
                        id=project_id,
                        name=f"{source.name} (Copy)",
                        session_id=session_id,
                        description=source.description,
                        cloned_from=source.id,
                    )
                )
            )
        logger.info(
            "Imported %d project(s) from session %s into %s",
            len(imported),
            source_session,
            session_id,
        )
        return imported

    def export_session(self, session_id: str) -> dict:
        """A JSON-ready snapshot of a session and its project records."""
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session not found: {session_id}")
        return {
            "session_id": session_id,
            "created_at": session["created_at"],
            "exported_at": time.time(),
            "projects": [r.to_dict() for r in self.directory.for_session(session_id)],
        }

    def import_session(self, session_id: str, data: dict) -> list[ProjectRecord]:
        """Move the projects of an exported session into session_id.

        Records are re-homed, not cloned: the project keeps its id and
        tree. A record is skipped when its tree is gone or when the
        project currently belongs to a session other than the exporting
        one or session_id.
        """
        projects = data.get("projects") if isinstance(data, dict) else None
        if not isinstance(projects, list):
            raise InvalidData("Invalid session data: expected a list of projects")
        records = []
        for entry in projects:
            if not (
                isinstance(entry, dict)
                and isinstance(entry.get("id"), str)
                and isinstance(entry.get("name"), str)
            ):
                raise InvalidData("Invalid session data: project entry needs an id and a name")
            try:
                validate_project_id(entry["id"])
            except InvalidPath as e:
                raise InvalidData(f"Invalid session data: {e.message}") from e
            records.append(ProjectRecord.from_dict({**entry, "session_id": session_id}))

        session_id = self.sessions.ensure(session_id)
        exporter = data.get("session_id")
        now = time.time()
        imported = []
        for record in records:
            if not self.store.exists(record.id):
                logger.warning("Imported project %s has no tree, skipping", record.id)
                continue
            current = self.directory.get(record.id)
            if current is not None and current.session_id not in (exporter, session_id):
                logger.warning(
                    "Imported project %s belongs to session %s, skipping",
                    record.id,
                    current.session_id,
                )
                continue
            record.session_id = session_id
            record.updated_at = now
            imported.append(self.directory.add(record))
        logger.info(
            "Imported %d of %d project record(s) into session %s",
            len(imported),
            len(records),
            session_id,
        )
        return imported

    def delete_session(self, session_id: str) -> int:
        """Delete a session with all its projects. Returns how many were deleted."""
        count = 0
        for record in self.directory.for_session(session_id):
            if self.store.delete_project(record.id):
                count += 1
            self.directory.remove(record.id)
        self.sessions.delete_session(session_id)
        return count
