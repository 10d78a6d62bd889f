"""
Registries

Bookkeeping that sits in front of the project store:

- ``ProjectDirectory`` keeps name, description, owning session and
  timestamps per project id and answers "does this project belong to
  this caller".
- ``SessionRegistry`` maps opaque session ids to their creation time and
  issues expiring share tokens.

Both are plain services with their own lifecycle. They are thread-safe
and, when given a file path, persist themselves as JSON written
atomically after every change. The project store never reads them.
"""

import json
import logging
import secrets
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path

from .config import DEFAULT_SHARE_TOKEN_TTL
from .errors import AccessDenied, ProjectNotFound
from .fsutil import atomic_write

logger = logging.getLogger(__name__)


@dataclass
class ProjectRecord:
    """Metadata about one project."""

    id: str
    name: str
    session_id: str
    description: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0
    cloned_from: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ProjectRecord":
        return cls(
            id=d["id"],
            name=d["name"],
            session_id=d["session_id"],
            description=d.get("description", ""),
            created_at=d.get("created_at", 0.0),
            updated_at=d.get("updated_at", 0.0),
            cloned_from=d.get("cloned_from"),
        )


def _load_json(path: Path | None) -> dict:
    if path is None or not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Corrupted registry file {path}: {e}") from e


def _save_json(path: Path | None, data: dict):
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(path, json.dumps(data, indent=2))


class ProjectDirectory:
    """Project metadata keyed by project id."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._records = {
            pid: ProjectRecord.from_dict(d) for pid, d in _load_json(self.path).items()
        }

    def _save(self):
        _save_json(self.path, {pid: r.to_dict() for pid, r in self._records.items()})

    def add(self, record: ProjectRecord) -> ProjectRecord:
        now = time.time()
        if not record.created_at:
            record.created_at = now
        if not record.updated_at:
            record.updated_at = now
        with self._lock:
            self._records[record.id] = record
            self._save()
        return record

    def get(self, project_id: str) -> ProjectRecord | None:
        with self._lock:
            return self._records.get(project_id)

    def touch(self, project_id: str) -> ProjectRecord:
        """Bump a project's updated_at."""
        with self._lock:
            record = self._records.get(project_id)
            if record is None:
                raise ProjectNotFound(project_id)
            record.updated_at = time.time()
            self._save()
            return record

    def remove(self, project_id: str) -> bool:
        with self._lock:
            if self._records.pop(project_id, None) is None:
                return False
            self._save()
            return True

    def for_session(self, session_id: str) -> list[ProjectRecord]:
        with self._lock:
            return sorted(
                (r for r in self._records.values() if r.session_id == session_id),
                key=lambda r: r.created_at,
            )

    def authorize(self, project_id: str, session_id: str) -> ProjectRecord:
        """The project's record if session_id owns it."""
        record = self.get(project_id)
        if record is None:
            raise ProjectNotFound(project_id)
        if record.session_id != session_id:
            raise AccessDenied(f"Access denied to project {project_id}", project_id=project_id)
        return record


class SessionRegistry:
    """Sessions and the share tokens they hand out."""

    def __init__(self, path: Path | None = None, token_ttl: int = DEFAULT_SHARE_TOKEN_TTL):
        self.path = Path(path) if path else None
        self.token_ttl = token_ttl
        self._lock = threading.Lock()
        data = _load_json(self.path)
        self._sessions: dict[str, dict] = data.get("sessions", {})
        self._tokens: dict[str, dict] = data.get("tokens", {})

    def _save(self):
        _save_json(self.path, {"sessions": self._sessions, "tokens": self._tokens})

    def create_session(self) -> str:
        session_id = str(uuid.uuid4())
        with self._lock:
            self._sessions[session_id] = {"created_at": time.time()}
            self._save()
        return session_id

    def ensure(self, session_id: str | None) -> str:
        """Return session_id, registering it (or a new one) if unknown."""
        if not session_id:
            return self.create_session()
        with self._lock:
            if session_id not in self._sessions:
                self._sessions[session_id] = {"created_at": time.time()}
                self._save()
        return session_id

    def get(self, session_id: str) -> dict | None:
        with self._lock:
            data = self._sessions.get(session_id)
            return dict(data) if data is not None else None

    def delete_session(self, session_id: str) -> bool:
        """Forget a session and revoke its share tokens."""
        with self._lock:
            existed = self._sessions.pop(session_id, None) is not None
            for token in [t for t, d in self._tokens.items() if d["session_id"] == session_id]:
                del self._tokens[token]
            self._save()
        return existed

    def create_share_token(self, session_id: str) -> str:
        token = secrets.token_hex(32)
        now = time.time()
        with self._lock:
            self._tokens[token] = {
                "session_id": session_id,
                "created_at": now,
                "expires_at": now + self.token_ttl,
            }
            self._save()
        return token

    def resolve_share_token(self, token: str) -> str | None:
        """Session id behind a live token; expired tokens are dropped."""
        with self._lock:
            data = self._tokens.get(token)
            if data is None:
                return None
            if data["expires_at"] < time.time():
                del self._tokens[token]
                self._save()
                logger.debug("Share token expired")
                return None
            return data["session_id"]

    def revoke_share_token(self, token: str) -> bool:
        with self._lock:
            if self._tokens.pop(token, None) is None:
                return False
            self._save()
            return True
