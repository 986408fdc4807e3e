"""Persisted pull sessions so an interrupted pull can resume.

All sessions live in one JSON document::

    {"pull": {"<key>": {"key": ..., "endpoint": ..., "last_page": ..., ...}}}

Every mutation re-reads the document, applies one change and atomically
replaces the file (temp file + ``os.replace``). A lock per store serializes
callers inside one process; concurrent writers in different processes are not
coordinated.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Optional

from orgsync.config import default_config_dir

logger = logging.getLogger("orgsync.session")

SESSION_FILE_NAME = "session.json"

# Omitted from the document when empty.
_OPTIONAL_FIELDS = ("team_slug", "repo_name", "user_login", "metadata")


class SessionStoreError(Exception):
    """The session document could not be read, decoded or written."""


class SessionNotFound(LookupError):
    """No session is stored under the requested key."""


@dataclass
class PullSession:
    key: str
    target: str
    endpoint: str = ""
    last_page: int = 0
    fetched_count: int = 0
    store: bool = False
    stdout: bool = False
    interval: str = ""
    streaming: bool = False
    table_cleared: bool = False
    team_slug: str = ""
    repo_name: str = ""
    user_login: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    updated_at: str = ""

    def clone(self) -> "PullSession":
        return replace(self, metadata=dict(self.metadata or {}))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in _OPTIONAL_FIELDS:
            if not data.get(name):
                data.pop(name, None)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PullSession":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["metadata"] = {str(k): str(v) for k, v in (values.get("metadata") or {}).items()}
        return cls(**values)


def default_session_path() -> str:
    return os.path.join(default_config_dir(), SESSION_FILE_NAME)


class SessionStore:
    """Durable key -> PullSession map backed by one JSON file."""

    def __init__(self, path: Optional[str] = None) -> None:
        self._lock = threading.Lock()
        self._path_lock = threading.Lock()
        self._custom_path = ""
        self.set_path(path or "")

    @property
    def path(self) -> str:
        with self._path_lock:
            override = self._custom_path
        return override or default_session_path()

    def set_path(self, path: str) -> None:
        """Override the document location. An empty string restores the default."""
        with self._path_lock:
            self._custom_path = os.path.abspath(os.path.normpath(path)) if path else ""

    def save(self, session: PullSession) -> None:
        with self._lock:
            state = self._load_state()
            session.updated_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            state["pull"][session.key] = session.clone().to_dict()
            self._save_state(state)

    def load(self, key: str) -> PullSession:
        with self._lock:
            state = self._load_state()
        data = state["pull"].get(key)
        if data is None:
            raise SessionNotFound(key)
        return PullSession.from_dict(data)

    def remove(self, key: str) -> None:
        with self._lock:
            state = self._load_state()
            state["pull"].pop(key, None)
            self._save_state(state)

    def list_sessions(self) -> list[PullSession]:
        with self._lock:
            state = self._load_state()
        return [PullSession.from_dict(v) for _, v in sorted(state["pull"].items())]

    def _load_state(self) -> dict[str, Any]:
        path = self.path
        try:
            with open(path, "r", encoding="utf-8") as fh:
                content = fh.read()
        except FileNotFoundError:
            return {"pull": {}}
        except OSError as exc:
            raise SessionStoreError(f"failed to read session file {path}: {exc}") from exc

        if not content.strip():
            return {"pull": {}}
        try:
            state = json.loads(content)
        except ValueError as exc:
            raise SessionStoreError(f"failed to decode session file {path}: {exc}") from exc
        if not isinstance(state, dict):
            raise SessionStoreError(f"session file {path} is not a JSON object")
        if not isinstance(state.get("pull"), dict):
            state["pull"] = {}
        return state

    def _save_state(self, state: dict[str, Any]) -> None:
        path = self.path
        directory = os.path.dirname(path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".session-", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(state, fh, indent=2, sort_keys=True)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as exc:
            raise SessionStoreError(f"failed to write session file {path}: {exc}") from exc


class ProgressRecorder:
    """Progress reporter that persists every page advance into a PullSession."""

    def __init__(self, store: SessionStore, session: PullSession) -> None:
        self.store = store
        self.session = session
        self._lock = threading.Lock()

    def start(self, endpoint: str, metadata: Optional[dict], page: int, count: int) -> None:
        self._record(endpoint, metadata, page, count)

    def page(self, endpoint: str, metadata: Optional[dict], page: int, count: int) -> None:
        self._record(endpoint, metadata, page, count)

    def cleared(self, endpoint: str, metadata: Optional[dict]) -> None:
        """Note that the scope's destination rows were deleted for this run."""
        with self._lock:
            self.session.endpoint = endpoint
            self.session.metadata = dict(metadata or {})
            self.session.last_page = 0
            self.session.fetched_count = 0
            self.session.table_cleared = True
            self.store.save(self.session)

    def _record(self, endpoint: str, metadata: Optional[dict], page: int, count: int) -> None:
        with self._lock:
            if self.session.endpoint != endpoint or self.session.metadata != dict(metadata or {}):
                self.session.table_cleared = False
            self.session.endpoint = endpoint
            self.session.last_page = page
            self.session.fetched_count = count
            self.session.metadata = dict(metadata or {})
            self.store.save(self.session)
