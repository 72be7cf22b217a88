from __future__ import annotations

import os
from typing import Dict, List, Optional, Protocol

from diskcache import Cache
from loguru import logger

from .constants import DEFAULT_STORE_DIR, STORE_DIR_ENV
from .data_models import Session


class SessionStore(Protocol):
    """
    Key/value table of sessions.

    Reads and writes always move whole sessions; the caller mutates its own
    copy and puts it back.
    """

    def get(self, session_id: str) -> Optional[Session]: ...

    def put(self, session: Session) -> None: ...

    def delete(self, session_id: str) -> None: ...

    def list_all(self) -> List[Session]: ...


class InMemorySessionStore:
    """Process-local store. Sessions are copied on the way in and out."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session is not None else None

    def put(self, session: Session) -> None:
        self._sessions[session.id] = session.model_copy(deep=True)

    def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def list_all(self) -> List[Session]:
        return sorted(
            (s.model_copy(deep=True) for s in self._sessions.values()),
            key=lambda s: s.created_at,
        )


class DiskSessionStore:
    """
    Durable store backed by a ``diskcache`` directory.

    Sessions are kept as JSON documents under ``session:<id>`` keys so a store
    written by one version can be inspected with any JSON tooling.

    Args:
        directory (str | None): Cache directory; defaults to ``$OPRO_STORE_DIR`` or ``.opro_sessions``.
    """

    PREFIX = "session:"

    def __init__(self, directory: Optional[str] = None) -> None:
        self.directory = directory or os.getenv(STORE_DIR_ENV, DEFAULT_STORE_DIR)
        self._cache = Cache(self.directory)

    def _key(self, session_id: str) -> str:
        return f"{self.PREFIX}{session_id}"

    def get(self, session_id: str) -> Optional[Session]:
        raw = self._cache.get(self._key(session_id))
        if raw is None:
            return None
        return Session.model_validate_json(raw)

    def put(self, session: Session) -> None:
        self._cache.set(self._key(session.id), session.model_dump_json())

    def delete(self, session_id: str) -> None:
        self._cache.delete(self._key(session_id))

    def list_all(self) -> List[Session]:
        sessions: List[Session] = []
        for key in list(self._cache.iterkeys()):
            if not isinstance(key, str) or not key.startswith(self.PREFIX):
                continue
            raw = self._cache.get(key)
            if raw is None:
                continue
            try:
                sessions.append(Session.model_validate_json(raw))
            except ValueError as exc:
                logger.bind(key=key).warning("Skipping unreadable session: {}", exc)
        return sorted(sessions, key=lambda s: s.created_at)

    def close(self) -> None:
        self._cache.close()

    def __enter__(self) -> "DiskSessionStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
