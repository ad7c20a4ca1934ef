"""
In-memory progress store for import sessions

Sessions live in process memory only and do not survive a restart. Each
session is driven by exactly one background task, so the lock only guards the
shared map against concurrent sessions and pruning.
"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog

from packages.domain.imports.schemas import ImportSession

logger = structlog.get_logger()


class ProgressStore:
    """Keyed map of session id → ImportSession"""

    def __init__(self, retention_seconds: int = 3600):
        self.retention = timedelta(seconds=retention_seconds)
        self._sessions: Dict[str, ImportSession] = {}
        self._lock = threading.Lock()

    def create(self, session: ImportSession) -> ImportSession:
        with self._lock:
            self._prune()
            self._sessions[session.session_id] = session
        return session

    def update(self, session_id: str, **patch: Any) -> Optional[ImportSession]:
        """
        Apply a partial update to a session.

        Returns:
            The updated session, or None if the id is unknown (already pruned)
        """
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                logger.warning("progress_update_unknown_session", session_id=session_id)
                return None
            updated = current.model_copy(update=patch)
            self._sessions[session_id] = updated
            return updated

    def get(self, session_id: str) -> Optional[ImportSession]:
        """Session state, or None for unknown and expired sessions"""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or self._expired(session):
                return None
            return session

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, session: ImportSession, now: Optional[datetime] = None) -> bool:
        if session.completed_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - session.completed_at > self.retention

    def _prune(self):
        now = datetime.now(timezone.utc)
        expired = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.debug("progress_sessions_pruned", count=len(expired))
