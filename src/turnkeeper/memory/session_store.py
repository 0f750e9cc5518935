"""
Session registry.

A :class:`SessionStore` is created once at process start and handed to whoever needs it; it maps
session ids to :class:`~turnkeeper.core.schema.Session` objects.  Sessions are created lazily,
never expire on their own, and only lose their history on an explicit :meth:`clear_history`.

The store guards its own map, but not the sessions inside it: two turns running at the same time
for one session id share (and race on) that session's history and memory.
"""

import logging
import threading
import uuid
from typing import (
    Dict,
    List,
)

from turnkeeper.core.schema import (
    ConversationContext,
    Session,
    SessionRole,
)
from turnkeeper.memory.memory_store import ContextStore

logger = logging.getLogger(__name__)


class SessionStore:
    """Process-wide map from session id to session state."""

    def __init__(self, context_store: ContextStore | None = None) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._context_store = context_store

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def get_or_create(
        self, session_id: str | None = None, role: SessionRole = SessionRole.CUSTOMER
    ) -> Session:
        """
        Return the session for *session_id*, creating it on first reference.

        A new session picks up a previously persisted context when the context store has one
        for the id.  Without an id a fresh one is generated.  *role* only applies to new
        sessions.
        """
        session_id = session_id or str(uuid.uuid4())
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session

            context = None
            if self._context_store is not None:
                context = self._context_store.get(session_id)
            if context is None:
                context = ConversationContext()
                logger.info("Created session %s (%s)", session_id, role.value)
            else:
                logger.info(
                    "Restored session %s with %d stored message(s)",
                    session_id,
                    len(context.history),
                )
            session = Session(id=session_id, role=role, context=context)
            self._sessions[session_id] = session
            return session

    def persist(self, session: Session) -> bool:
        """Write the session's context to the context store, if one is configured."""
        if self._context_store is None:
            return True
        stored = self._context_store.put(session.id, session.context)
        if not stored:
            logger.warning("Could not persist context for session %s", session.id)
        return stored

    def clear_history(self, session_id: str) -> bool:
        """
        Empty the history of *session_id*, keeping its memory.

        Returns *False* when the session is unknown.
        """
        session = self.get(session_id)
        if session is None:
            logger.warning("No session %s to clear", session_id)
            return False
        session.context.clear_history()
        self.persist(session)
        logger.info("Cleared history for session %s", session_id)
        return True
