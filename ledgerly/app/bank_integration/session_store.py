"""
OAuth flow session storage

Holds the short-lived state that links "initiate connection" to the provider
callback (user id, provider name, bank list, consent and bank ids). Entries
expire after a fixed TTL and are never persisted.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .errors import SessionExpiredError, SessionNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(minutes=30)


@dataclass
class _Entry:
    data: Dict[str, Any]
    expires_at: datetime


class SessionStore(ABC):
    """
    Keyed store for OAuth flow state.

    Implementations other than the in-memory one (Redis, database table) can
    be swapped in wherever a SessionStore is injected.
    """

    @abstractmethod
    def store(self, session_id: str, data: Dict[str, Any]) -> None:
        """Create or overwrite a session, starting a fresh TTL."""

    @abstractmethod
    def get(self, session_id: str) -> Dict[str, Any]:
        """
        Return the session payload.

        Raises:
            SessionNotFoundError: No such session
            SessionExpiredError: Session is past its expiry (it is evicted)
        """

    @abstractmethod
    def update(self, session_id: str, data: Dict[str, Any]) -> None:
        """Replace the payload of an existing, live session and reset its TTL."""

    @abstractmethod
    def delete(self, session_id: str) -> None:
        pass

    @abstractmethod
    def cleanup_expired(self) -> int:
        """Remove expired sessions, returning how many were removed."""


class InMemorySessionStore(SessionStore):
    """Process-local session store guarded by a lock."""

    def __init__(
        self,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.ttl = ttl
        self._clock = clock or datetime.utcnow
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def store(self, session_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._entries[session_id] = _Entry(dict(data), self._clock() + self.ttl)

    def get(self, session_id: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._live_entry(session_id).data)

    def update(self, session_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            entry = self._live_entry(session_id)
            entry.data = dict(data)
            entry.expires_at = self._clock() + self.ttl

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def cleanup_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.expires_at < now]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.info(f"Removed {len(expired)} expired banking sessions")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def _live_entry(self, session_id: str) -> _Entry:
        # Caller holds the lock
        entry = self._entries.get(session_id)
        if entry is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        if entry.expires_at < self._clock():
            del self._entries[session_id]
            raise SessionExpiredError(f"Session {session_id} has expired")

        return entry
