"""
TickCache — share loaded sessions between trials and concurrent runs.

Every trial of every run replays the same sessions, so they are loaded once
and handed out as immutable Session objects keyed by session id.
"""

import threading
from typing import Any, Sequence

from tick_optimizer.data.models import Session
from tick_optimizer.data.source import TickSource
from tick_optimizer.logging import get_logger

logger = get_logger(__name__)


class TickCache:
    """
    Read-through session cache in front of a TickSource.

    Thread-safe: runs executing in worker threads may request the same
    session concurrently; the source is consulted at most once per id
    while the entry stays cached.
    """

    def __init__(self, source: TickSource, max_sessions: int = 64) -> None:
        self.source = source
        self._sessions: dict[str, Session] = {}
        self._max_sessions = max_sessions
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                self._hits += 1
                return session
            self._misses += 1
            session = self.source.get_session(session_id)
            self._put(session_id, session)
            return session

    def get_many(self, session_ids: Sequence[str]) -> tuple[Session, ...]:
        return tuple(self.get(sid) for sid in session_ids)

    def _put(self, session_id: str, session: Session) -> None:
        if len(self._sessions) >= self._max_sessions:
            # Remove oldest 10%
            remove_count = max(1, self._max_sessions // 10)
            for key in list(self._sessions.keys())[:remove_count]:
                del self._sessions[key]
            logger.debug("Tick cache eviction", evicted=remove_count)
        self._sessions[session_id] = session

    def invalidate(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._hits = 0
            self._misses = 0

    @property
    def stats(self) -> dict[str, Any]:
        """Cache statistics."""
        total = self._hits + self._misses
        return {
            "size": len(self._sessions),
            "max_sessions": self._max_sessions,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
        }
