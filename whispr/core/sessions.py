"""
Map session registry.

Architecture decision: one SessionStore instance per process, shared by
all requests through FastAPI's dependency injection (get_session_store).
Each MapSession owns its own state; nothing is shared across sessions.

Sessions are closed explicitly (DELETE /api/v1/sessions/{id}), all at
once on shutdown via the app lifespan, or by the store itself:
  • idle for longer than SESSION_IDLE_TTL_S (checked on every create/get)
  • least recently used once MAX_SESSIONS are live
"""

import logging
import time
from typing import Callable, Optional

import httpx

from whispr.core.config import settings
from whispr.models.whisper import Coordinate
from whispr.services.catalog import CatalogMatcher
from whispr.services.content_fetcher import ContentFetcher
from whispr.services.geolocation import GeolocationProbe, IPLookupSource, source_for
from whispr.services.reconciler import MapSession

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Creates, tracks and tears down map sessions.

    ``transport`` is handed to every outbound httpx client the store's
    sessions create; tests use it to plug in an httpx.MockTransport.
    ``clock`` returns seconds and is only compared with itself.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        idle_ttl_s: Optional[float] = None,
        max_sessions: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions: dict[str, MapSession] = {}
        self._last_seen: dict[str, float] = {}
        self._transport = transport
        self.idle_ttl_s = idle_ttl_s if idle_ttl_s is not None else settings.session_idle_ttl_s
        self.max_sessions = max_sessions if max_sessions is not None else settings.max_sessions
        self.clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def _touch(self, session_id: str) -> None:
        self._last_seen[session_id] = self.clock()

    def evict_expired(self) -> int:
        """Close every session idle for longer than ``idle_ttl_s``."""
        if self.idle_ttl_s <= 0:
            return 0
        cutoff = self.clock() - self.idle_ttl_s
        expired = [sid for sid, seen in self._last_seen.items() if seen < cutoff]
        for session_id in expired:
            logger.info("Map session %s idle for over %.0fs; closing", session_id, self.idle_ttl_s)
            self.close(session_id)
        return len(expired)

    def _make_room(self) -> None:
        while self._sessions and len(self._sessions) >= self.max_sessions:
            oldest = min(self._last_seen, key=self._last_seen.__getitem__)
            logger.warning("Session limit (%d) reached; closing least recently used %s",
                           self.max_sessions, oldest)
            self.close(oldest)

    def create(
        self,
        position: Optional[Coordinate] = None,
        geolocation_error: Optional[str] = None,
    ) -> MapSession:
        """Build a session wired to the configured sources. Not started yet."""
        self.evict_expired()
        self._make_room()

        fetcher = ContentFetcher(transport=self._transport)
        source = source_for(position, geolocation_error)
        if isinstance(source, IPLookupSource):
            source = IPLookupSource(source.url, transport=self._transport)
        matcher = CatalogMatcher(fetcher=fetcher) if settings.catalog_source else None

        session = MapSession(GeolocationProbe(source), fetcher, matcher)
        self._sessions[session.id] = session
        self._touch(session.id)
        logger.info("Created map session %s (%d live)", session.id, len(self._sessions))
        return session

    def get(self, session_id: str) -> Optional[MapSession]:
        """Look up a live session and mark it as used."""
        self.evict_expired()
        session = self._sessions.get(session_id)
        if session is not None:
            self._touch(session_id)
        return session

    def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)
        logger.info("All map sessions closed")


# Module-level singleton: all app code references this object
session_store = SessionStore()


def get_session_store() -> SessionStore:
    """FastAPI dependency — inject the session registry into route handlers."""
    return session_store
