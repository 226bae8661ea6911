"""
Persistence port for finalized driving sessions.

The driving tracker hands every finalized session to a DrivingSessionStore
and forgets it. Implementations are async so that external stores (Redis)
can be used without blocking the event loop.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import List, Optional

from driving.session import DrivingSession


class DrivingSessionStore(ABC):
    """
    Abstract base class for driving session storage.

    save() may raise on connectivity or operational errors; the tracker
    retries with backoff and counts the failure when retries run out.
    """

    @abstractmethod
    async def save(self, session: DrivingSession) -> None:
        """
        Persist a finalized session. Saving the same id twice overwrites.

        Args:
            session: The finalized session snapshot
        """
        pass

    @abstractmethod
    async def get(self, session_id: str) -> Optional[DrivingSession]:
        """Return a stored session, or None if unknown or expired."""
        pass

    @abstractmethod
    async def list_recent(self, user_ref: str, limit: int = 20) -> List[DrivingSession]:
        """Most recent sessions for a tracked identity, newest first."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check connectivity of the store.

        Returns:
            True if the store is reachable. Must not raise.
        """
        pass


class InMemoryDrivingSessionStore(DrivingSessionStore):
    """Bounded in-process store used when no Redis URL is configured."""

    def __init__(self, max_sessions: int = 1000):
        self._sessions: "OrderedDict[str, DrivingSession]" = OrderedDict()
        self._max_sessions = max_sessions

    async def save(self, session: DrivingSession) -> None:
        self._sessions.pop(session.id, None)
        self._sessions[session.id] = session.snapshot()
        while len(self._sessions) > self._max_sessions:
            self._sessions.popitem(last=False)

    async def get(self, session_id: str) -> Optional[DrivingSession]:
        session = self._sessions.get(session_id)
        return session.snapshot() if session else None

    async def list_recent(self, user_ref: str, limit: int = 20) -> List[DrivingSession]:
        matches = [s for s in reversed(self._sessions.values()) if s.user_ref == user_ref]
        return [s.snapshot() for s in matches[:limit]]

    async def health_check(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._sessions)
