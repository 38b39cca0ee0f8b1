"""
Session Registry
Process-wide lookup of live voice sessions for out-of-band control

The registry carries control messages only (wrap-up notices, forced
close). Audio never flows through it.
"""
import asyncio
import logging
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class ControllableSession(Protocol):
    """What the registry needs from a live session."""

    async def inject_system_message(self, text: str) -> bool: ...

    async def close(self, end_reason: Optional[str] = None) -> None: ...


class SessionRegistry:
    """
    Singleton registry keyed by call session id.
    Use get_instance() rather than the constructor in application code.
    """

    _instance: Optional["SessionRegistry"] = None
    _lock = asyncio.Lock()

    def __init__(self):
        self._sessions: Dict[str, ControllableSession] = {}

    @classmethod
    async def get_instance(cls) -> "SessionRegistry":
        """Get singleton instance (async factory pattern)"""
        if cls._instance is None:
            async with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def register(self, call_session_id: str, session: ControllableSession) -> None:
        existing = self._sessions.get(call_session_id)
        if existing is not None and existing is not session:
            logger.warning(f"Replacing registered session {call_session_id}")
        self._sessions[call_session_id] = session
        logger.debug(f"Registered session {call_session_id} ({len(self._sessions)} active)")

    def unregister(self, call_session_id: str, session: Optional[ControllableSession] = None) -> bool:
        """
        Remove a session.

        With `session` given, only that exact handle is removed, so a late
        teardown cannot evict a newer session registered under the same id.
        """
        current = self._sessions.get(call_session_id)
        if current is None:
            return False
        if session is not None and current is not session:
            return False
        del self._sessions[call_session_id]
        logger.debug(f"Unregistered session {call_session_id} ({len(self._sessions)} active)")
        return True

    def get(self, call_session_id: str) -> Optional[ControllableSession]:
        return self._sessions.get(call_session_id)

    def active_count(self) -> int:
        return len(self._sessions)

    async def inject_system_message(self, call_session_id: str, text: str) -> bool:
        session = self._sessions.get(call_session_id)
        if session is None:
            return False
        return await session.inject_system_message(text)

    async def close_session(self, call_session_id: str, end_reason: Optional[str] = None) -> bool:
        session = self._sessions.get(call_session_id)
        if session is None:
            return False
        await session.close(end_reason)
        return True

    async def shutdown(self) -> None:
        """Close every live session (process shutdown)."""
        sessions = list(self._sessions.items())
        for call_session_id, session in sessions:
            try:
                await session.close(None)
            except Exception as e:
                logger.error(f"Error closing session {call_session_id}: {e}")
        self._sessions.clear()
        logger.info(f"SessionRegistry shutdown, closed {len(sessions)} sessions")
