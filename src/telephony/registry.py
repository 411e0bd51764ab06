from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from agents.errors import DuplicateSessionError

if TYPE_CHECKING:  # pragma: no cover
    from telephony.bridge import SessionBridge

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """Maps stream ids to their live bridge.

    Note: This is a single-process registry. Sessions are independent, so one
    narrow lock around the mapping is all the coordination needed.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._sessions: dict[str, SessionBridge] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def put(self, session_id: str, bridge: SessionBridge) -> None:
        async with self._lock:
            if session_id in self._sessions:
                raise DuplicateSessionError(f"Session {session_id} is already active")
            self._sessions[session_id] = bridge

    async def get(self, session_id: str) -> SessionBridge | None:
        async with self._lock:
            return self._sessions.get(session_id)

    async def remove(self, session_id: str, bridge: SessionBridge | None = None) -> bool:
        """Drop ``session_id``; with ``bridge`` given, only if it is the registered one."""

        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None or (bridge is not None and current is not bridge):
                return False
            del self._sessions[session_id]
            return True

    async def snapshot(self) -> list[SessionBridge]:
        async with self._lock:
            return list(self._sessions.values())

    async def close_all(self, reason: str) -> None:
        bridges = await self.snapshot()
        if bridges:
            LOGGER.info("Closing %d active session(s): %s", len(bridges), reason)
        await asyncio.gather(*(bridge.close(reason) for bridge in bridges), return_exceptions=True)
