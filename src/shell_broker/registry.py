"""
Session registry - the shells owned by one control connection.

Tracks every session by id plus the single "active" session that
``runCommand`` input is routed to. One registry is built per accepted
connection; there is no process-wide instance.
"""

import asyncio
import uuid
from typing import Callable, Optional

import structlog

from .exceptions import DuplicateSessionError, SessionLimitError, UnknownSessionError
from .models import Session
from .process import ProcessSupervisor

logger = structlog.get_logger()


def generate_session_id() -> str:
    return str(uuid.uuid4())[:8]


class SessionRegistry:
    """Maps session ids to sessions and tracks the active one."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        max_sessions: int = 0,
        id_factory: Callable[[], str] = generate_session_id,
    ):
        self.supervisor = supervisor
        self.max_sessions = max_sessions
        self._id_factory = id_factory
        self._sessions: dict[str, Session] = {}
        self._active_session_id: Optional[str] = None

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_session_id

    @property
    def live_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_running)

    def _new_id(self) -> str:
        session_id = self._id_factory()
        while session_id in self._sessions:
            session_id = self._id_factory()
        return session_id

    async def create(
        self,
        session_id: Optional[str] = None,
        shell_path: Optional[str] = None,
        shell_args: Optional[list[str]] = None,
    ) -> str:
        """
        Spawn a shell, register it and make it active.

        An id whose shell already exited may be reused; the stale record is
        replaced.

        Raises:
            DuplicateSessionError: ``session_id`` belongs to a running shell.
            SessionLimitError: the live shell cap is reached.
            ProcessSpawnError: the shell could not be started.
        """
        if session_id is None:
            session_id = self._new_id()
        else:
            existing = self._sessions.get(session_id)
            if existing is not None and existing.is_running:
                raise DuplicateSessionError(session_id)

        if self.max_sessions and self.live_count >= self.max_sessions:
            raise SessionLimitError(self.max_sessions)

        shell_path = shell_path or self.supervisor.settings.default_shell_path
        shell_args = list(shell_args or [])

        session = Session(id=session_id, shell_path=shell_path, shell_args=shell_args)
        await self.supervisor.spawn(session, shell_path, shell_args)

        self._sessions.pop(session_id, None)
        self._sessions[session_id] = session
        self._active_session_id = session_id
        logger.info("Session created", session_id=session_id, shell_path=shell_path)
        return session_id

    def switch_active(self, session_id: str) -> None:
        """
        Route future input to ``session_id``.

        Raises:
            UnknownSessionError: no session has that id; the active session
                is left unchanged.
        """
        if session_id not in self._sessions:
            raise UnknownSessionError(session_id)
        self._active_session_id = session_id

    def active_session(self) -> Optional[Session]:
        if self._active_session_id is None:
            return None
        return self._sessions.get(self._active_session_id)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def list_all(self) -> list[Session]:
        """Sessions in creation order."""
        return list(self._sessions.values())

    async def close(self, session_id: str, grace_seconds: Optional[float] = None) -> Session:
        """Terminate a session's shell and forget it."""
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)

        await self.supervisor.terminate(session, grace_seconds)
        del self._sessions[session_id]
        if self._active_session_id == session_id:
            self._active_session_id = None

        logger.info("Session closed", session_id=session_id, active_session_id=self._active_session_id)
        return session

    async def close_all(self, grace_seconds: Optional[float] = None) -> None:
        """Terminate every shell owned by this registry."""
        sessions = list(self._sessions.values())
        if not sessions:
            return
        await asyncio.gather(*(self.supervisor.terminate(s, grace_seconds) for s in sessions))
        self._sessions.clear()
        self._active_session_id = None
        logger.info("All sessions closed", count=len(sessions))

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
