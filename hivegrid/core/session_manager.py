"""Registry of live terminal sessions with sequential ids (term-001, term-002, ...)."""

from __future__ import annotations

from typing import Mapping, Optional, Sequence

from hivegrid.constants import DEFAULT_COLS, DEFAULT_ROWS, OUTPUT_BUFFER_MAX_CHUNKS
from hivegrid.core.session import TerminalSession
from hivegrid.logging_config import get_logger

logger = get_logger(__name__)


class TerminalSessionManager:
    def __init__(self, buffer_max_chunks: int = OUTPUT_BUFFER_MAX_CHUNKS) -> None:
        self._sessions: dict[str, TerminalSession] = {}
        self._counter = 0
        self._buffer_max_chunks = buffer_max_chunks

    def _next_id(self) -> str:
        self._counter += 1
        return f"term-{self._counter:03d}"

    async def create(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ) -> tuple[str, TerminalSession]:
        """Start a session and register it. Nothing is registered if the spawn fails."""
        session = TerminalSession(
            command,
            args,
            cwd=cwd,
            env=env,
            cols=cols,
            rows=rows,
            buffer_max_chunks=self._buffer_max_chunks,
        )
        await session.start()
        session_id = self._next_id()
        self._sessions[session_id] = session
        logger.info("[%s] created (%dx%d): %s", session_id, cols, rows, command)
        return session_id, session

    def get(self, session_id: str) -> Optional[TerminalSession]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[TerminalSession]:
        """Forget a session without touching its process."""
        return self._sessions.pop(session_id, None)

    def dispose(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.dispose()
        return True

    def dispose_all(self) -> int:
        count = len(self._sessions)
        for session_id in list(self._sessions):
            self.dispose(session_id)
        return count

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)
