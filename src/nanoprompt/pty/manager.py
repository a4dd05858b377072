"""PTY Manager: the session registry and the command surface."""

from __future__ import annotations

import logging
import threading
from contextlib import AbstractContextManager
from typing import Any

from nanoprompt.config import PTYConfig
from nanoprompt.pty.errors import AllocationError, PTYError, SessionNotFound
from nanoprompt.pty.reader import ReaderLoop
from nanoprompt.pty.session import (
    PTYSession,
    SessionState,
    build_env,
    check_dimensions,
    default_shell,
    locked,
    open_pty,
)
from nanoprompt.session.wire import Wire

logger = logging.getLogger(__name__)

MAX_SESSION_ID = 0xFFFFFFFF


class PTYManager:
    """Manages the lifecycle of every PTY session of the process.

    The manager ensures:
    - Session ids start at 1, strictly increase and are never reused
    - A session stays registered after its process dies, until ``close``
    - All sessions are killed on ``shutdown`` (no orphan processes)
    - Output and exit notifications are published on the Wire

    The registry lock only guards lookups, inserts, removals and id
    allocation. Writes and resizes run under each session's own lock, and
    reader threads never take the registry lock.
    """

    def __init__(self, wire: Wire | None = None, config: PTYConfig | None = None) -> None:
        self.wire = wire if wire is not None else Wire()
        self.config = config or PTYConfig()
        self._sessions: dict[int, PTYSession] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def _registry(self) -> AbstractContextManager[None]:
        return locked(self._lock, self.config.lock_timeout, "registry")

    def _allocate_id(self) -> int:
        with self._registry():
            session_id = self._next_id
            if session_id > MAX_SESSION_ID:
                raise AllocationError("Session identifiers exhausted")
            self._next_id += 1
        return session_id

    def _lookup(self, session_id: int) -> PTYSession:
        with self._registry():
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def create(self, rows: int, cols: int, command: list[str] | None = None) -> int:
        """Spawn a shell on a new ``rows x cols`` PTY and return its session id.

        Args:
            rows: Terminal height in character cells.
            cols: Terminal width in character cells.
            command: Command and arguments; defaults to the platform shell.

        Raises:
            AllocationError: if the PTY, the process or its handles could not
                be set up. Nothing is left registered.
        """
        check_dimensions(rows, cols)
        argv = list(command) if command else [default_shell(self.config.shell)]
        env = build_env(self.config.term, self.config.colorterm, self.config.env)

        handles = open_pty(argv, rows, cols, env)
        try:
            session_id = self._allocate_id()
        except Exception:
            handles.release()
            raise

        session = PTYSession.from_handles(
            session_id, argv, handles, rows, cols, lock_timeout=self.config.lock_timeout
        )
        session.reader = ReaderLoop(
            session, handles.reader_fd, self.wire, chunk_size=self.config.read_chunk_size
        )
        try:
            session.reader.start()
        except RuntimeError as e:
            handles.release()
            raise AllocationError(f"Failed to start reader for session {session_id}: {e}") from e
        try:
            with self._registry():
                self._sessions[session_id] = session
        except Exception:
            # The running reader owns reader_fd and closes it itself
            handles.release(close_reader=False)
            raise

        logger.info(
            "PTY session %d started: pid=%d size=%dx%d cmd=%s",
            session_id,
            session.pid,
            cols,
            rows,
            " ".join(argv),
        )
        return session_id

    def write(self, session_id: int, data: str | bytes) -> None:
        """Send input to a session.

        Raises:
            SessionNotFound: unknown or closed id.
            PTYIOError: the write or flush failed; the session stays registered.
        """
        payload = data.encode("utf-8") if isinstance(data, str) else data
        self._lookup(session_id).write(payload)

    def resize(self, session_id: int, rows: int, cols: int) -> None:
        """Resize a session's terminal.

        Raises:
            SessionNotFound: unknown or closed id.
            PTYIOError: the resize ioctl failed.
        """
        check_dimensions(rows, cols)
        self._lookup(session_id).resize(rows, cols)
        logger.debug("Resized PTY session %d to %dx%d", session_id, cols, rows)

    def close(self, session_id: int) -> None:
        """Kill a session and remove it from tracking. Unknown ids are a no-op."""
        with self._registry():
            session = self._sessions.pop(session_id, None)
        if session:
            session.kill(timeout=self.config.kill_timeout)
            logger.info("Closed PTY session %d", session_id)

    def has_active_sessions(self) -> bool:
        """True if any registered session's process is still running."""
        with self._registry():
            sessions = list(self._sessions.values())
        return any(s.state is SessionState.RUNNING for s in sessions)

    def get(self, session_id: int) -> PTYSession | None:
        """Get a session by ID."""
        with self._registry():
            return self._sessions.get(session_id)

    def list_sessions(self) -> list[dict[str, Any]]:
        """Describe all registered sessions, running or exited."""
        with self._registry():
            sessions = list(self._sessions.values())
        return [s.info() for s in sessions]

    def shutdown(self) -> None:
        """Kill all sessions. Called on force-quit and process exit."""
        with self._registry():
            session_ids = list(self._sessions.keys())
        for session_id in session_ids:
            try:
                self.close(session_id)
            except PTYError as e:
                logger.error("Failed to close PTY session %d: %s", session_id, e)
        logger.info("All PTY sessions cleaned up")

    def __len__(self) -> int:
        with self._registry():
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._registry():
            return session_id in self._sessions

    def __enter__(self) -> PTYManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
