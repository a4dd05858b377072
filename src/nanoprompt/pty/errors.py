"""Errors raised by the PTY command surface."""

from __future__ import annotations


class PTYError(Exception):
    """Base class for PTY session failures.

    ``session_id`` is set for errors tied to a specific session.
    """

    def __init__(self, message: str, session_id: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def __str__(self) -> str:
        return self.message


class AllocationError(PTYError):
    """Pseudo-terminal allocation, spawn or handle acquisition failed.

    Nothing is left registered when this is raised.
    """


class SessionNotFound(PTYError, KeyError):
    """The session id is unknown or the session was already closed."""

    def __init__(self, session_id: int) -> None:
        super().__init__(f"Session not found: {session_id}", session_id)


class PTYIOError(PTYError, OSError):
    """A write, flush or resize on a live session failed.

    The session stays registered; the caller may retry or close it.
    """


class LockError(PTYError):
    """A registry or session lock could not be acquired in time."""
