"""PTY session: one pseudo-terminal pair with an attached shell process."""

from __future__ import annotations

import contextlib
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, BinaryIO, Iterator

from nanoprompt.pty.errors import AllocationError, LockError, PTYIOError, SessionNotFound

if TYPE_CHECKING:
    from nanoprompt.pty.reader import ReaderLoop

logger = logging.getLogger(__name__)

MAX_DIMENSION = 0xFFFF


class SessionState(enum.Enum):
    """Lifecycle states for a registered PTY session.

    A session leaves RUNNING exactly once, from its reader loop. Removal
    from the registry is a separate step done only by ``close``.
    """

    RUNNING = "running"
    EXITED = "exited"  # Output stream ended, not yet closed


@contextlib.contextmanager
def locked(
    lock: threading.Lock,
    timeout: float | None,
    what: str,
    session_id: int | None = None,
) -> Iterator[None]:
    """Hold ``lock``, raising LockError if it is not acquired within ``timeout``."""
    acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
    if not acquired:
        raise LockError(f"Timed out waiting for {what} lock", session_id)
    try:
        yield
    finally:
        lock.release()


def check_dimensions(rows: int, cols: int) -> None:
    for name, value in (("rows", rows), ("cols", cols)):
        if not 0 <= value <= MAX_DIMENSION:
            raise ValueError(f"{name} must be between 0 and {MAX_DIMENSION}, got {value}")


def set_winsize(fd: int, rows: int, cols: int) -> None:
    """Set the character-cell size of a PTY (pixel dimensions zero)."""
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def get_winsize(fd: int) -> tuple[int, int]:
    """Return ``(rows, cols)`` of a PTY."""
    packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
    rows, cols, _, _ = struct.unpack("HHHH", packed)
    return rows, cols


def default_shell(override: str | None = None) -> str:
    """The platform default interactive shell."""
    return override or os.environ.get("SHELL") or "/bin/sh"


def build_env(
    term: str = "xterm-256color",
    colorterm: str = "truecolor",
    extra: dict[str, str] | None = None,
) -> dict[str, str]:
    """Inherited environment with the terminal capability overrides on top."""
    env = {**os.environ}
    env["TERM"] = term
    env["COLORTERM"] = colorterm
    if extra:
        env.update(extra)
    return env


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); fd 0 is already the subordinate side.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _kill_and_reap(proc: subprocess.Popen, timeout: float = 2.0) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)
    with contextlib.suppress(subprocess.TimeoutExpired):
        proc.wait(timeout=timeout)


@dataclass
class PTYHandles:
    """OS handles produced by :func:`open_pty`, before a session id exists."""

    master_fd: int
    writer: BinaryIO
    reader_fd: int
    proc: subprocess.Popen

    def release(self, close_reader: bool = True) -> None:
        """Kill the child and close the handles. Used to roll back a failed create."""
        _kill_and_reap(self.proc)
        with contextlib.suppress(OSError):
            self.writer.close()
        fds = [self.reader_fd, self.master_fd] if close_reader else [self.master_fd]
        for fd in fds:
            with contextlib.suppress(OSError):
                os.close(fd)


def open_pty(
    command: list[str],
    rows: int,
    cols: int,
    env: dict[str, str],
    cwd: str | None = None,
) -> PTYHandles:
    """Allocate a PTY pair sized ``rows x cols`` and spawn ``command`` on it.

    The child runs in its own session with the PTY as controlling terminal.
    The parent's copy of the subordinate fd is closed before returning so
    the master sees end-of-stream once the child is gone.

    Raises:
        AllocationError: if openpty, spawn or handle duplication fails.
    """
    try:
        master_fd, slave_fd = pty.openpty()
    except OSError as e:
        raise AllocationError(f"Failed to allocate pseudo-terminal: {e}") from e

    try:
        set_winsize(master_fd, rows, cols)
        # preexec_fn runs after start_new_session's setsid()
        proc = subprocess.Popen(
            command,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
            env=env,
            cwd=cwd,
        )
    except (OSError, subprocess.SubprocessError) as e:
        os.close(master_fd)
        raise AllocationError(f"Failed to spawn {' '.join(command)}: {e}") from e
    finally:
        # Parent always closes slave fd
        os.close(slave_fd)

    writer_fd = reader_fd = -1
    try:
        writer_fd = os.dup(master_fd)
        reader_fd = os.dup(master_fd)
        writer = os.fdopen(writer_fd, "wb")
    except OSError as e:
        _kill_and_reap(proc)
        for fd in (writer_fd, reader_fd, master_fd):
            if fd >= 0:
                with contextlib.suppress(OSError):
                    os.close(fd)
        raise AllocationError(f"Failed to acquire PTY handles: {e}") from e

    return PTYHandles(master_fd=master_fd, writer=writer, reader_fd=reader_fd, proc=proc)


@dataclass
class PTYSession:
    """A registered pseudo-terminal session.

    Owns the master fd (resize), the writer (input) and the child process.
    The reader loop holds its own duplicate of the master fd and is the only
    code that moves ``state`` to EXITED. Writes and resizes run under the
    session's own lock so independent sessions never contend.
    """

    id: int
    command: list[str]
    master_fd: int
    writer: BinaryIO
    proc: subprocess.Popen
    rows: int = 24
    cols: int = 80
    lock_timeout: float | None = 5.0
    created_at: float = field(default_factory=time.time)

    reader: ReaderLoop | None = field(default=None, init=False, repr=False)
    _state: SessionState = field(default=SessionState.RUNNING, init=False)
    _closed: bool = field(default=False, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def from_handles(
        cls,
        session_id: int,
        command: list[str],
        handles: PTYHandles,
        rows: int,
        cols: int,
        lock_timeout: float | None = 5.0,
    ) -> PTYSession:
        return cls(
            id=session_id,
            command=command,
            master_fd=handles.master_fd,
            writer=handles.writer,
            proc=handles.proc,
            rows=rows,
            cols=cols,
            lock_timeout=lock_timeout,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def exited(self) -> bool:
        return self._state is SessionState.EXITED

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pid(self) -> int:
        return self.proc.pid

    def mark_exited(self) -> None:
        """Move RUNNING -> EXITED. Only the session's reader loop calls this."""
        self._state = SessionState.EXITED

    def write(self, data: bytes) -> None:
        """Write all of ``data`` to the process input, then flush."""
        with locked(self._lock, self.lock_timeout, "session", self.id):
            if self._closed:
                raise SessionNotFound(self.id)
            try:
                self.writer.write(data)
                self.writer.flush()
            except OSError as e:
                raise PTYIOError(f"Write to session {self.id} failed: {e}", self.id) from e

    def resize(self, rows: int, cols: int) -> None:
        """Resize the terminal to ``rows x cols`` character cells."""
        with locked(self._lock, self.lock_timeout, "session", self.id):
            if self._closed:
                raise SessionNotFound(self.id)
            try:
                set_winsize(self.master_fd, rows, cols)
            except OSError as e:
                raise PTYIOError(f"Resize of session {self.id} failed: {e}", self.id) from e
            self.rows, self.cols = rows, cols

    def kill(self, timeout: float = 2.0) -> None:
        """Kill the process group and release the master-side handles.

        Best-effort: kill, reap and lock failures are logged, never raised.
        The group is signalled before the session lock is taken, so a write
        blocked on a full input queue fails and lets go of the lock. The
        reader loop is not joined; it sees end-of-stream on its own.
        """
        if self._closed:
            return
        try:
            os.killpg(self.proc.pid, signal.SIGKILL)
            logger.info("Killed PTY session %d (pgid=%d)", self.id, self.proc.pid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self.proc.pid)
        except OSError as e:
            logger.warning("Error killing PTY session %d: %s", self.id, e)

        # Reap to avoid zombies
        try:
            self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("PTY session %d did not exit within %.1fs", self.id, timeout)

        try:
            with locked(self._lock, self.lock_timeout, "session", self.id):
                if self._closed:
                    return
                self._closed = True
                try:
                    self.writer.close()
                except OSError as e:
                    logger.debug("Closing writer of session %d: %s", self.id, e)
                try:
                    os.close(self.master_fd)
                except OSError:
                    pass
        except LockError as e:
            logger.warning("Handles of session %d left open: %s", self.id, e)

    def info(self) -> dict[str, object]:
        return {
            "id": self.id,
            "pid": self.pid,
            "command": " ".join(self.command),
            "state": self._state.value,
            "rows": self.rows,
            "cols": self.cols,
            "created_at": self.created_at,
        }
