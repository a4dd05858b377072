"""PTY process management: pseudo-terminal sessions for the terminal shell.

Every tab of the shell is a PTY session: a pseudo-terminal pair with the
default interactive shell attached, drained by its own reader thread and
driven through the PTYManager command surface (create, write, resize,
close).
"""

from nanoprompt.pty.encoding import decode_output, encode_output
from nanoprompt.pty.errors import (
    AllocationError,
    LockError,
    PTYError,
    PTYIOError,
    SessionNotFound,
)
from nanoprompt.pty.manager import PTYManager
from nanoprompt.pty.reader import ReaderLoop
from nanoprompt.pty.session import PTYSession, SessionState

__all__ = [
    "AllocationError",
    "LockError",
    "PTYError",
    "PTYIOError",
    "PTYManager",
    "PTYSession",
    "ReaderLoop",
    "SessionNotFound",
    "SessionState",
    "decode_output",
    "encode_output",
]
