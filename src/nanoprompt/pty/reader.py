"""Reader loop: drains one session's PTY output on a background thread."""

from __future__ import annotations

import logging
import os
import threading
from typing import TYPE_CHECKING

from nanoprompt.pty.encoding import encode_output

if TYPE_CHECKING:
    from nanoprompt.pty.session import PTYSession
    from nanoprompt.session.wire import Wire

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class ReaderLoop(threading.Thread):
    """Blocking reader for a session's master-side output.

    Publishes ``pty-output`` for every non-empty chunk, in read order. A
    zero-length read or a read error ends the loop: the session is marked
    exited and a single ``pty-exit`` is published. Owns ``fd`` and closes it
    on the way out. Never touches the registry lock.
    """

    def __init__(
        self,
        session: PTYSession,
        fd: int,
        wire: Wire,
        chunk_size: int = READ_CHUNK_SIZE,
    ) -> None:
        super().__init__(name=f"pty-reader-{session.id}", daemon=True)
        self._session = session
        self._fd = fd
        self._wire = wire
        self._chunk_size = chunk_size
        self.bytes_read = 0

    def run(self) -> None:
        session_id = self._session.id
        try:
            while True:
                try:
                    data = os.read(self._fd, self._chunk_size)
                except OSError as e:
                    # EIO on Linux once the subordinate side is gone
                    logger.debug("PTY reader %d ended: %s", session_id, e)
                    break

                if not data:
                    break

                self.bytes_read += len(data)
                self._wire.send_pty_output(session_id, encode_output(data))
        finally:
            self._finish()

    def _finish(self) -> None:
        session = self._session
        try:
            os.close(self._fd)
        except OSError:
            pass

        session.mark_exited()
        # Exit status is only logged; the event carries the id alone.
        exit_code = session.proc.poll()
        logger.info(
            "PTY session %d exited (code=%s, %d bytes read)",
            session.id,
            exit_code,
            self.bytes_read,
        )
        self._wire.send_pty_exit(session.id)
