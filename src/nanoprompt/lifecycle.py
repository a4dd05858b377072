"""Quit and close-window decisions for the terminal shell.

The presentation layer asks before it lets the application go away. While
any session still runs, the request is refused and a ``confirm-quit``
event goes out; the UI asks the user and calls ``force_quit`` if they
agree.
"""

from __future__ import annotations

import logging

from nanoprompt.pty.manager import PTYManager
from nanoprompt.session.wire import Wire

logger = logging.getLogger(__name__)


def request_quit(manager: PTYManager, wire: Wire) -> bool:
    """Return True if the application may exit right away."""
    if manager.has_active_sessions():
        logger.info("Quit requested with running sessions, asking for confirmation")
        wire.send_confirm_quit()
        return False
    return True


def request_close_window(manager: PTYManager, wire: Wire) -> bool:
    """Hide the main window unless sessions are still running.

    Returns True if the window was hidden.
    """
    if manager.has_active_sessions():
        wire.send_confirm_quit()
        return False
    wire.send_hide_window()
    return True


def force_quit(manager: PTYManager, wire: Wire) -> None:
    """Kill every session and close the wire."""
    try:
        manager.shutdown()
    finally:
        wire.close()
