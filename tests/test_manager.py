"""Tests for nanoprompt.pty.manager.PTYManager against real pseudo-terminals."""

from __future__ import annotations

import os
import queue
import threading
import time
from collections.abc import Iterator

import pytest

from nanoprompt.config import PTYConfig
from nanoprompt.pty.encoding import decode_output
from nanoprompt.pty.errors import (
    AllocationError,
    LockError,
    PTYError,
    PTYIOError,
    SessionNotFound,
)
from nanoprompt.pty.manager import PTYManager
from nanoprompt.pty.session import SessionState, get_winsize
from nanoprompt.session.wire import EventType, Wire, WireEvent

SH = "/bin/sh"

pytestmark = pytest.mark.skipif(not os.path.exists(SH), reason="needs /bin/sh")


@pytest.fixture
def wire() -> Wire:
    return Wire()


@pytest.fixture
def events(wire: Wire) -> queue.Queue[WireEvent | None]:
    return wire.subscribe()


@pytest.fixture
def manager(wire: Wire) -> Iterator[PTYManager]:
    mgr = PTYManager(wire=wire, config=PTYConfig(shell=SH))
    yield mgr
    mgr.shutdown()


def _collect(
    events: queue.Queue[WireEvent | None],
    session_id: int,
    until: bytes | None = None,
    timeout: float = 10.0,
) -> tuple[bytes, int]:
    """Gather output of one session until ``until`` shows up or it exits.

    Returns (output, number of exit events seen).
    """
    output = b""
    exits = 0
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            event = events.get(timeout=0.1)
        except queue.Empty:
            continue
        if event is None or event.data.get("id") != session_id:
            continue
        if event.type == EventType.PTY_OUTPUT:
            output += decode_output(event.data["data"])
            if until is not None and until in output:
                break
        elif event.type == EventType.PTY_EXIT:
            exits += 1
            break
    return output, exits


def _late_events(
    events: queue.Queue[WireEvent | None], session_id: int, wait: float = 0.3
) -> list[WireEvent]:
    time.sleep(wait)
    late = []
    while not events.empty():
        event = events.get_nowait()
        if event is not None and event.data.get("id") == session_id:
            late.append(event)
    return late


def _swap_for_read_only(fd: int) -> None:
    """Point ``fd`` at a read-only /dev/null so writes and ioctls on it fail."""
    devnull = os.open(os.devnull, os.O_RDONLY)
    try:
        os.dup2(devnull, fd)
    finally:
        os.close(devnull)


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


class TestCreate:
    def test_ids_start_at_one_and_increase(self, manager: PTYManager) -> None:
        ids = [manager.create(24, 80) for _ in range(3)]
        assert ids == [1, 2, 3]

    def test_ids_never_reused(self, manager: PTYManager) -> None:
        first = manager.create(24, 80)
        manager.close(first)
        second = manager.create(24, 80)
        assert second == first + 1

    def test_session_registered_and_running(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        assert sid in manager
        assert len(manager) == 1
        session = manager.get(sid)
        assert session is not None
        assert session.state is SessionState.RUNNING
        assert session.command == [SH]

    def test_initial_size(self, manager: PTYManager) -> None:
        sid = manager.create(30, 120)
        session = manager.get(sid)
        assert session is not None
        assert get_winsize(session.master_fd) == (30, 120)

    def test_environment_overrides(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        sid = manager.create(24, 80, [SH, "-c", 'echo "T=$TERM C=$COLORTERM"'])
        output, _ = _collect(events, sid)
        assert b"T=xterm-256color C=truecolor" in output

    def test_inherited_environment_passes_through(
        self,
        manager: PTYManager,
        events: queue.Queue[WireEvent | None],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("NANOPROMPT_TEST_VAR", "kept")
        sid = manager.create(24, 80, [SH, "-c", 'echo "V=$NANOPROMPT_TEST_VAR"'])
        output, _ = _collect(events, sid)
        assert b"V=kept" in output

    def test_spawn_failure_leaves_nothing_registered(self, manager: PTYManager) -> None:
        with pytest.raises(AllocationError) as exc_info:
            manager.create(24, 80, ["/nonexistent/definitely-not-a-shell"])
        assert isinstance(exc_info.value.__cause__, OSError)
        assert len(manager) == 0
        # A failed spawn does not consume an id
        assert manager.create(24, 80) == 1

    def test_invalid_dimensions(self, manager: PTYManager) -> None:
        with pytest.raises(ValueError):
            manager.create(70_000, 80)
        with pytest.raises(ValueError):
            manager.create(24, -1)
        assert len(manager) == 0


# ---------------------------------------------------------------------------
# write / resize
# ---------------------------------------------------------------------------


class TestWrite:
    def test_input_reaches_shell(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        sid = manager.create(24, 80)
        # Only the evaluated form proves the shell ran it (the echo shows the raw text)
        manager.write(sid, "echo marker_$((40+2))\n")
        output, _ = _collect(events, sid, until=b"marker_42")
        assert b"marker_42" in output

    def test_write_bytes(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        sid = manager.create(24, 80)
        manager.write(sid, b"echo bytes_$((2*3))\n")
        output, _ = _collect(events, sid, until=b"bytes_6")
        assert b"bytes_6" in output

    def test_unknown_id(self, manager: PTYManager) -> None:
        with pytest.raises(SessionNotFound) as exc_info:
            manager.write(99, "x")
        assert exc_info.value.session_id == 99
        assert isinstance(exc_info.value, KeyError)

    def test_failed_write_keeps_session(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        session = manager.get(sid)
        assert session is not None
        _swap_for_read_only(session.writer.fileno())

        with pytest.raises(PTYIOError) as exc_info:
            manager.write(sid, "ls\n")
        assert exc_info.value.session_id == sid
        assert sid in manager
        assert session.state is SessionState.RUNNING


class TestResize:
    def test_resize_updates_winsize(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        sid = manager.create(24, 80)
        manager.resize(sid, 40, 100)
        session = manager.get(sid)
        assert session is not None
        assert get_winsize(session.master_fd) == (40, 100)
        assert (session.rows, session.cols) == (40, 100)

        manager.write(sid, "stty size\n")
        output, _ = _collect(events, sid, until=b"40 100")
        assert b"40 100" in output

    def test_resize_keeps_state(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        manager.resize(sid, 10, 10)
        session = manager.get(sid)
        assert session is not None
        assert session.state is SessionState.RUNNING

    def test_unknown_id(self, manager: PTYManager) -> None:
        with pytest.raises(SessionNotFound):
            manager.resize(5, 24, 80)

    def test_invalid_dimensions(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        with pytest.raises(ValueError):
            manager.resize(sid, 24, 0x10000)

    def test_failed_resize_keeps_session(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        session = manager.get(sid)
        assert session is not None
        # /dev/null is not a terminal, so the winsize ioctl fails
        _swap_for_read_only(session.master_fd)

        with pytest.raises(PTYIOError):
            manager.resize(sid, 40, 100)
        assert sid in manager
        assert (session.rows, session.cols) == (24, 80)


# ---------------------------------------------------------------------------
# close
# ---------------------------------------------------------------------------


class TestClose:
    def test_close_removes_session(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        manager.close(sid)
        assert sid not in manager
        assert manager.get(sid) is None

    def test_write_and_resize_after_close(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        manager.close(sid)
        with pytest.raises(SessionNotFound):
            manager.write(sid, "ls\n")
        with pytest.raises(SessionNotFound):
            manager.resize(sid, 24, 80)

    def test_close_is_idempotent(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        manager.close(sid)
        manager.close(sid)
        manager.close(12345)

    def test_close_kills_process(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        session = manager.get(sid)
        assert session is not None
        manager.close(sid)
        assert session.proc.poll() is not None
        assert session.closed

    def test_kill_produces_single_exit(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        sid = manager.create(24, 80)
        manager.close(sid)
        _, exits = _collect(events, sid)
        assert exits == 1
        assert _late_events(events, sid) == []

    def test_closed_session_write_raises_not_found(self, manager: PTYManager) -> None:
        """A session object closed behind a caller's back reports NotFound."""
        sid = manager.create(24, 80)
        session = manager.get(sid)
        assert session is not None
        manager.close(sid)
        with pytest.raises(SessionNotFound):
            session.write(b"x")

    def test_close_while_write_is_blocked(self, wire: Wire) -> None:
        mgr = PTYManager(wire=wire, config=PTYConfig(shell=SH, lock_timeout=1.0))
        sid = mgr.create(24, 80, [SH, "-c", "stty -icanon -echo; sleep 30"])
        session = mgr.get(sid)
        assert session is not None
        time.sleep(0.5)

        # The child never reads, so this fills the input queue and blocks
        # while holding the session lock
        failures: list[PTYError] = []

        def _flood() -> None:
            try:
                mgr.write(sid, b"x" * (2 * 1024 * 1024))
            except PTYError as e:
                failures.append(e)

        flood = threading.Thread(target=_flood, daemon=True)
        flood.start()
        time.sleep(0.3)
        assert flood.is_alive()

        mgr.close(sid)

        flood.join(timeout=5)
        assert not flood.is_alive()
        assert session.proc.poll() is not None
        assert session.closed
        assert sid not in mgr
        assert not mgr.has_active_sessions()
        assert failures and isinstance(failures[0], PTYIOError)
        mgr.shutdown()


# ---------------------------------------------------------------------------
# exit detection / has_active_sessions
# ---------------------------------------------------------------------------


class TestExit:
    def test_normal_exit_single_event(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        sid = manager.create(24, 80, [SH, "-c", "printf hello"])
        output, exits = _collect(events, sid)
        assert b"hello" in output
        assert exits == 1
        assert _late_events(events, sid) == []

    def test_non_zero_exit_single_event(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        sid = manager.create(24, 80, [SH, "-c", "exit 3"])
        _, exits = _collect(events, sid)
        assert exits == 1
        assert _late_events(events, sid) == []

    def test_shell_exit_command(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        sid = manager.create(24, 80)
        manager.write(sid, "exit\n")
        _, exits = _collect(events, sid)
        assert exits == 1

    def test_exited_session_stays_registered(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        sid = manager.create(24, 80, [SH, "-c", "exit 0"])
        _collect(events, sid)
        session = manager.get(sid)
        assert session is not None
        assert session.state is SessionState.EXITED
        assert sid in manager

    def test_has_active_sessions(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        assert manager.has_active_sessions() is False
        sid = manager.create(24, 80, [SH, "-c", "read line"])
        assert manager.has_active_sessions() is True

        manager.write(sid, "done\n")
        _, exits = _collect(events, sid)
        assert exits == 1
        # Observed exit, not yet closed
        assert sid in manager
        assert manager.has_active_sessions() is False

    def test_has_active_sessions_mixed(
        self, manager: PTYManager, events: queue.Queue[WireEvent | None]
    ) -> None:
        done = manager.create(24, 80, [SH, "-c", "exit 0"])
        manager.create(24, 80)
        _collect(events, done)
        assert manager.has_active_sessions() is True


# ---------------------------------------------------------------------------
# registry helpers / errors
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_list_sessions(self, manager: PTYManager) -> None:
        sid = manager.create(24, 80)
        infos = manager.list_sessions()
        assert len(infos) == 1
        info = infos[0]
        assert info["id"] == sid
        assert info["command"] == SH
        assert info["state"] == "running"
        assert (info["rows"], info["cols"]) == (24, 80)
        assert isinstance(info["pid"], int)

    def test_shutdown_closes_all(self, manager: PTYManager) -> None:
        sessions = [manager.create(24, 80) for _ in range(3)]
        procs = [manager.get(sid).proc for sid in sessions]  # type: ignore[union-attr]
        manager.shutdown()
        assert len(manager) == 0
        assert all(p.poll() is not None for p in procs)

    def test_shutdown_continues_past_failed_close(
        self, manager: PTYManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        first = manager.create(24, 80)
        second = manager.create(24, 80)
        stuck = manager.get(first)
        other = manager.get(second)
        assert stuck is not None and other is not None

        def _fail(timeout: float = 2.0) -> None:
            raise LockError("Timed out waiting for session lock", first)

        monkeypatch.setattr(stuck, "kill", _fail)
        manager.shutdown()

        assert len(manager) == 0
        assert other.proc.poll() is not None
        monkeypatch.undo()
        stuck.kill()

    def test_context_manager(self, wire: Wire) -> None:
        with PTYManager(wire=wire, config=PTYConfig(shell=SH)) as mgr:
            sid = mgr.create(24, 80)
            proc = mgr.get(sid).proc  # type: ignore[union-attr]
        assert len(mgr) == 0
        assert proc.poll() is not None

    def test_default_wire_created(self) -> None:
        mgr = PTYManager(config=PTYConfig(shell=SH))
        assert isinstance(mgr.wire, Wire)

    def test_lock_timeout_raises_lock_error(self, wire: Wire) -> None:
        mgr = PTYManager(wire=wire, config=PTYConfig(shell=SH, lock_timeout=0.05))
        mgr._lock.acquire()
        try:
            with pytest.raises(LockError):
                mgr.write(1, "x")
            with pytest.raises(LockError):
                mgr.has_active_sessions()
        finally:
            mgr._lock.release()

    def test_error_hierarchy(self) -> None:
        assert issubclass(AllocationError, PTYError)
        assert issubclass(SessionNotFound, PTYError)
        assert issubclass(PTYIOError, PTYError)
        assert issubclass(PTYIOError, OSError)
        assert issubclass(LockError, PTYError)
        assert str(SessionNotFound(4)) == "Session not found: 4"


# ---------------------------------------------------------------------------
# End-to-end scenario
# ---------------------------------------------------------------------------


def test_two_tab_scenario(
    manager: PTYManager, events: queue.Queue[WireEvent | None]
) -> None:
    first = manager.create(24, 80)
    second = manager.create(24, 80)
    assert (first, second) == (1, 2)

    manager.write(first, "ls\n")
    manager.resize(first, 40, 100)
    manager.close(second)
    manager.close(second)

    manager.write(first, "exit\n")
    deadline = time.monotonic() + 10
    seen_exit = False
    while time.monotonic() < deadline and not seen_exit:
        try:
            event = events.get(timeout=0.1)
        except queue.Empty:
            continue
        if event is not None and event.type == EventType.PTY_EXIT:
            seen_exit = event.data["id"] == first
    assert seen_exit
