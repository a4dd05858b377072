"""CLI entry point for nanoprompt."""

from __future__ import annotations

import logging
import os
import queue
import shlex
import shutil
import signal
import sys
import termios
import threading
import tty
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from nanoprompt.config import NanopromptConfig
from nanoprompt.fonts import find_font_files, font_data_url, font_dirs
from nanoprompt.lifecycle import force_quit
from nanoprompt.pty.encoding import decode_output
from nanoprompt.pty.errors import AllocationError, PTYError
from nanoprompt.pty.manager import PTYManager
from nanoprompt.session.wire import EventType, Wire, WireEvent

app = typer.Typer(
    name="nanoprompt",
    help="A minimal terminal shell backed by managed PTY sessions.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _forward_stdin(
    manager: PTYManager, session_id: int, stop: threading.Event, in_fd: int
) -> None:
    """Copy local keystrokes into the session until stdin or the session ends.

    On end of input the shell gets an EOT, after a newline if the last line
    was left open.
    """
    last = b"\n"
    while not stop.is_set():
        try:
            data = os.read(in_fd, 1024)
        except OSError:
            break
        try:
            if not data:
                manager.write(session_id, b"\x04" if last.endswith(b"\n") else b"\n\x04")
                break
            manager.write(session_id, data)
        except PTYError as e:
            logger.debug("Input forwarding stopped: %s", e)
            break
        last = data


def _pump_output(
    events: queue.Queue[WireEvent | None], session_id: int, out_fd: int
) -> None:
    """Write decoded output of ``session_id`` to ``out_fd`` until it exits."""
    while True:
        try:
            event = events.get(timeout=0.5)
        except queue.Empty:
            continue
        if event is None:
            return
        if event.data.get("id") != session_id:
            continue
        if event.type == EventType.PTY_OUTPUT:
            os.write(out_fd, decode_output(event.data["data"]))
        elif event.type == EventType.PTY_EXIT:
            return


def _attach(manager: PTYManager, events: queue.Queue, session_id: int) -> None:
    stdin_fd = sys.stdin.fileno()
    interactive = os.isatty(stdin_fd)
    saved_attrs = termios.tcgetattr(stdin_fd) if interactive else None

    def _on_winch(signum: int, frame: object) -> None:
        size = shutil.get_terminal_size()
        try:
            manager.resize(session_id, size.lines, size.columns)
        except PTYError as e:
            logger.debug("Resize forwarding failed: %s", e)

    previous_handler = signal.signal(signal.SIGWINCH, _on_winch)
    stop = threading.Event()
    forwarder = threading.Thread(
        target=_forward_stdin, args=(manager, session_id, stop, stdin_fd), daemon=True
    )
    try:
        if interactive:
            tty.setraw(stdin_fd)
        forwarder.start()
        _pump_output(events, session_id, sys.stdout.fileno())
    finally:
        stop.set()
        signal.signal(signal.SIGWINCH, previous_handler)
        if saved_attrs is not None:
            termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_attrs)


@app.command()
def shell(
    rows: int | None = typer.Option(
        None, "--rows", "-r", help="Terminal height (default: current terminal)."
    ),
    cols: int | None = typer.Option(
        None, "--cols", "-C", help="Terminal width (default: current terminal)."
    ),
    command: str | None = typer.Option(
        None,
        "--command",
        "-e",
        help="Command to run instead of the default shell (shell-style quoting).",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Attach this terminal to a new PTY session."""
    # Log lines on stderr would land in the middle of the raw-mode display
    setup_logging(verbose, quiet=True)

    config = NanopromptConfig.load(config_file)
    size = shutil.get_terminal_size((config.pty.default_cols, config.pty.default_rows))

    wire = Wire()
    manager = PTYManager(wire=wire, config=config.pty)
    events = wire.subscribe()

    argv = shlex.split(command) if command else None
    try:
        session_id = manager.create(rows or size.lines, cols or size.columns, argv)
    except (AllocationError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    try:
        _attach(manager, events, session_id)
    finally:
        force_quit(manager, wire)


@app.command()
def font(
    family: str = typer.Argument(help="Font family, e.g. 'Fira Code'."),
    data_url: bool = typer.Option(
        False, "--data-url", help="Print the best match as a base64 data: URL."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """List installed font files matching a family, best match first."""
    setup_logging(verbose, quiet=not verbose)

    config = NanopromptConfig.load(config_file)
    candidates = find_font_files(family, font_dirs(config.fonts.extra_dirs))
    if not candidates:
        typer.echo(f"No font found for '{family}'", err=True)
        raise typer.Exit(1)

    if data_url:
        typer.echo(font_data_url(candidates[0]))
        return

    table = Table(title=f"Fonts matching '{family}'")
    table.add_column("#", justify="right")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    for i, path in enumerate(candidates, start=1):
        table.add_row(str(i), str(path), f"{Path(path).stat().st_size:,}")
    Console().print(table)


@app.command()
def version() -> None:
    """Show the nanoprompt version."""
    typer.echo("nanoprompt v0.1.0")


if __name__ == "__main__":
    app()
