"""Wire protocol: decouples the PTY core from the presentation layer.

Events flow one way: reader threads and the lifecycle helpers publish,
the UI subscribes and renders. Publishers may live on any thread, so
subscriber queues are fed in a thread-safe way (``queue.Queue`` directly,
``asyncio.Queue`` through ``call_soon_threadsafe``).
"""

from __future__ import annotations

import asyncio
import enum
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Union


class EventType(enum.Enum):
    PTY_OUTPUT = "pty-output"
    PTY_EXIT = "pty-exit"
    CONFIRM_QUIT = "confirm-quit"
    HIDE_WINDOW = "hide-window"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Shape used when forwarding to a UI bridge: ``{event, payload}``."""
        return {"event": self.type.value, "payload": dict(self.data)}


Subscriber = Union["queue.Queue[WireEvent | None]", "asyncio.Queue[WireEvent | None]"]


class Wire:
    """Thread-safe message bus: PTY core -> UI subscribers.

    Multi-producer, multi-consumer broadcast. Events from a single producer
    reach each subscriber in the order they were sent.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[queue.Queue[WireEvent | None]] = []
        self._async_subscribers: list[
            tuple[asyncio.AbstractEventLoop, asyncio.Queue[WireEvent | None]]
        ] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        with self._lock:
            if self._closed:
                return
            self._deliver(event)

    def _deliver(self, event: WireEvent | None) -> None:
        for q in self._subscribers:
            q.put_nowait(event)
        for loop, aq in self._async_subscribers:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(aq.put_nowait, event)

    def send_pty_output(self, session_id: int, data: str) -> None:
        """Publish one encoded output chunk of a session."""
        self.send(
            WireEvent(
                type=EventType.PTY_OUTPUT,
                data={"id": session_id, "data": data},
            )
        )

    def send_pty_exit(self, session_id: int) -> None:
        """Publish the end of a session's output stream."""
        self.send(WireEvent(type=EventType.PTY_EXIT, data={"id": session_id}))

    def send_confirm_quit(self) -> None:
        self.send(WireEvent(type=EventType.CONFIRM_QUIT))

    def send_hide_window(self) -> None:
        self.send(WireEvent(type=EventType.HIDE_WINDOW))

    def subscribe(self) -> queue.Queue[WireEvent | None]:
        """Subscribe from plain threads. Returns a queue to read from."""
        q: queue.Queue[WireEvent | None] = queue.Queue()
        with self._lock:
            self._subscribers.append(q)
        return q

    def subscribe_async(
        self, loop: asyncio.AbstractEventLoop | None = None
    ) -> asyncio.Queue[WireEvent | None]:
        """Subscribe from asyncio code.

        Must be called from the loop's thread (or pass an explicit loop).
        """
        loop = loop or asyncio.get_running_loop()
        aq: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        with self._lock:
            self._async_subscribers.append((loop, aq))
        return aq

    def unsubscribe(self, q: Subscriber) -> None:
        """Unsubscribe from events."""
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)  # type: ignore[arg-type]
            self._async_subscribers = [
                (loop, aq) for loop, aq in self._async_subscribers if aq is not q
            ]

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._deliver(None)

    @property
    def closed(self) -> bool:
        return self._closed
