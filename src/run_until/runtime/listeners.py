"""Process-level termination events and per-run listener bookkeeping.

This module provides:
- ProcessSignals: an event source for interpreter exit, SIGINT and SIGTERM
  that allows several independent handlers per event
- ListenerRegistry: a ledger of (source, event, handler) registrations owned
  by a single run, so the run can remove exactly what it added

Key design points:
- The OS-level hook (atexit / loop.add_signal_handler / signal.signal) is
  installed for the first handler of an event and removed with the last one
- Removing a run's registrations never touches handlers added by other runs
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import signal
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

__all__ = [
    "EventSource",
    "ListenerRegistry",
    "ProcessSignals",
    "Registration",
    "process_signals",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

EXIT_EVENT = "exit"
SIGNAL_EVENTS = {
    "SIGINT": signal.SIGINT,
    "SIGTERM": signal.SIGTERM,
}


class EventSource(Protocol):
    """Anything handlers can be attached to and detached from by event name."""

    def on(self, event: str, handler: Callable[..., Any]) -> None: ...

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> bool: ...


class ProcessSignals:
    """Termination events of the current process.

    Supported events are ``"exit"`` (interpreter shutdown), ``"SIGINT"`` and
    ``"SIGTERM"``. Handlers take no arguments.

    Example:
        def kill_child() -> None:
            child.kill()

        process_signals.on("SIGTERM", kill_child)
        ...
        process_signals.remove_listener("SIGTERM", kill_child)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[[], None]]] = {}
        self._loops: dict[str, asyncio.AbstractEventLoop] = {}
        self._original_handlers: dict[str, Any] = {}

    def on(self, event: str, handler: Callable[[], None]) -> None:
        if event != EXIT_EVENT and event not in SIGNAL_EVENTS:
            raise ValueError(f"Unsupported process event: {event!r}")

        handlers = self._handlers.setdefault(event, [])
        if not handlers:
            self._install(event)
        handlers.append(handler)

    def remove_listener(self, event: str, handler: Callable[[], None]) -> bool:
        """Remove one registration of handler; returns False if it was not registered."""
        handlers = self._handlers.get(event)
        if not handlers or handler not in handlers:
            return False

        handlers.remove(handler)
        if not handlers:
            del self._handlers[event]
            self._uninstall(event)
        return True

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def emit(self, event: str) -> None:
        """Invoke every handler registered for event."""
        handlers = list(self._handlers.get(event, ()))
        logger.debug(f"Process event {event} ({len(handlers)} handler(s))")
        for handler in handlers:
            try:
                handler()
            except Exception as e:
                logger.warning(f"Error in {event} handler: {e}")

    def _on_exit(self) -> None:
        self.emit(EXIT_EVENT)

    def _install(self, event: str) -> None:
        if event == EXIT_EVENT:
            atexit.register(self._on_exit)
            return

        sig = SIGNAL_EVENTS[event]
        self._original_handlers[event] = signal.getsignal(sig)

        loop = None
        if not IS_WINDOWS:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None

        if loop is not None:
            loop.add_signal_handler(sig, self.emit, event)
            self._loops[event] = loop
        else:
            signal.signal(sig, lambda signum, frame: self.emit(event))
        logger.debug(f"Installed {event} handler (loop={loop is not None})")

    def _uninstall(self, event: str) -> None:
        if event == EXIT_EVENT:
            atexit.unregister(self._on_exit)
            return

        sig = SIGNAL_EVENTS[event]
        loop = self._loops.pop(event, None)
        if loop is not None and not loop.is_closed():
            try:
                loop.remove_signal_handler(sig)
            except Exception as e:
                logger.debug(f"Error removing {event} handler: {e}")

        original = self._original_handlers.pop(event, None)
        if original is not None:
            try:
                signal.signal(sig, original)
            except (OSError, ValueError) as e:
                logger.debug(f"Error restoring {event} handler: {e}")
        logger.debug(f"Removed {event} handler")


@dataclass(frozen=True)
class Registration:
    """One handler attached by a run.

    Attributes:
        source: Object the handler was attached to
        event: Event name
        handler: The attached callable
    """

    source: EventSource
    event: str
    handler: Callable[..., Any]


class ListenerRegistry:
    """Registrations made by one run, removable as a unit.

    ``clear()`` removes only the registrations recorded here, so handlers
    installed by unrelated code on the same source stay in place. It is safe
    to call more than once.
    """

    def __init__(self) -> None:
        self._registrations: list[Registration] = []

    def add(self, source: EventSource, event: str, handler: Callable[..., Any]) -> None:
        source.on(event, handler)
        self._registrations.append(Registration(source, event, handler))

    def clear(self) -> int:
        """Remove every recorded registration; returns how many were removed."""
        removed = 0
        while self._registrations:
            reg = self._registrations.pop()
            if reg.source.remove_listener(reg.event, reg.handler):
                removed += 1
        return removed

    def registrations(self) -> list[Registration]:
        return list(self._registrations)

    def __len__(self) -> int:
        return len(self._registrations)


# Shared by every run in this process
process_signals = ProcessSignals()
