"""Handle for the detached intermediary process.

run-until runtime module

This module provides:
- Spawning with piped stdio in a new session/process group
- Chunk-by-chunk delivery of stdout/stderr as events
- Kill (idempotent), terminate with escalation (SIGTERM -> timeout -> SIGKILL)
- Detach: release the process so it keeps running after the run

Key design points:
- POSIX: start_new_session=True, signals go to the whole process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- "exit" fires only after both output pipes reached EOF, so no chunk is
  delivered after the exit notification
- A subprocess.Popen is used instead of asyncio's subprocess transport
  because the latter kills the process when it is closed or collected,
  which defeats detaching
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

__all__ = [
    "ChildHandle",
    "ChildState",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

EVENTS = frozenset({"stdout", "stderr", "exit", "error"})


class ChildState(Enum):
    """Lifecycle of a spawned child."""

    SPAWNED = "spawned"
    EXITED = "exited"
    KILLED = "killed"
    DETACHED = "detached"


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to spawn.

    Attributes:
        argv: Command line arguments (first element is the executable)
        env: Environment variables (None = inherit parent)
        cwd: Working directory (None = inherit parent)
    """

    argv: list[str]
    env: Mapping[str, str] | None = None
    cwd: Path | None = None


class _PipeProtocol(asyncio.Protocol):
    """Forwards pipe data and closure to callbacks."""

    def __init__(
        self,
        on_data: Callable[[bytes], None],
        on_closed: Callable[[], None],
    ) -> None:
        self._on_data = on_data
        self._on_closed = on_closed

    def data_received(self, data: bytes) -> None:
        self._on_data(data)

    def connection_lost(self, exc: Exception | None) -> None:
        self._on_closed()


class ChildHandle:
    """A spawned child process with piped stdio, exposed as an event source.

    Events:
        stdout(chunk), stderr(chunk): one call per chunk read from the pipe
        exit(returncode): the process ended and both pipes are drained
        error(exc): a handler of another event raised

    Example:
        child = ChildHandle.spawn(ProcessSpec(argv=["my-server"]))
        child.on("stdout", on_chunk)
        child.on("exit", on_exit)
        await child.start()
    """

    def __init__(
        self,
        popen: subprocess.Popen[bytes],
        loop: asyncio.AbstractEventLoop,
        *,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self.pid = popen.pid
        self.state = ChildState.SPAWNED
        self.returncode: int | None = None
        self.term_timeout = term_timeout
        self.kill_timeout = kill_timeout

        self._popen: subprocess.Popen[bytes] | None = popen
        self._loop = loop
        self._listeners: dict[str, list[Callable[..., Any]]] = {}
        self._transports: list[asyncio.BaseTransport] = []
        self._pipes_closed: list[asyncio.Event] = []
        self._exited = asyncio.Event()
        self._exit_task: asyncio.Task[None] | None = None

    @classmethod
    def spawn(
        cls,
        spec: ProcessSpec,
        *,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> ChildHandle:
        """Start the process. Output is not read until start() is awaited.

        Must be called with a running event loop.
        """
        loop = asyncio.get_running_loop()
        popen = subprocess.Popen(
            spec.argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=spec.cwd,
            **_build_subprocess_kwargs(spec),
        )
        logger.debug(f"Spawned child pid={popen.pid} argv={spec.argv[:3]}")
        return cls(popen, loop, term_timeout=term_timeout, kill_timeout=kill_timeout)

    # ------------------------------------------------------------------
    # Event source
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unsupported child event: {event!r}")
        self._listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> bool:
        handlers = self._listeners.get(event)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners.get(event, ())):
            # a previous handler may have removed this one
            if handler not in self._listeners.get(event, ()):
                continue
            try:
                handler(*args)
            except Exception as e:
                if event == "error":
                    logger.warning(f"Error handler raised on pid={self.pid}: {e!r}")
                    continue
                logger.debug(f"Handler for {event} raised on pid={self.pid}: {e!r}")
                if not self._listeners.get("error"):
                    logger.warning(f"Unhandled error in {event} handler pid={self.pid}: {e}")
                    continue
                self._emit("error", e)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def stdin(self):
        return self._popen.stdin if self._popen is not None else None

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    async def start(self) -> None:
        """Begin reading stdout/stderr and watching for exit."""
        popen = self._popen
        if popen is None:
            return

        for name, pipe in (("stdout", popen.stdout), ("stderr", popen.stderr)):
            closed = asyncio.Event()
            self._pipes_closed.append(closed)
            transport, _ = await self._loop.connect_read_pipe(
                lambda name=name, closed=closed: _PipeProtocol(
                    lambda data: self._emit(name, data),
                    closed.set,
                ),
                pipe,
            )
            if self.state is ChildState.DETACHED:
                # detached while connecting
                transport.close()
                return
            self._transports.append(transport)

        self._exit_task = self._loop.create_task(self._watch_exit())

    async def _watch_exit(self) -> None:
        popen = self._popen
        try:
            for closed in self._pipes_closed:
                await closed.wait()
            if popen is None:
                return
            returncode = await self._loop.run_in_executor(None, popen.wait)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Error watching child pid={self.pid}: {e}")
            self._emit("error", e)
            return

        self.returncode = returncode
        if self.state is ChildState.SPAWNED:
            self.state = ChildState.EXITED
        self._exited.set()
        logger.debug(f"Child exited pid={self.pid} returncode={returncode}")
        self._emit("exit", returncode)

    def kill(self) -> bool:
        """Send SIGTERM to the child's process group.

        Only the first call on a running child sends a signal.

        Returns:
            True if a signal was sent
        """
        if self.state is not ChildState.SPAWNED:
            return False
        self.state = ChildState.KILLED
        logger.debug(f"Killing child pid={self.pid}")
        self._send_terminate()
        return True

    async def terminate(self) -> int | None:
        """Kill the child and wait for it, escalating to SIGKILL.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout

        Returns:
            The exit code, or None if it is unknown (detached or still running)
        """
        self.kill()
        if self.state is ChildState.DETACHED or self._exit_task is None:
            return self.returncode

        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self.term_timeout)
            return self.returncode
        except asyncio.TimeoutError:
            pass

        logger.debug(f"Force killing child pid={self.pid}")
        self._send_kill()

        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Child did not exit after kill pid={self.pid}")
        return self.returncode

    def detach(self) -> None:
        """Stop watching the child and let it run on its own.

        Removes all listeners, closes the read pipes and stdin, and drops the
        reference to the process. The child's own end of the pipes stays
        open; writes to them fail with a broken pipe from now on.
        """
        if self.state is ChildState.DETACHED:
            return

        self.remove_all_listeners()
        self.state = ChildState.DETACHED

        for transport in self._transports:
            transport.close()
        self._transports.clear()

        if self._exit_task is not None and not self._exit_task.done():
            self._exit_task.cancel()

        popen = self._popen
        if popen is not None and popen.stdin is not None:
            with contextlib.suppress(OSError):
                popen.stdin.close()
        self._popen = None
        logger.debug(f"Detached child pid={self.pid}")

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _send_terminate(self) -> None:
        if IS_WINDOWS:
            self._windows_signal(graceful=True)
        else:
            self._posix_signal(signal.SIGTERM)

    def _send_kill(self) -> None:
        if IS_WINDOWS:
            self._windows_signal(graceful=False)
        else:
            self._posix_signal(signal.SIGKILL)

    def _posix_signal(self, sig: signal.Signals) -> None:
        """Send sig to the child's process group, falling back to the child alone."""
        popen = self._popen
        if popen is None or popen.poll() is not None:
            return
        try:
            pgid = os.getpgid(popen.pid)
            if pgid == os.getpgrp():
                # not a group leader, never signal our own group
                popen.send_signal(sig)
                return
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            with contextlib.suppress(ProcessLookupError):
                popen.send_signal(sig)

    def _windows_signal(self, *, graceful: bool) -> None:
        popen = self._popen
        if popen is None or popen.poll() is not None:
            return
        try:
            if graceful:
                # works because we used CREATE_NEW_PROCESS_GROUP
                os.kill(popen.pid, signal.CTRL_BREAK_EVENT)
            else:
                popen.kill()
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"Signal failed on pid={popen.pid}, falling back: {e}")
            with contextlib.suppress(OSError):
                popen.kill()


def _build_subprocess_kwargs(spec: ProcessSpec) -> dict[str, Any]:
    """Build platform-specific Popen kwargs."""
    kwargs: dict[str, Any] = {}

    if spec.env is not None:
        kwargs["env"] = dict(spec.env)

    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        # POSIX: start_new_session (equivalent to setsid)
        kwargs["start_new_session"] = True

    return kwargs
