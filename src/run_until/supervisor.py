"""Run a command until a target string shows up in its output.

The supervisor spawns the child runner (``python -m run_until.child_runner``)
as a detached process with piped stdio, relays its output, and settles as
soon as one of these happens:

- a stdout or stderr chunk contains the target string (Matched)
- the child exits first (NotFound, TargetStringNotFoundError)
- an unexpected error occurs while supervising (Faulted)

SIGINT, SIGTERM and interpreter exit of the supervising process kill the
child. Matching is done per chunk: a target split across two chunks is not
detected.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import IO, Any, Callable

from .config import RunUntilOptions, build_child_env
from .errors import TargetStringNotFoundError
from .runtime.child_handle import (
    DEFAULT_KILL_TIMEOUT,
    DEFAULT_TERM_TIMEOUT,
    ChildHandle,
    ProcessSpec,
)
from .runtime.listeners import ListenerRegistry, process_signals

__all__ = ["run_until", "spawn_child_runner"]

logger = logging.getLogger(__name__)

# Directory containing the run_until package, made importable in the child
_PACKAGE_PARENT = Path(__file__).resolve().parent.parent

CHILD_RUNNER_MODULE = "run_until.child_runner"
TERMINATION_EVENTS = ("exit", "SIGINT", "SIGTERM")


def spawn_child_runner(
    options: RunUntilOptions,
    command: str,
    args: Sequence[str] = (),
    *,
    term_timeout: float = DEFAULT_TERM_TIMEOUT,
    kill_timeout: float = DEFAULT_KILL_TIMEOUT,
) -> ChildHandle:
    """Spawn the child runner for command with the options in its environment."""
    env = build_child_env(options)
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in (str(_PACKAGE_PARENT), env.get("PYTHONPATH")) if p
    )
    spec = ProcessSpec(
        argv=[sys.executable, "-m", CHILD_RUNNER_MODULE, command, *args],
        env=env,
    )
    return ChildHandle.spawn(spec, term_timeout=term_timeout, kill_timeout=kill_timeout)


def _relay(stream: IO[Any]) -> Callable[[bytes], None]:
    def write(chunk: bytes) -> None:
        with contextlib.suppress(BrokenPipeError):
            buffer = getattr(stream, "buffer", None)
            if buffer is not None:
                buffer.write(chunk)
            else:
                stream.write(chunk.decode("utf-8", errors="replace"))
            stream.flush()

    return write


async def run_until(
    opts: RunUntilOptions | str,
    command: str,
    *args: str,
    term_timeout: float = DEFAULT_TERM_TIMEOUT,
    kill_timeout: float = DEFAULT_KILL_TIMEOUT,
) -> None:
    """Run command until the target string is found in its output.

    Args:
        opts: Options, or the bare target string
        command: Command to run, passed to the shell as is
        *args: Arguments appended (shell-quoted) to the command
        term_timeout: Grace period after SIGTERM when killing on match
        kill_timeout: Wait after SIGKILL

    Raises:
        ValueError: Empty target string or command
        TargetStringNotFoundError: The command exited before printing the target
    """
    options = RunUntilOptions.coerce(opts)
    if not command:
        raise ValueError("command must be a non-empty string")

    target = options.target_bytes
    loop = asyncio.get_running_loop()
    outcome: asyncio.Future[None] = loop.create_future()
    listeners = ListenerRegistry()

    child = spawn_child_runner(
        options,
        command,
        args,
        term_timeout=term_timeout,
        kill_timeout=kill_timeout,
    )

    def cleanup_child() -> None:
        if options.leave_alive:
            child.detach()
        else:
            child.kill()

    def make_data_handler(relay: Callable[[bytes], None]) -> Callable[[bytes], None]:
        def on_data(chunk: bytes) -> None:
            if not options.silent:
                relay(chunk)
            if target in chunk:
                # removing listeners first makes later chunks no-ops
                listeners.clear()
                logger.debug(f"Target string found, pid={child.pid} leave_alive={options.leave_alive}")
                cleanup_child()
                outcome.set_result(None)

        return on_data

    def on_parent_termination() -> None:
        logger.debug(f"Supervisor terminating, killing child pid={child.pid}")
        child.kill()

    def on_child_exit(returncode: int) -> None:
        listeners.clear()
        logger.debug(f"Child pid={child.pid} exited ({returncode}) before target string")
        outcome.set_exception(TargetStringNotFoundError(options.target_string, returncode))

    def on_child_error(exc: BaseException) -> None:
        listeners.clear()
        logger.warning(f"Error while supervising pid={child.pid}: {exc!r}")
        cleanup_child()
        outcome.set_exception(exc)

    listeners.add(child, "stdout", make_data_handler(_relay(sys.stdout)))
    listeners.add(child, "stderr", make_data_handler(_relay(sys.stderr)))
    listeners.add(child, "exit", on_child_exit)
    listeners.add(child, "error", on_child_error)
    for event in TERMINATION_EVENTS:
        listeners.add(process_signals, event, on_parent_termination)

    def settled() -> bool:
        # cancelling the task also cancels the pending outcome
        return outcome.done() and not outcome.cancelled()

    try:
        await child.start()
        await outcome
    except asyncio.CancelledError:
        if not settled():
            listeners.clear()
            child.kill()
        raise
    except BaseException:
        if not settled():
            listeners.clear()
            cleanup_child()
        raise
    finally:
        listeners.clear()

    if not options.leave_alive:
        await asyncio.shield(child.terminate())
