"""Intermediary process between the supervisor and the real command.

Run as ``python -m run_until.child_runner COMMAND [ARGS...]`` with
RUN_UNTIL_TARGET_STRING in the environment. It runs the command through the
shell, relays the command's stdout and stderr to its own, and exits with the
command's exit code.

- stdout chunks that cannot be written (the supervisor detached and closed
  the pipe) are appended to the fallback file instead
- stderr relaying is best effort, write errors are ignored
- SIGINT/SIGTERM kill the command's process group and exit with 128 + signal number
"""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import signal
import subprocess
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import IO, NoReturn

import anyio
from anyio import CancelScope
from anyio.abc import ByteReceiveStream, Process

from .config import ENV_TARGET_STRING, RunUntilOptions, configure_logging, get_config
from .errors import ConfigError

__all__ = ["ChildRunner", "build_command_line", "exit_status", "main"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


def build_command_line(command: str, args: Sequence[str] = ()) -> str:
    """Shell command line: command verbatim, arguments quoted."""
    if not args:
        return command
    quoted = subprocess.list2cmdline(list(args)) if IS_WINDOWS else shlex.join(args)
    return f"{command} {quoted}"


def exit_status(returncode: int) -> int:
    """Map a returncode to a process exit status (killed by signal N -> 128 + N)."""
    if returncode < 0:
        return 128 - returncode
    return returncode


class ChildRunner:
    """Runs one shell command and relays its output.

    Attributes:
        command_line: Shell command line to run
        fallback_file: Where stdout chunks go once stdout is unwritable
        received_signal: Termination signal that stopped the runner, if any
    """

    def __init__(
        self,
        command_line: str,
        *,
        fallback_file: str | Path,
        stdout: IO[bytes] | None = None,
        stderr: IO[bytes] | None = None,
    ) -> None:
        self.command_line = command_line
        self.fallback_file = Path(fallback_file)
        self.received_signal: int | None = None
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._stderr = stderr if stderr is not None else sys.stderr.buffer
        self._stdout_broken = False

    async def run(self) -> int:
        """Run the command to completion; returns the exit status to use."""
        # own session so the shell and everything it forks can be signalled together
        process = await anyio.open_process(
            self.command_line,
            stdin=subprocess.DEVNULL,
            start_new_session=not IS_WINDOWS,
        )
        logger.debug(f"Started command pid={process.pid}")
        try:
            async with process:
                async with anyio.create_task_group() as tg:
                    tg.start_soon(self._forward_signals, process, tg.cancel_scope)
                    async with anyio.create_task_group() as pumps:
                        pumps.start_soon(self._pump, process.stdout, self.write_stdout)
                        pumps.start_soon(self._pump, process.stderr, self.write_stderr)
                    await process.wait()
                    tg.cancel_scope.cancel()
        finally:
            if process.returncode is None:
                self._kill(process)

        if self.received_signal is not None:
            return 128 + self.received_signal
        return exit_status(process.returncode)

    async def _pump(
        self,
        stream: ByteReceiveStream | None,
        write: Callable[[bytes], None],
    ) -> None:
        if stream is None:
            return
        async for chunk in stream:
            write(chunk)

    async def _forward_signals(self, process: Process, scope: CancelScope) -> None:
        if IS_WINDOWS:
            # no signal receivers on Windows; CTRL_BREAK ends the group anyway
            return
        with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
            async for signum in signals:
                logger.debug(f"Received {signal.Signals(signum).name}, killing command")
                self.received_signal = int(signum)
                self._kill(process)
                scope.cancel()
                return

    @staticmethod
    def _kill(process: Process) -> None:
        """SIGTERM the command's process group, falling back to the shell alone."""
        if not IS_WINDOWS:
            try:
                os.killpg(process.pid, signal.SIGTERM)
                return
            except ProcessLookupError:
                return
            except OSError as e:
                logger.debug(f"killpg failed, falling back to terminate: {e}")
        with contextlib.suppress(ProcessLookupError):
            process.terminate()

    def write_stdout(self, chunk: bytes) -> None:
        if not self._stdout_broken:
            try:
                self._stdout.write(chunk)
                self._stdout.flush()
                return
            except BrokenPipeError:
                self._stdout_broken = True
                logger.debug(f"stdout closed, writing to {self.fallback_file}")
                self._silence_stdout()

        with contextlib.suppress(OSError):
            with open(self.fallback_file, "ab") as f:
                f.write(chunk)

    def write_stderr(self, chunk: bytes) -> None:
        with contextlib.suppress(OSError):
            self._stderr.write(chunk)
            self._stderr.flush()

    def _silence_stdout(self) -> None:
        # point fd 1 at devnull so the final flush at exit does not fail
        with contextlib.suppress(OSError, ValueError):
            devnull = os.open(os.devnull, os.O_WRONLY)
            try:
                os.dup2(devnull, self._stdout.fileno())
            finally:
                os.close(devnull)


def main(argv: Sequence[str] | None = None) -> NoReturn:
    """Entry point of the child runner process."""
    options = RunUntilOptions.from_env()
    if options is None:
        raise ConfigError(f"{ENV_TARGET_STRING} environment variable not set")

    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        raise ConfigError("No command given to the child runner")

    # stderr is scanned by the supervisor, so only a debug file gets verbose logs
    config = get_config()
    if config.log_debug:
        configure_logging(config)
    else:
        logging.basicConfig(level=logging.WARNING)

    logger.debug(f"Child runner pid={os.getpid()} silent={options.silent} leave_alive={options.leave_alive}")
    runner = ChildRunner(
        build_command_line(args[0], args[1:]),
        fallback_file=config.fallback_file,
    )
    sys.exit(anyio.run(runner.run))


if __name__ == "__main__":
    main()
