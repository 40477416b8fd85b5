#!/usr/bin/env python3
"""Long-running task used as the supervised command in tests.

Usage:
    python long_task.py [--steps N] [--interval SECONDS] [--ready TEXT]
                        [--ready-stream stdout|stderr] [--split TEXT]
                        [--hold SECONDS] [--pid-file PATH] [--exit-code CODE]
                        [--ignore-sigterm]

Prints "Writing file i" once per step, optionally a ready marker, then
sleeps for --hold seconds and exits with --exit-code.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import time
from typing import NoReturn


def emit(text: str, stream=sys.stdout) -> None:
    stream.write(text)
    stream.flush()


def main() -> NoReturn:
    parser = argparse.ArgumentParser(description="Long task for testing")
    parser.add_argument("--steps", type=int, default=0, help="Progress lines to print")
    parser.add_argument("--interval", type=float, default=0.05, help="Delay between steps")
    parser.add_argument("--ready", type=str, default=None, help="Marker printed after the steps")
    parser.add_argument("--ready-stream", choices=["stdout", "stderr"], default="stdout")
    parser.add_argument("--ready-twice", action="store_true", help="Print the marker on both streams")
    parser.add_argument("--split", type=str, default=None, help="Print this text in two delayed halves")
    parser.add_argument("--hold", type=float, default=0.0, help="Seconds to keep running at the end")
    parser.add_argument("--pid-file", type=str, default=None, help="Write own pid here at start")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--ignore-sigterm", action="store_true")
    args = parser.parse_args()

    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    if args.pid_file:
        with open(args.pid_file, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))

    for i in range(args.steps):
        emit(f"Writing file {i}\n")
        time.sleep(args.interval)

    if args.split:
        half = len(args.split) // 2
        emit(args.split[:half])
        time.sleep(0.5)
        emit(args.split[half:] + "\n")

    if args.ready:
        stream = sys.stderr if args.ready_stream == "stderr" else sys.stdout
        emit(args.ready + "\n", stream)
        if args.ready_twice:
            other = sys.stdout if stream is sys.stderr else sys.stderr
            emit(args.ready + "\n", other)

    if args.hold:
        time.sleep(args.hold)

    sys.exit(args.exit_code)


if __name__ == "__main__":
    main()
