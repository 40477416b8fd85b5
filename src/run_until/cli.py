"""run-until 命令行入口。

用法:
    run-until --targetString "Server listening" [--silent] [--leaveAlive] -- npm start

退出码:
    0: 找到目标字符串
    N: 命令在输出目标字符串之前退出，N 为命令的退出码（非正数时为 1）
    1: 其他错误
    2: 参数错误
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from typing import NoReturn

from . import __version__
from .config import RunUntilOptions, configure_logging
from .errors import TargetStringNotFoundError
from .supervisor import run_until

__all__ = ["build_parser", "exit_status_for", "main", "split_argv"]

logger = logging.getLogger(__name__)

SEPARATOR = "--"


def build_parser() -> argparse.ArgumentParser:
    """构造参数解析器（只负责 `--` 之前的参数）。"""
    parser = argparse.ArgumentParser(
        prog="run-until",
        description="Runs a command until a certain string is found in the output.",
        usage="%(prog)s --targetString STRING [--silent] [--leaveAlive] -- command [args ...]",
    )
    parser.add_argument(
        "--targetString",
        "--target-string",
        dest="target_string",
        required=True,
        help="String to search for in the output of the command",
    )
    parser.add_argument(
        "--silent",
        action="store_true",
        help="Whether to suppress output from the command",
    )
    parser.add_argument(
        "--leaveAlive",
        "--leave-alive",
        dest="leave_alive",
        action="store_true",
        help="Whether to leave the command running after the target string is found",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging on stderr",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def split_argv(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """按第一个 `--` 拆分为 (自身参数, 命令及其参数)。"""
    argv = list(argv)
    if SEPARATOR not in argv:
        return argv, []
    sep = argv.index(SEPARATOR)
    return argv[:sep], argv[sep + 1:]


def exit_status_for(error: BaseException | None) -> int:
    """将运行结果转换为进程退出码。"""
    if error is None:
        return 0
    if isinstance(error, TargetStringNotFoundError):
        if error.exit_code is not None and error.exit_code > 0:
            return error.exit_code
    return 1


def main(argv: Sequence[str] | None = None) -> NoReturn:
    """主入口点。"""
    own_args, command = split_argv(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(own_args)
    if not command:
        parser.error(f"a command is required after '{SEPARATOR}'")

    try:
        options = RunUntilOptions.coerce(
            RunUntilOptions(
                target_string=args.target_string,
                silent=args.silent,
                leave_alive=args.leave_alive,
            )
        )
    except ValueError as e:
        parser.error(str(e))

    configure_logging(verbose=args.verbose)
    logger.debug(f"Running {command!r} until {options.target_string!r}")

    try:
        asyncio.run(run_until(options, command[0], *command[1:]))
    except TargetStringNotFoundError as e:
        logger.info(f"Target string not found, command exited with {e.exit_code}")
        sys.exit(exit_status_for(e))
    except Exception as e:
        logger.error(f"run-until failed: type={type(e).__name__}, msg={e}")
        sys.exit(exit_status_for(e))

    sys.exit(0)


if __name__ == "__main__":
    main()
