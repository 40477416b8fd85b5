"""run-until 环境变量配置管理。

Supervisor 与 Child Runner 之间只通过环境变量传递配置，两端使用同一套解析规则。

环境变量:
    RUN_UNTIL_TARGET_STRING: 要在输出中查找的字符串
        - Child Runner 启动时必须存在，否则立即失败

    RUN_UNTIL_SILENT: 是否隐藏命令输出（仍然会匹配）
        - true/1/yes = 隐藏
        - 未设置 = 转发 (默认)

    RUN_UNTIL_LEAVE_ALIVE: 匹配成功后是否保留子进程
        - true/1/yes = 分离并保留
        - 未设置 = 终止 (默认)

    RUN_UNTIL_FALLBACK_FILE: stdout 不可写时的落盘文件
        - 默认 stdout.txt（相对于工作目录）

    RUN_UNTIL_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件，级别 DEBUG)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    RUN_UNTIL_LOG_LEVEL: run_until 命名空间的日志级别
        - 默认 WARNING
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = [
    "Config",
    "RunUntilOptions",
    "ENV_TARGET_STRING",
    "ENV_SILENT",
    "ENV_LEAVE_ALIVE",
    "ENV_FALLBACK_FILE",
    "build_child_env",
    "configure_logging",
    "get_config",
    "load_config",
    "reload_config",
]

ENV_TARGET_STRING = "RUN_UNTIL_TARGET_STRING"
ENV_SILENT = "RUN_UNTIL_SILENT"
ENV_LEAVE_ALIVE = "RUN_UNTIL_LEAVE_ALIVE"
ENV_FALLBACK_FILE = "RUN_UNTIL_FALLBACK_FILE"
ENV_LOG_DEBUG = "RUN_UNTIL_LOG_DEBUG"
ENV_LOG_LEVEL = "RUN_UNTIL_LOG_LEVEL"

DEFAULT_FALLBACK_FILE = "stdout.txt"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_log_level(value: str | None) -> int:
    """解析日志级别，无效值返回 WARNING。"""
    if not value:
        return logging.WARNING
    level = logging.getLevelName(value.strip().upper())
    return level if isinstance(level, int) else logging.WARNING


@dataclass(frozen=True)
class RunUntilOptions:
    """一次 run_until 调用的选项。

    Attributes:
        target_string: 要查找的字符串（非空）
        silent: 隐藏命令输出，但仍然匹配
        leave_alive: 匹配成功后分离子进程而不是终止它
    """

    target_string: str
    silent: bool = False
    leave_alive: bool = False

    @classmethod
    def coerce(cls, value: "RunUntilOptions | str") -> "RunUntilOptions":
        """接受选项对象或裸目标字符串。

        Raises:
            ValueError: 目标字符串为空
        """
        opts = cls(target_string=value) if isinstance(value, str) else value
        if not opts.target_string:
            raise ValueError("target_string must be a non-empty string")
        return opts

    @property
    def target_bytes(self) -> bytes:
        return self.target_string.encode("utf-8")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RunUntilOptions | None":
        """从环境变量读取选项，缺少目标字符串时返回 None。"""
        env = os.environ if environ is None else environ
        target = env.get(ENV_TARGET_STRING)
        if not target:
            return None
        return cls(
            target_string=target,
            silent=_parse_bool(env.get(ENV_SILENT)),
            leave_alive=_parse_bool(env.get(ENV_LEAVE_ALIVE)),
        )


def build_child_env(
    options: RunUntilOptions,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """构造传给 Child Runner 的环境变量。

    标志只在开启时设置为 "true"，关闭时从继承的环境中删除，
    避免父进程环境里残留的值泄漏到子进程。
    """
    env: MutableMapping[str, str] = dict(os.environ if base is None else base)
    env[ENV_TARGET_STRING] = options.target_string
    for name, enabled in ((ENV_SILENT, options.silent), (ENV_LEAVE_ALIVE, options.leave_alive)):
        if enabled:
            env[name] = "true"
        else:
            env.pop(name, None)
    return dict(env)


@dataclass
class Config:
    """进程级配置（日志、落盘文件）。

    Attributes:
        fallback_file: stdout 不可写时的落盘文件路径
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        log_level: run_until 命名空间的日志级别
    """

    fallback_file: str = DEFAULT_FALLBACK_FILE
    log_debug: bool = False
    log_file: str | None = None
    log_level: int = logging.WARNING

    def __repr__(self) -> str:
        return (
            f"Config(fallback_file={self.fallback_file}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"log_level={logging.getLevelName(self.log_level)})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "run-until"
    log_dir.mkdir(parents=True, exist_ok=True)

    # 带时间戳和 pid，两个进程同时开启调试时不会写到同一个文件
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"run_until_{timestamp}_{os.getpid()}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get(ENV_LOG_DEBUG), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        fallback_file=os.environ.get(ENV_FALLBACK_FILE) or DEFAULT_FALLBACK_FILE,
        log_debug=log_debug,
        log_file=log_file,
        log_level=logging.DEBUG if log_debug else _parse_log_level(os.environ.get(ENV_LOG_LEVEL)),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config


def configure_logging(config: Config | None = None, *, verbose: bool = False) -> None:
    """配置日志输出。

    stdout 用于转发命令输出，日志只写 stderr 或调试文件。
    """
    config = config or get_config()
    handler: logging.Handler
    if config.log_debug and config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()  # stderr
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=[handler])
    logging.getLogger("run_until").setLevel(logging.DEBUG if verbose else config.log_level)
