"""run-until 异常类。"""

from __future__ import annotations

__all__ = [
    "RunUntilError",
    "ConfigError",
    "TargetStringNotFoundError",
]


class RunUntilError(Exception):
    """run-until 基础异常。"""
    pass


class ConfigError(RunUntilError):
    """配置错误（如子进程环境中缺少目标字符串）。"""
    pass


class TargetStringNotFoundError(RunUntilError):
    """命令在输出目标字符串之前退出。

    Attributes:
        target_string: 要查找的字符串
        exit_code: 子进程退出码（被信号终止时为负数）
    """

    def __init__(self, target_string: str, exit_code: int | None = None) -> None:
        self.target_string = target_string
        self.exit_code = exit_code
        super().__init__(
            "Target string was not found while running the command "
            f"(target={target_string!r}, exit_code={exit_code})."
        )
