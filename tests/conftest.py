"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
LONG_TASK = FIXTURES_DIR / "long_task.py"

IS_WINDOWS = sys.platform == "win32"


def long_task_command(*args: str) -> str:
    """长任务 fixture 的 shell 命令行。"""
    return " ".join(shlex.quote(a) for a in (sys.executable, str(LONG_TASK), *args))


def is_running(pid: int) -> bool:
    """进程是否仍在运行（僵尸进程视为已退出）。"""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        try:
            state = stat.read_text().rsplit(")", 1)[1].split()[0]
        except (OSError, IndexError):
            return True
        return state not in ("Z", "X")
    return True


@pytest.fixture
def fallback_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """子进程 stdout 落盘文件放到临时目录。"""
    path = tmp_path / "stdout.txt"
    monkeypatch.setenv("RUN_UNTIL_FALLBACK_FILE", str(path))
    return path


@pytest.fixture
def child_env() -> dict[str, str]:
    """让 `python -m run_until.child_runner` 可导入的环境。"""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(SRC_DIR), env.get("PYTHONPATH")) if p)
    return env
