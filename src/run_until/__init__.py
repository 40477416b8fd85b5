"""run-until - 运行命令直到输出中出现目标字符串。

用于测试和 CI 脚本等待长时间运行的进程就绪（例如 "Server listening on port 3000"），
无需轮询或固定 sleep。

用法:
    await run_until("listening", "npm", "start")
    await run_until(RunUntilOptions("listening", leave_alive=True), "npm start")

    run-until --targetString listening -- npm start
"""

__version__ = "0.1.0"

from .config import RunUntilOptions
from .errors import ConfigError, RunUntilError, TargetStringNotFoundError
from .supervisor import run_until

__all__ = [
    "__version__",
    "ConfigError",
    "RunUntilError",
    "RunUntilOptions",
    "TargetStringNotFoundError",
    "run_until",
]
