"""run-until 入口点。

支持: python -m run_until
"""

from .cli import main

if __name__ == "__main__":
    main()
