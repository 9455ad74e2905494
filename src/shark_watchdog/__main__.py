"""Shark Watchdog 入口点。

支持: python -m shark_watchdog
"""

from .app import main

if __name__ == "__main__":
    main()
