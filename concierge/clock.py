"""Time source injected into caches, rate limiters and session expiry"""

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Current time in seconds"""
        ...


class SystemClock:
    """Wall-clock time source"""

    def now(self) -> float:
        return time.time()


system_clock = SystemClock()
