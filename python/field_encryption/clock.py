"""Wall clock abstraction used for DEK timestamps and expiry."""

from __future__ import annotations

import time
from typing import Protocol

MILLIS_IN_DAY: int = 24 * 60 * 60 * 1000


class Clock(Protocol):
    def now_unix_millis(self) -> int:
        ...


class SystemClock:
    """Clock backed by the system time."""

    def now_unix_millis(self) -> int:
        return time.time_ns() // 1_000_000
