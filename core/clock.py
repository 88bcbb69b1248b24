"""
core/clock.py -- Wall-clock source in epoch milliseconds.

Services take a `clock` callable so tests can drive time explicitly.
"""

import time
from collections.abc import Callable

Clock = Callable[[], int]

MS_PER_SECOND = 1000


def now_ms() -> int:
    return int(time.time() * MS_PER_SECOND)
