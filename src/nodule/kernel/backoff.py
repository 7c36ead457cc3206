from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

T = TypeVar("T")


class _TimedOut:
    # Falsy singleton returned when a bounded wait ran out of time.
    __slots__ = ()

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "TIMED_OUT"


TIMED_OUT = _TimedOut()


def wait_with_backoff(
    timeout: float,
    producer: Callable[[], T],
    *,
    interval: float = 0.01,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T | _TimedOut:
    """Poll ``producer`` until it returns something truthy or ``timeout`` elapses.

    The first call happens before any sleep, so an already-satisfied condition
    returns immediately. Between attempts the interval doubles, capped at a
    quarter of the remaining time, and never shrinks. No sleep extends past
    the deadline. After the deadline one final attempt is made; if that is
    still falsy the ``TIMED_OUT`` sentinel is returned, which callers must
    compare with ``is`` since it is falsy too.
    """
    if interval <= 0:
        raise ValueError("wait_with_backoff interval must be > 0")
    deadline = clock() + max(0.0, timeout)
    while True:
        result = producer()
        if result:
            return result
        remaining = deadline - clock()
        if remaining <= 0:
            return TIMED_OUT
        sleep(min(interval, remaining))
        remaining = deadline - clock()
        interval = max(interval, min(interval * 2, remaining / 4))
