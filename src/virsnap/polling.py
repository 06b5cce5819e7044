"""Polling helper shared by the shutdown and blocked-state handling."""

import time
from typing import Callable


def poll_until(
    predicate: Callable[[], bool],
    interval: float,
    timeout: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Evaluate ``predicate`` every ``interval`` seconds until it is true.

    The predicate is checked once immediately. Returns True as soon as it
    holds, False once ``timeout`` seconds have elapsed without it holding.
    """
    if predicate():
        return True

    deadline = clock() + timeout
    while True:
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining))
        if predicate():
            return True
