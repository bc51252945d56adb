"""Bounded polling for subsystems outside the engine's control.

This is the only retry loop in the engine. The apply, verify and rollback
sequence itself never retries.
"""

import time
from typing import Callable

from k3sfw.core.output import console


def wait_until(
    predicate: Callable[[], bool],
    *,
    timeout: float,
    poll_interval: float = 1.0,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll predicate until it returns True or timeout seconds elapse.

    Args:
        predicate: Check to poll; exceptions propagate
        timeout: Maximum seconds to wait
        poll_interval: Seconds between polls
        description: What is being waited for (for output)

    Returns:
        True if the predicate succeeded, False on timeout
    """
    deadline = clock() + timeout
    attempt = 0

    while True:
        attempt += 1
        if predicate():
            if attempt > 1:
                console.verbose(f"{description} ready after {attempt} attempts")
            return True

        remaining = deadline - clock()
        if remaining <= 0:
            console.warn(f"Timed out after {timeout:g}s waiting for {description}")
            return False

        console.debug(f"Waiting for {description} (attempt {attempt})")
        sleep(min(poll_interval, remaining))
