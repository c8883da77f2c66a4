"""Blocking wait-until-ready combinator.

``wait_until`` polls a probe at a fixed (optionally growing) interval until it
reports ready, the attempt budget is spent, or the overall timeout elapses. It
returns a WaitOutcome instead of raising, so callers can tell "not ready yet"
apart from other failures and pick their own error.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitOutcome:
    """Result of a wait loop.

    Attributes:
        ready: Whether the probe reported ready before giving up.
        attempts: Number of probe calls made.
        elapsed: Seconds spent waiting, measured with the injected clock.
        last_error: Message of the last exception raised by the probe, if any.
    """
    ready: bool
    attempts: int
    elapsed: float
    last_error: Optional[str] = None


def wait_until(
    probe: Callable[[], bool],
    interval: float,
    timeout: float,
    max_attempts: Optional[int] = None,
    backoff: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WaitOutcome:
    """Poll ``probe`` until it returns True.

    An exception from the probe counts as "not ready" and is remembered in
    ``last_error``.

    Args:
        probe: Zero-argument readiness check.
        interval: Initial delay between polls, in seconds.
        timeout: Overall time budget, in seconds.
        max_attempts: Optional cap on probe calls.
        backoff: Multiplier applied to the interval after each failed poll.
        sleep: Sleep function (injectable for tests).
        clock: Monotonic clock (injectable for tests).

    Returns:
        WaitOutcome: ``ready`` is False when the budget ran out.
    """
    start = clock()
    attempts = 0
    delay = interval
    last_error: Optional[str] = None
    while True:
        attempts += 1
        try:
            if probe():
                return WaitOutcome(True, attempts, clock() - start, last_error)
        except Exception as exc:
            last_error = str(exc)
            logger.debug("Readiness probe raised on attempt %d: %s", attempts, exc)

        elapsed = clock() - start
        if max_attempts is not None and attempts >= max_attempts:
            return WaitOutcome(False, attempts, elapsed, last_error)
        if elapsed + delay > timeout:
            return WaitOutcome(False, attempts, elapsed, last_error)
        sleep(delay)
        delay *= backoff
