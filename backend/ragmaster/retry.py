# ragmaster/retry.py
# ──────────────────────────────────────────────────────────────────────────────
#  One bounded "retry until predicate or attempts exhausted" combinator, used
#  by the completion retry (exponential backoff on transient errors) and by
#  the provider file-activation poll (fixed interval until a terminal state).
# ──────────────────────────────────────────────────────────────────────────────
import random
import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

Delay = Callable[[int], float]


class RetryExhausted(Exception):
    """Raised when ``until`` never held within the allowed attempts."""

    def __init__(self, attempts: int, last_result=None):
        super().__init__(f"condition not met after {attempts} attempts")
        self.attempts    = attempts
        self.last_result = last_result


def fixed(seconds: float) -> Delay:
    return lambda attempt: seconds


def exponential(base: float = 1.0, jitter: float = 0.5, rand: Callable[[], float] = random.random) -> Delay:
    """``base * 2**attempt`` plus up to ``jitter`` seconds of noise (attempt is 0-based)."""
    return lambda attempt: base * (2 ** attempt) + rand() * jitter


def retry_call(
    func: Callable[[], T],
    *,
    attempts: int,
    delay: Delay,
    retry_on: Callable[[BaseException], bool] = lambda exc: False,
    until: Optional[Callable[[T], bool]] = None,
    on_retry: Optional[Callable[[int, float, Optional[BaseException]], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` up to ``attempts`` times.

    - An exception for which ``retry_on`` is true is retried; the last one is
      re-raised once attempts run out. Any other exception propagates at once.
    - With ``until``, a result for which the predicate is false is retried;
      ``RetryExhausted`` is raised once attempts run out.
    - No sleep happens after the final attempt.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    result = None
    for attempt in range(attempts):
        last = attempt == attempts - 1
        try:
            result = func()
        except Exception as exc:
            if last or not retry_on(exc):
                raise
            wait = delay(attempt)
            if on_retry:
                on_retry(attempt, wait, exc)
            sleep(wait)
            continue

        if until is None or until(result):
            return result
        if last:
            break
        wait = delay(attempt)
        if on_retry:
            on_retry(attempt, wait, None)
        sleep(wait)

    raise RetryExhausted(attempts, result)
