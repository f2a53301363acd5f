"""Explicit retry/backoff policies.

The reply queue schedules its own retries from ``BackoffPolicy.delay``;
call sites that just need to retry an awaitable (storage connect, HTTP
adapters) use ``BackoffPolicy.retrying`` which builds a tenacity retrier
from the same numbers.
"""

import random
from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with proportional jitter.

    Attributes:
        max_attempts: Total attempts allowed, including the first one.
        base_delay_s: Delay after the first failed attempt.
        max_delay_s: Upper bound for any single delay.
        multiplier: Growth factor between consecutive delays.
        jitter: Fraction of the delay that is randomised (0 disables jitter).
    """

    max_attempts: int = 4
    base_delay_s: float = 30.0
    max_delay_s: float = 900.0
    multiplier: float = 2.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("delays must not be negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        exponent = max(attempt - 1, 0)
        raw = min(self.base_delay_s * (self.multiplier**exponent), self.max_delay_s)
        if not self.jitter:
            return raw
        spread = raw * self.jitter
        offset = (rng or random).uniform(-spread, spread)
        return max(0.0, min(raw + offset, self.max_delay_s))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def retrying(self, *exception_types: type[BaseException], reraise: bool = True) -> AsyncRetrying:
        """Build a tenacity retrier for the given exception types."""
        return AsyncRetrying(
            retry=retry_if_exception_type(exception_types or (Exception,)),
            wait=wait_exponential(multiplier=self.base_delay_s, max=self.max_delay_s, exp_base=self.multiplier)
            + wait_random(0, self.base_delay_s * self.jitter),
            stop=stop_after_attempt(self.max_attempts),
            reraise=reraise,
        )
