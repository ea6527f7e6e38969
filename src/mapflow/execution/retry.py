"""Retry strategies with exponential backoff and jitter.

Only retryable errors (see :func:`mapflow.core.errors.is_retryable`) are
retried; terminal errors surface on the first attempt.

Example:
    >>> strategy = ExponentialBackoff(max_attempts=4, base_delay=0.5, max_delay=10.0, jitter=False)
    >>> [strategy.next_delay(n) for n in range(3)]
    [0.5, 1.0, 2.0]
"""

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from mapflow.core.config import MapflowSettings
from mapflow.core.errors import is_retryable

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before the next attempt.

        Args:
            attempt: Zero-based retry number (0 = first retry)
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Whether to try again after *attempt* attempts have failed."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter

    Attributes:
        max_attempts: Total attempts, including the first
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    @classmethod
    def from_settings(cls, settings: MapflowSettings) -> "ExponentialBackoff":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        if attempt >= self.max_attempts:
            return False
        return error is None or is_retryable(error)


@dataclass
class NoRetry(RetryStrategy):
    """Fail on the first error."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Runs a callable under a retry strategy and tracks the attempts.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_attempts=3))
        >>> result = ctx.run(lambda: connector.read(location).materialize())
        >>> ctx.attempts
        1
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, BaseException, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: BaseException | None = field(default=None, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call *func* until it succeeds or the strategy gives up.

        Raises:
            The last exception once retries are exhausted or it is terminal.
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                self.sleep(delay)


__all__ = ["ExponentialBackoff", "NoRetry", "RetryContext", "RetryStrategy"]
