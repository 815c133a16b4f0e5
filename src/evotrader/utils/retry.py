"""Retry utilities with exponential backoff.

``RetryState`` is the pure state machine used by the execution engine:
it counts attempts, computes the next delay and classifies the terminal
outcome without touching any transport. ``retry_with_backoff`` wraps an
arbitrary coroutine for read-only calls (market data, position history).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff parameters.

    The delay before attempt ``n + 1`` is ``base_delay * exponential_base ** (n - 1)``,
    capped at ``max_delay``.
    """

    max_attempts: int = 10
    base_delay: float = 0.5
    max_delay: float = 60.0
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay <= 0 or self.max_delay <= 0:
            raise ValueError("delays must be positive")
        if self.exponential_base <= 1.0:
            raise ValueError(f"exponential_base must be > 1, got {self.exponential_base}")

    def delay_after(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt is 1-based, got {attempt}")
        return min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)


class RetryVerdict(str, Enum):
    """What to do after a failed attempt."""

    RETRY = "retry"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"


@dataclass
class RetryState:
    """Attempt counter and delay schedule for one logical submission."""

    policy: BackoffPolicy
    attempts: int = 0
    delays: list[float] = field(default_factory=list)
    last_error: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.policy.max_attempts

    def begin_attempt(self) -> int:
        """Register a new attempt and return its 1-based number."""
        if self.exhausted:
            raise RuntimeError(f"retry budget of {self.policy.max_attempts} attempts already spent")
        self.attempts += 1
        return self.attempts

    def on_failure(self, error: BaseException, transient: bool) -> tuple[RetryVerdict, float]:
        """Classify a failed attempt.

        Args:
            error: The exception raised by the attempt
            transient: Whether the error is retryable

        Returns:
            ``(verdict, delay)``; ``delay`` is only meaningful for ``RETRY``.
        """
        self.last_error = f"{type(error).__name__}: {error}"
        if not transient:
            return RetryVerdict.REJECTED, 0.0
        if self.exhausted:
            return RetryVerdict.EXHAUSTED, 0.0
        delay = self.policy.delay_after(self.attempts)
        self.delays.append(delay)
        return RetryVerdict.RETRY, delay


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
    sleep: Sleeper = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """
    Retry async function with exponential backoff.

    Args:
        func: Async function to retry
        *args: Positional arguments for func
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay between retries
        exponential_base: Base for exponential backoff calculation
        exceptions: Tuple of exceptions to catch and retry
        sleep: Awaitable sleep function (injectable for tests)
        **kwargs: Keyword arguments for func

    Returns:
        Result of successful function call

    Raises:
        Last exception if all retries fail
    """
    policy = BackoffPolicy(
        max_attempts=max_retries + 1,
        base_delay=initial_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
    )
    name = getattr(func, "__name__", repr(func))

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except exceptions as e:
            if attempt == policy.max_attempts:
                logger.error(f"All {max_retries} retry attempts failed for {name}: {e}")
                raise

            delay = policy.delay_after(attempt)
            logger.warning(f"Retry {attempt}/{max_retries} for {name} after {delay:.2f}s delay: {e}")
            await sleep(delay)

    raise RuntimeError("Retry failed without exception")
