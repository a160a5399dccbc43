"""Bounded retry policy and decorator for transient API errors."""

import time
import random
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from .logger import get_logger
import config

logger = get_logger()

# Define a generic type variable for the decorated function's return type
F = TypeVar('F', bound=Callable[..., Any])


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try a call and how long to wait in between.

    Attributes:
        max_attempts: Maximum number of attempts (including the initial one).
        initial_delay: Delay before the first retry in seconds.
        backoff_factor: Multiplier for the delay in subsequent retries.
        jitter: Factor for adding random jitter to delay (delay * jitter * random.uniform(-1, 1)).
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    jitter: float = 0.1

    def delays(self):
        """Yields the wait time before each retry (max_attempts - 1 values)."""
        delay = self.initial_delay
        for _ in range(max(self.max_attempts - 1, 0)):
            actual_jitter = delay * self.jitter * random.uniform(-1, 1)
            yield max(0.0, delay + actual_jitter)
            delay *= self.backoff_factor


def call_with_retry(
    func: Callable[..., Any],
    *args: Any,
    policy: RetryPolicy = RetryPolicy(),
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    **kwargs: Any,
) -> Any:
    """Calls func, retrying on the given exceptions according to policy.

    An exception for which retry_if returns False is re-raised immediately.
    """
    name = getattr(func, '__name__', repr(func))
    delays = policy.delays()
    attempts = 0
    while True:
        attempts += 1
        try:
            if config.DEBUG and attempts > 1:
                logger.debug(f"Retrying {name} (Attempt {attempts}/{policy.max_attempts})...")
            return func(*args, **kwargs)
        except exceptions as e:
            if retry_if is not None and not retry_if(e):
                raise
            wait_time = next(delays, None)
            if wait_time is None:
                logger.error(
                    f"Function {name} failed after {attempts} attempts due to {type(e).__name__}.",
                    exc_info=config.DEBUG
                )
                raise
            logger.warning(
                f"Function {name} failed with {type(e).__name__} (Attempt {attempts}/{policy.max_attempts}). "
                f"Retrying in {wait_time:.2f} seconds...",
                exc_info=config.DEBUG
            )
            time.sleep(wait_time)


def retry_on_exception(
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    jitter: float = 0.1,
    retry_if: Optional[Callable[[BaseException], bool]] = None,
) -> Callable[[F], F]:
    """Decorator to retry a function call upon specific exceptions with exponential backoff.

    Args:
        exceptions: A tuple of exception types to catch and retry on.
        max_attempts: Maximum number of attempts (including the initial one).
        initial_delay: Delay before the first retry in seconds.
        backoff_factor: Multiplier for the delay in subsequent retries.
        jitter: Factor for adding random jitter to delay.
        retry_if: Optional predicate; exceptions it rejects are raised without retrying.

    Returns:
        A decorator function.
    """
    policy = RetryPolicy(max_attempts, initial_delay, backoff_factor, jitter)

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return call_with_retry(
                func, *args, policy=policy, exceptions=exceptions, retry_if=retry_if, **kwargs
            )
        return wrapper  # type: ignore
    return decorator
