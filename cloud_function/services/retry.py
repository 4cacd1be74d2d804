"""
Bounded exponential backoff for calls to unreliable collaborators.

The AI client never retries on its own; callers wrap it with a RetryPolicy so
every attempt stays visible in the logs and in cost tracking.
"""
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from config import RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY, RETRY_MAX_DELAY
from services.logging_service import get_logger

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def is_retryable(self, exc: BaseException, retry_on: Tuple[Type[BaseException], ...]) -> bool:
        return bool(getattr(exc, "retryable", False)) or (bool(retry_on) and isinstance(exc, retry_on))

    def call(self, func: Callable[..., T], *args, description: str = "operation",
             retry_on: Tuple[Type[BaseException], ...] = (), **kwargs) -> T:
        """
        Calls func(*args, **kwargs), retrying retryable failures.

        The last exception is re-raised unchanged once attempts are exhausted.
        """
        logger = get_logger()
        attempts = max(1, self.max_attempts)

        for attempt in range(1, attempts + 1):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if attempt >= attempts or not self.is_retryable(e, retry_on):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{attempts}): {e}. Retrying in {delay:.1f}s",
                    error_kind=type(e).__name__,
                    attempt=attempt,
                )
                self.sleep(delay)

        raise AssertionError("unreachable")
