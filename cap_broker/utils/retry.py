"""Retry utilities with exponential backoff."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from cap_broker.exceptions import BrokerError, ErrorKind

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0  # Base delay in seconds
    max_delay: float = 60.0  # Maximum delay in seconds
    exponential_base: float = 2.0  # Exponential backoff multiplier
    jitter: bool = True  # Add random jitter to delays
    backoff_strategy: str = "exponential"  # exponential, linear, fixed


def default_retry_if(exception: Exception) -> bool:
    """Retry anything except caller mistakes and authentication failures."""
    if isinstance(exception, BrokerError):
        return exception.kind not in (
            ErrorKind.VALIDATION,
            ErrorKind.AUTHENTICATION,
            ErrorKind.CONFLICT,
            ErrorKind.NOT_FOUND,
        )
    return True


class RetryManager:
    """Manages retry logic with exponential backoff."""

    def __init__(self, config: RetryConfig, retry_if: Optional[Callable[[Exception], bool]] = None):
        """Initialize retry manager.

        Args:
            config: Retry configuration
            retry_if: Predicate deciding whether an exception is retryable
        """
        self.config = config
        self.retry_if = retry_if or default_retry_if

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt number."""
        if self.config.backoff_strategy == "exponential":
            delay = self.config.base_delay * (self.config.exponential_base ** (attempt - 1))
        elif self.config.backoff_strategy == "linear":
            delay = self.config.base_delay * attempt
        else:  # fixed
            delay = self.config.base_delay

        # Apply maximum delay limit
        delay = min(delay, self.config.max_delay)

        # Add jitter if enabled
        if self.config.jitter:
            jitter_range = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0, delay)

    def should_retry(self, attempt: int, exception: Exception) -> bool:
        """Determine if operation should be retried."""
        if attempt >= self.config.max_attempts:
            return False
        return self.retry_if(exception)


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    config: Optional[RetryConfig] = None,
    retry_if: Optional[Callable[[Exception], bool]] = None,
    operation_name: Optional[str] = None,
    **kwargs
) -> Any:
    """Await ``func(*args, **kwargs)``, retrying with backoff on retryable failures.

    The last exception is re-raised unchanged once attempts are exhausted or the
    failure is classified as permanent.
    """
    config = config or RetryConfig()
    retry_manager = RetryManager(config, retry_if)
    name = operation_name or getattr(func, '__name__', 'operation')

    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not retry_manager.should_retry(attempt, e):
                if attempt > 1:
                    logger.warning(f"Giving up on {name} after attempt {attempt}: {e}")
                raise

            delay = retry_manager.calculate_delay(attempt)
            logger.warning(
                f"Attempt {attempt} of {name} failed: {e}. "
                f"Retrying in {delay:.2f} seconds..."
            )
            await asyncio.sleep(delay)
            attempt += 1
