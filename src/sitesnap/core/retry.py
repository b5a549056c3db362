"""
Retry logic with exponential backoff for repository operations.

Only transient errors (NetworkError) are retried. Validation, packaging and
conflict errors propagate on the first attempt since repeating them cannot
change the outcome.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

from .exceptions import NetworkError


logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including first try)
        initial_delay_ms: Initial delay in milliseconds
        max_delay_ms: Maximum delay in milliseconds
        backoff_multiplier: Multiplier for exponential backoff
        jitter: Whether to add random jitter to delay
    """
    max_attempts: int = 4
    initial_delay_ms: float = 500.0
    max_delay_ms: float = 8000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryConfig":
        if not data:
            return cls()
        defaults = cls()
        return cls(
            max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
            initial_delay_ms=float(data.get("initial_delay_ms", defaults.initial_delay_ms)),
            max_delay_ms=float(data.get("max_delay_ms", defaults.max_delay_ms)),
            backoff_multiplier=float(data.get("backoff_multiplier", defaults.backoff_multiplier)),
            jitter=bool(data.get("jitter", defaults.jitter)),
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay for a given attempt with exponential backoff.

    Args:
        attempt: Attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay_ms = min(
        config.initial_delay_ms * (config.backoff_multiplier ** attempt),
        config.max_delay_ms
    )

    # ±25% random variation
    if config.jitter:
        jitter_factor = 0.75 + (random.random() * 0.5)
        delay_ms *= jitter_factor

    return delay_ms / 1000.0


def retry_with_backoff(
    operation: Callable[[], Any],
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...] = (NetworkError,),
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Execute an operation with retry and exponential backoff.

    Exceptions outside ``retry_on`` propagate immediately. When every attempt
    fails, the last retryable exception is re-raised.

    Args:
        operation: Callable to execute (should take no arguments)
        config: Retry configuration
        retry_on: Tuple of exception types to retry on
        operation_name: Name for logging
        sleep: Sleep function (injectable for tests)

    Returns:
        The operation's return value

    Example:
        >>> config = RetryConfig(max_attempts=3)
        >>> exists = retry_with_backoff(lambda: repo.exists(sid), config)
    """
    attempts = max(1, config.max_attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            logger.debug(f"{operation_name}: attempt {attempt + 1}/{attempts}")
            result = operation()

            if attempt > 0:
                logger.info(f"{operation_name} succeeded after {attempt + 1} attempts")

            return result

        except retry_on as e:
            last_error = e
            logger.warning(
                f"{operation_name} failed on attempt {attempt + 1}/{attempts}: {e}"
            )

            # Don't sleep after the last attempt
            if attempt < attempts - 1:
                delay = calculate_delay(attempt, config)
                logger.debug(f"Backing off for {delay:.3f}s before retry")
                sleep(delay)

    logger.error(f"{operation_name} exhausted all {attempts} attempts")
    raise last_error
