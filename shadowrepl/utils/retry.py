"""
Retry utilities for shadowrepl
"""

import time
import random
from typing import Callable, Any, Type, Tuple
from functools import wraps
from dataclasses import dataclass

import structlog

from ..exceptions import ConnectionError


@dataclass
class RetryConfig:
    """Configuration for retry mechanism"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[Exception], ...] = (ConnectionError,)


def compute_delay(config: RetryConfig, attempt: int) -> float:
    """Backoff delay before the attempt following ``attempt`` (0-based)"""
    delay = min(
        config.base_delay * (config.exponential_base ** attempt),
        config.max_delay
    )
    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)
    return delay


def retry(config: RetryConfig = None):
    """
    Decorator for retrying function calls with exponential backoff

    Only ``config.retryable_exceptions`` are retried; anything else propagates
    immediately. The last retryable exception is re-raised once attempts run out.

    Args:
        config: Retry configuration. If None, uses default config.
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            logger = structlog.get_logger()
            for attempt in range(config.max_attempts):
                try:
                    return func(*args, **kwargs)
                except config.retryable_exceptions as e:
                    if attempt == config.max_attempts - 1:
                        raise
                    delay = compute_delay(config, attempt)
                    logger.warning("Retrying after error",
                                   function=func.__name__,
                                   attempt=attempt + 1,
                                   max_attempts=config.max_attempts,
                                   delay=round(delay, 3),
                                   error=str(e))
                    time.sleep(delay)

        return wrapper
    return decorator


def retry_on_connection_error(max_attempts: int = 3, base_delay: float = 1.0):
    """
    Convenience decorator for retrying on connection errors
    """
    return retry(RetryConfig(
        max_attempts=max_attempts,
        base_delay=base_delay,
        retryable_exceptions=(ConnectionError,)
    ))
