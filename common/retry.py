"""
Retry utilities for handling transient failures
"""
import random
import time
from typing import Callable, Any, Optional, List
import logging

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [Exception]

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add jitter to avoid thundering herd
        delay *= (0.5 + random.random() * 0.5)

    return delay

def retry_call(func: Callable, config: RetryConfig, *args, sleep: Callable[[float], Any] = time.sleep, **kwargs) -> Any:
    """Call func, retrying with exponential backoff; re-raises the last error"""
    last_exception = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not any(isinstance(e, exc_type) for exc_type in config.retryable_exceptions):
                logger.warning(f"Non-retryable exception: {e}")
                raise

            if attempt == config.max_attempts:
                logger.error(f"Max retry attempts ({config.max_attempts}) reached for {name}")
                break

            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {name}: {e}. Retrying in {delay:.2f}s")
            sleep(delay)

    raise last_exception

class Backoff:
    """Unbounded retry schedule: grows per failure, resets on success"""

    def __init__(self, config: RetryConfig):
        self.config = config
        self.failures = 0

    def next_delay(self) -> float:
        self.failures += 1
        return calculate_delay(self.failures, self.config)

    def reset(self):
        self.failures = 0
