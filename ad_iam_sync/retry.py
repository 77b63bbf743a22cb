"""
Retry policy for establishing directory and cloud sessions.

Only connection setup is retried. Membership fetches and mutations run once
and report their failure.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how patiently, a connection attempt is repeated."""

    max_attempts: int = 3
    wait_seconds: float = 5.0
    backoff: float = 1.0

    @classmethod
    def from_config(cls, error_handling: Optional[Dict[str, Any]]) -> 'RetryPolicy':
        """
        Build a policy from the error_handling configuration section.

        Args:
            error_handling: Dictionary with max_retries, retry_wait_seconds
                and optionally retry_backoff

        Returns:
            RetryPolicy (at least one attempt)
        """
        config = error_handling or {}
        return cls(
            max_attempts=max(1, int(config.get('max_retries', 3))),
            wait_seconds=float(config.get('retry_wait_seconds', 5)),
            backoff=float(config.get('retry_backoff', 1.0))
        )

    def call(self, func: Callable[[], Any], operation: str,
             retry_on: Tuple[Type[BaseException], ...] = (Exception,)) -> Any:
        """
        Call func until it succeeds or the attempts run out.

        Args:
            func: Zero-argument callable
            operation: Name used in log messages
            retry_on: Exception types that trigger another attempt; anything
                else propagates immediately

        Returns:
            Result of func

        Raises:
            MaxRetriesExceeded: If every attempt failed
        """
        wait_time = self.wait_seconds

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = func()
            except retry_on as e:
                if attempt == self.max_attempts:
                    raise MaxRetriesExceeded(attempt, e) from e

                logger.warning(f"{operation} failed on attempt {attempt} of {self.max_attempts} "
                               f"({type(e).__name__}: {e}); retrying in {wait_time:.1f}s")
                time.sleep(wait_time)
                wait_time *= self.backoff
            else:
                if attempt > 1:
                    logger.info(f"{operation} succeeded on attempt {attempt}")
                return result
