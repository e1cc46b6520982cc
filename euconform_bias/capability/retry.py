# File: euconform_bias/capability/retry.py
"""
Retry policy with exponential backoff.

A `RetryPolicy` bundles the attempt bound, the backoff curve and the rule
for which errors are not worth retrying, so every network-bound operation
retries the same way.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from euconform_bias.errors import ModelNotFoundError, PermissionDeniedError
from euconform_bias.utils.config import DetectionSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how patiently to retry a failing operation.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay in seconds after the first failure.
        multiplier: Growth factor of the delay per further failure.
        non_retryable: Exception types that fail fast.
        non_retryable_messages: Lower-case message fragments that fail fast.

    Examples:
        >>> policy = RetryPolicy(max_attempts=3, base_delay=1.0)
        >>> [policy.delay_for(a) for a in range(3)]
        [1.0, 2.0, 4.0]
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    non_retryable: Tuple[Type[BaseException], ...] = (ModelNotFoundError, PermissionDeniedError)
    non_retryable_messages: Tuple[str, ...] = (
        "not found",
        "not available",
        "permission denied",
        "unauthorized",
    )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def from_settings(cls, settings: DetectionSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            multiplier=settings.backoff_multiplier,
        )

    def is_retryable(self, error: BaseException) -> bool:
        """False for flagged error types or messages, True otherwise."""
        if isinstance(error, self.non_retryable):
            return False
        message = str(error).lower()
        return not any(fragment in message for fragment in self.non_retryable_messages)

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (0-based)."""
        return self.base_delay * (self.multiplier ** attempt)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Await `operation()` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument factory returning a fresh awaitable per attempt.
            description: Label used in log messages.
            sleep: Sleep function (injectable for tests).
            on_retry: Called with (attempt, error) before each backoff sleep.

        Returns:
            The operation's result.

        Raises:
            The last error once attempts are exhausted, or a non-retryable
            error immediately.
        """
        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e):
                    logger.debug(f"{description}: non-retryable error: {e}")
                    raise

                if attempt == self.max_attempts - 1:
                    logger.debug(f"{description}: giving up after {self.max_attempts} attempts")
                    raise

                delay = self.delay_for(attempt)
                logger.debug(
                    f"{description}: attempt {attempt + 1}/{self.max_attempts} failed ({e}), "
                    f"retrying in {delay:.1f}s"
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                await sleep(delay)

        # Unreachable: the loop either returns or raises
        raise RuntimeError(f"{description}: retry loop exited without a result")
