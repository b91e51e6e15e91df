"""Retry policy for transient build and test failures.

Build and test collaborators report infrastructure hiccups either as a
transient outcome or by raising TransientCollaboratorError. The state
machine retries those up to ``max_build_retries`` times with exponential
backoff and jitter; every other failure is final on the first attempt.

Example:
    >>> policy = RetryPolicy(RetryConfig(initial_delay_ms=500), max_retries=2)
    >>> for attempt in policy.attempts():
    ...     outcome = collaborator.build(version, environment, cancel_event)
    ...     if outcome.success or not outcome.transient or attempt.is_last_attempt:
    ...         break
    ...     if not attempt.wait(cancel_event):
    ...         break  # cancelled during backoff
"""

from __future__ import annotations

import random
import threading
from collections.abc import Iterator

import structlog

from launchpad_core.errors import TransientCollaboratorError
from launchpad_core.schemas.config import RetryConfig

logger = structlog.get_logger(__name__)


class RetryPolicy:
    """Exponential backoff with optional ±25% jitter.

    Attributes:
        config: Backoff settings.
        max_retries: Retries after the first attempt.
    """

    def __init__(self, config: RetryConfig | None = None, max_retries: int = 2) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Backoff settings. Uses defaults if None.
            max_retries: Retries after the first attempt (0 disables retries).
        """
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self._config = config or RetryConfig()
        self._max_retries = max_retries

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def max_attempts(self) -> int:
        return self._max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait after 0-indexed ``attempt`` fails."""
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )
        if self._config.jitter:
            jitter_range = base_delay_ms * 0.25
            base_delay_ms += random.uniform(-jitter_range, jitter_range)
        return max(base_delay_ms, 0.0) / 1000.0

    @staticmethod
    def is_transient(exception: BaseException) -> bool:
        """Whether a collaborator exception may be retried."""
        return isinstance(exception, TransientCollaboratorError)

    def attempts(self) -> Iterator[RetryAttempt]:
        """Yield one RetryAttempt per allowed attempt."""
        for number in range(self.max_attempts):
            yield RetryAttempt(self, number)


class RetryAttempt:
    """A single attempt handed out by RetryPolicy.attempts()."""

    def __init__(self, policy: RetryPolicy, attempt_number: int) -> None:
        self._policy = policy
        self._attempt_number = attempt_number

    @property
    def attempt_number(self) -> int:
        """0-indexed attempt number."""
        return self._attempt_number

    @property
    def is_last_attempt(self) -> bool:
        return self._attempt_number >= self._policy.max_attempts - 1

    def wait(self, cancel_event: threading.Event | None = None) -> bool:
        """Back off before the next attempt.

        Args:
            cancel_event: Interrupts the wait when set.

        Returns:
            False if the wait was interrupted by cancellation, True otherwise.
        """
        if self.is_last_attempt:
            return True
        delay = self._policy.calculate_delay(self._attempt_number)
        logger.debug("retry_wait", attempt=self._attempt_number + 1, delay_seconds=delay)
        if cancel_event is None:
            threading.Event().wait(delay)
            return True
        return not cancel_event.wait(delay)


__all__ = ["RetryAttempt", "RetryPolicy"]
