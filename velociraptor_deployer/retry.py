"""Bounded retry policy for individually risky operations."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from velociraptor_deployer.errors import DeploymentError
from velociraptor_deployer.logging_utils import get_logger

LOGGER = get_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry with fixed or exponential backoff, capped at ``max_attempts``."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    exponential: bool = True
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be greater than zero.")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delay values must not be negative.")

    def delay_for(self, attempt: int) -> float:
        """Return the pause after failed attempt number ``attempt`` (1-based)."""
        if not self.exponential:
            return min(self.base_delay_seconds, self.max_delay_seconds)
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)

    def call(
        self,
        operation: Callable[[], T],
        *,
        retry_on: tuple[type[BaseException], ...],
        label: str,
        cancel_event: threading.Event | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or the attempts are exhausted.

        Only exceptions listed in ``retry_on`` are retried; anything else
        propagates immediately. Setting ``cancel_event`` during a backoff pause
        aborts with :class:`DeploymentError`.
        """
        error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation()
            except retry_on as exc:
                error = exc
                if attempt >= self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                LOGGER.warning(
                    "%s failed (attempt %s/%s): %s",
                    label,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise DeploymentError(f"{label} aborted during retry backoff.") from exc
                else:
                    self.sleep(delay)
        assert error is not None
        raise error
