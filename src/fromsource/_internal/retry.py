"""Bounded retry with exponential backoff for network operations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    """Return True for failures worth retrying (timeouts, resets, 5xx, 429)."""
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        return response is not None and response.status_code in TRANSIENT_STATUS_CODES
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    return isinstance(exc, (ConnectionResetError, TimeoutError))


@dataclass
class RetryPolicy:
    """Retry transient failures a bounded number of times.

    Delay before attempt ``n`` (1-based, first retry is ``n == 2``) is
    ``base_delay * 2 ** (n - 2)`` capped at ``max_delay``. Non-transient
    failures (404, authentication errors, ...) are raised immediately.
    """

    attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1.")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative.")

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def call(self, operation: Callable[[], T], *, name: Optional[str] = None) -> T:
        """Run ``operation``, retrying transient failures with backoff."""
        label = name or getattr(operation, "__name__", "<anonymous>")
        for attempt in range(1, self.attempts + 1):
            try:
                return operation()
            except Exception as exc:
                if not is_transient(exc) or attempt == self.attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed with transient error (%s); retry %d/%d in %.1fs",
                    label,
                    exc,
                    attempt,
                    self.attempts - 1,
                    delay,
                )
                self.sleep(delay)
        raise AssertionError("unreachable")


NO_RETRY = RetryPolicy(attempts=1)
