"""
Bounded retry with backoff.

Every retried exchange read in the engine goes through ``retry_call`` so that
attempt counts, delays and the retryable error classes live in one place.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from core.exceptions import TransientExchangeError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Backoff(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """
    attempts: total tries including the first one
    base_delay: seconds before the first retry
    backoff: LINEAR -> base * n, EXPONENTIAL -> base * 2^(n-1)
    max_delay: optional cap applied after backoff
    retry_on: exception classes considered transient
    """
    attempts: int = 3
    base_delay: float = 1.0
    backoff: Backoff = Backoff.LINEAR
    max_delay: Optional[float] = None
    retry_on: Tuple[Type[BaseException], ...] = (TransientExchangeError,)

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        if self.backoff is Backoff.EXPONENTIAL:
            delay = self.base_delay * (2 ** (retry_number - 1))
        else:
            delay = self.base_delay * retry_number
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return max(delay, 0.0)

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)


NO_RETRY = RetryPolicy(attempts=1, base_delay=0.0)


def retry_call(fn: Callable[..., T], *args: Any, policy: Optional[RetryPolicy] = None,
               description: Optional[str] = None, **kwargs: Any) -> T:
    """
    Call ``fn(*args, **kwargs)``, retrying transient failures per ``policy``.

    Non-retryable exceptions propagate immediately. When the final attempt
    fails the last exception is re-raised unchanged.
    """
    policy = policy or RetryPolicy()
    label = description or getattr(fn, "__name__", "call")
    attempts = max(1, int(policy.attempts))

    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            if not policy.is_retryable(exc) or attempt >= attempts:
                if attempt > 1:
                    logger.warning(f"{label} failed after {attempt} attempt(s): {exc}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{label} failed (attempt {attempt}/{attempts}): {exc}; retrying in {delay:.1f}s"
            )
            if delay > 0:
                time.sleep(delay)

    raise RuntimeError(f"{label}: retry loop exited without result")  # pragma: no cover
