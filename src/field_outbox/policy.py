from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import PermanentError, TransientNetworkError

_RETRYABLE_HINTS = ("timeout", "timed out", "temporar", "busy", "retry", "unavailable", "reset")


def default_retry_classifier(exc: BaseException) -> bool:
    """Decide whether an unexpected submitter exception is worth retrying."""
    if isinstance(exc, TransientNetworkError):
        return True
    if isinstance(exc, PermanentError):
        return False
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    return any(h in msg for h in _RETRYABLE_HINTS)


@dataclass
class RetryPolicy:
    """Retry eligibility and exponential backoff with jitter.

    ``retry_count`` is the number of failed attempts so far. An event stays
    retryable while ``retry_count < max_retries``; the backoff before the
    next attempt grows as ``initial * multiplier ** (retry_count - 1)`` and is
    capped at ``max_backoff_ms``.
    """

    max_retries: int = 5
    initial_backoff_ms: int = 5_000
    max_backoff_ms: int = 3_600_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    rate_limit_multiplier: float = 4.0
    classify_retryable: Callable[[BaseException], bool] = field(
        default=default_retry_classifier
    )

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.initial_backoff_ms < 0 or self.max_backoff_ms < 0:
            raise ValueError("backoff must be >= 0")

    def is_retryable(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def next_backoff_ms(self, retry_count: int, *, rate_limited: bool = False) -> int:
        exp = max(0, retry_count - 1)
        raw = self.initial_backoff_ms * (self.backoff_multiplier**exp)
        if rate_limited:
            raw *= self.rate_limit_multiplier
        capped = min(raw, self.max_backoff_ms)
        if self.jitter:
            # 50-100% of the capped value
            capped = random.uniform(capped * 0.5, capped)
        return int(capped)

    def next_eligible_at(
        self,
        retry_count: int,
        now: datetime,
        *,
        rate_limited: bool = False,
        retry_after: Optional[float] = None,
    ) -> datetime:
        delay_ms = self.next_backoff_ms(retry_count, rate_limited=rate_limited)
        if retry_after is not None:
            delay_ms = max(delay_ms, int(retry_after * 1000))
        return now + timedelta(milliseconds=delay_ms)
