"""
Custom exceptions for the field outbox.

Provides the error taxonomy used to classify storage and delivery failures.
Delivery errors are recorded on the event and never reach the producer;
storage errors always propagate.
"""

from __future__ import annotations

from typing import Optional


class OutboxError(Exception):
    """Base error for the outbox."""

    pass


class StorageError(OutboxError):
    """Ledger unavailable or write rejected; the event is not durable."""

    pass


class QueueFullError(OutboxError):
    """In-memory active set (pending plus dead-lettered) is at its high-water mark."""

    pass


class DeliveryError(OutboxError):
    """Base for errors raised by a single delivery attempt."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(DeliveryError):
    """401/403: halts the flush pass until re-authentication."""

    pass


class TransientNetworkError(DeliveryError):
    """Timeouts, connectivity, 5xx and 429. Retryable per RetryPolicy."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        rate_limited: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.rate_limited = rate_limited
        self.retry_after = retry_after


class PermanentError(DeliveryError):
    """404 or payload rejected: dead-letter without further attempts."""

    pass


class RetryExhausted(OutboxError):
    """Retry budget spent; carried by the dead-letter alert."""

    def __init__(self, event_id: str, retry_count: int, last_error: Optional[str] = None):
        super().__init__(f"event {event_id} exhausted {retry_count} retries: {last_error}")
        self.event_id = event_id
        self.retry_count = retry_count
        self.last_error = last_error
