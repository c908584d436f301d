"""
Operational alerts for the outbox.

Provides in-process pub/sub for signals that need a human or a
collaborator to act: an event was dead-lettered, or the backend rejected
our credentials and flushing is halted until re-authentication.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Union

from loguru import logger


class DeadLetterReason(str, Enum):
    RETRY_EXHAUSTED = "retry_exhausted"
    REJECTED = "rejected"  # permanent error from the endpoint


@dataclass(frozen=True)
class DeadLetterAlert:
    """Immutable dead-letter notification.

    Attributes:
        event_id: Id of the withdrawn event
        kind: Event kind value (e.g. "task_completion")
        worker_id: Subject worker
        building_id: Subject building
        retry_count: Failed attempts recorded when it was withdrawn
        reason: Why it was withdrawn
        error: Last error text, if any
    """

    event_id: str
    kind: str
    worker_id: str
    building_id: str
    retry_count: int
    reason: DeadLetterReason
    error: str | None = None


@dataclass(frozen=True)
class AuthRequiredAlert:
    """Flushing halted; the sync endpoint answered 401/403."""

    status_code: int | None
    pending: int


Alert = Union[DeadLetterAlert, AuthRequiredAlert]


class AlertSubscriber(Protocol):
    """Async callable accepting an alert. Exceptions are caught and logged."""

    async def __call__(self, alert: Alert) -> None: ...


class AlertBus:
    """In-process pub/sub bus for outbox alerts.

    Supports multiple subscribers with error isolation. One subscriber's
    failure does not affect others or the flush pass that raised the alert.

    Example:
        bus = AlertBus()

        async def page_ops(alert):
            if isinstance(alert, DeadLetterAlert):
                await notify(alert.event_id)

        bus.subscribe(page_ops)
    """

    def __init__(self) -> None:
        self._subs: list[AlertSubscriber] = []

    def subscribe(self, callback: AlertSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Alert subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: AlertSubscriber) -> None:
        """Remove a subscriber. No-op if it was never added."""
        try:
            self._subs.remove(callback)
            logger.debug(f"Alert subscriber removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, alert: Alert) -> None:
        """Deliver to all subscribers in registration order (best effort)."""
        if isinstance(alert, DeadLetterAlert):
            logger.error(
                f"Dead-lettered event {alert.event_id} kind={alert.kind} "
                f"worker={alert.worker_id} reason={alert.reason.value} "
                f"retries={alert.retry_count} error={alert.error}"
            )
        else:
            logger.warning(
                f"Sync halted: re-authentication required "
                f"(status={alert.status_code}, pending={alert.pending})"
            )

        if not self._subs:
            return

        # Iterate over copy to allow unsubscribe during iteration
        for callback in list(self._subs):
            try:
                await callback(alert)
            except Exception as exc:
                logger.warning(f"Alert subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

