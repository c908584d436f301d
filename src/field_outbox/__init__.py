"""
Field Outbox

Offline durable outbox for worker actions. Every action is persisted to a
local ledger before delivery and reaches the sync endpoint at least once,
surviving crashes, restarts and concurrent flush triggers.

Usage:
    from field_outbox import WorkerEventOutbox, SqliteLedger, HttpSubmitter

    outbox = WorkerEventOutbox(
        SqliteLedger("./data/outbox.db"),
        HttpSubmitter("https://api.example.com", token="..."),
        flush_interval_sec=60,
    )
    async with outbox:
        await outbox.record_task_completion("t-1", "Mop lobby", "w-1", "b-7")
"""

from .alerts import AlertBus, AuthRequiredAlert, DeadLetterAlert, DeadLetterReason
from .errors import (
    AuthError,
    DeliveryError,
    OutboxError,
    PermanentError,
    QueueFullError,
    RetryExhausted,
    StorageError,
    TransientNetworkError,
)
from .ledger import InMemoryLedger, OutboxLedger, PostgresLedger, SqliteLedger
from .models import EventKind, EventStatus, OutboxEvent, QueueStatus
from .outbox import OutboxHealth, WorkerEventOutbox
from .policy import RetryPolicy, default_retry_classifier
from .queue import FlushResult, OutboxQueue
from .recovery import RecoveryLoader
from .settings import OutboxSettings, get_settings
from .submitter import HttpSubmitter, Submitter, classify_response

__version__ = "0.1.0"
__all__ = [
    # facade
    "WorkerEventOutbox",
    "OutboxHealth",
    # models
    "OutboxEvent",
    "EventKind",
    "EventStatus",
    "QueueStatus",
    # queue
    "OutboxQueue",
    "FlushResult",
    "RecoveryLoader",
    # ledger
    "OutboxLedger",
    "SqliteLedger",
    "PostgresLedger",
    "InMemoryLedger",
    # delivery
    "Submitter",
    "HttpSubmitter",
    "classify_response",
    "RetryPolicy",
    "default_retry_classifier",
    # alerts
    "AlertBus",
    "DeadLetterAlert",
    "AuthRequiredAlert",
    "DeadLetterReason",
    # errors
    "OutboxError",
    "StorageError",
    "QueueFullError",
    "DeliveryError",
    "AuthError",
    "TransientNetworkError",
    "PermanentError",
    "RetryExhausted",
    # config
    "OutboxSettings",
    "get_settings",
]
