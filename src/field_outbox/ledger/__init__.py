"""Durable ledger backends for the outbox."""

from .base import OutboxLedger
from .memory import InMemoryLedger
from .sqlite import SqliteLedger
from .postgres import PostgresLedger, PostgresLedgerConfig

__all__ = [
    "OutboxLedger",
    "InMemoryLedger",
    "SqliteLedger",
    "PostgresLedger",
    "PostgresLedgerConfig",
]
