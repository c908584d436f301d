from __future__ import annotations

from loguru import logger

from .errors import StorageError
from .ledger import OutboxLedger
from .queue import OutboxQueue


class RecoveryLoader:
    """Rehydrate an OutboxQueue from the ledger on cold start.

    Must run before the queue accepts traffic; ``enqueue`` waits for it.
    An unreadable ledger is logged and the queue starts empty so startup
    never fails on it.
    """

    def __init__(self, ledger: OutboxLedger):
        self.ledger = ledger

    async def run(self, queue: OutboxQueue) -> int:
        try:
            events = await self.ledger.load_active()
        except StorageError as exc:
            # undecodable rows are skipped one by one inside load_active()
            logger.error(f"Outbox ledger unreadable, starting empty: {type(exc).__name__}: {exc}")
            events = []

        queue.restore(events)
        if events:
            logger.info(
                f"Recovered {queue.pending_count} pending and "
                f"{queue.dead_letter_count} dead-lettered events"
            )
        else:
            logger.debug("Recovery: ledger holds no active events")
        return len(events)
