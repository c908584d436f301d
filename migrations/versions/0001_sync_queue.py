"""Create sync_queue ledger table

Revision ID: 0001_sync_queue
Revises:
Create Date: 2026-10-19

Adds:
- sync_queue: durable outbox ledger shared by PostgresLedger instances
- Index on (entity_type, status, created_at) for FIFO recovery scans
- Index on next_retry_at for backoff-gated retries
"""

from alembic import op

# revision identifiers, used by Alembic
revision = "0001_sync_queue"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE sync_queue (
            id            TEXT PRIMARY KEY,
            entity_type   TEXT NOT NULL,
            entity_id     TEXT NOT NULL,
            action        TEXT NOT NULL,
            data          TEXT NOT NULL,
            retry_count   INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
            status        TEXT NOT NULL DEFAULT 'pending'
                          CHECK (status IN ('pending', 'completed', 'dead_lettered')),
            created_at    TIMESTAMPTZ NOT NULL,
            next_retry_at TIMESTAMPTZ,
            building_id   TEXT NOT NULL,
            last_error    TEXT,
            updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
    """
    )

    op.execute(
        """
        CREATE INDEX idx_sync_queue_status_created
            ON sync_queue (entity_type, status, created_at);
    """
    )

    # Partial: only rows still waiting out a backoff window
    op.execute(
        """
        CREATE INDEX idx_sync_queue_next_retry
            ON sync_queue (next_retry_at)
            WHERE next_retry_at IS NOT NULL;
    """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS sync_queue CASCADE;")
