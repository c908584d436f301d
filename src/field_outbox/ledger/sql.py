from __future__ import annotations

# Both dialects share one table; the Postgres DDL lives in migrations/versions/0001_sync_queue.py

# ---------------------------------------------------------------------------
# SQLite (on-device ledger, qmark parameters, ISO-8601 TEXT timestamps)
# ---------------------------------------------------------------------------

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_queue (
    id            TEXT    PRIMARY KEY,
    entity_type   TEXT    NOT NULL,
    entity_id     TEXT    NOT NULL,
    action        TEXT    NOT NULL,
    data          TEXT    NOT NULL,
    retry_count   INTEGER NOT NULL DEFAULT 0,
    status        TEXT    NOT NULL DEFAULT 'pending',
    created_at    TEXT    NOT NULL,
    next_retry_at TEXT,
    building_id   TEXT    NOT NULL,
    last_error    TEXT,
    updated_at    TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_queue_status_created
    ON sync_queue(entity_type, status, created_at);

CREATE INDEX IF NOT EXISTS idx_sync_queue_next_retry
    ON sync_queue(next_retry_at);
"""

SQLITE_INSERT = """
INSERT INTO sync_queue
    (id, entity_type, entity_id, action, data, retry_count, status,
     created_at, next_retry_at, building_id, last_error, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

SQLITE_UPDATE_STATUS = """
UPDATE sync_queue
SET status = ?, retry_count = ?, next_retry_at = ?, last_error = ?, updated_at = ?
WHERE id = ? AND entity_type = ?
"""

SQLITE_LOAD_ACTIVE = """
SELECT id, data, retry_count, status, next_retry_at, last_error
FROM sync_queue
WHERE entity_type = ? AND status IN ('pending', 'dead_lettered')
ORDER BY created_at ASC, rowid ASC
"""

SQLITE_GET = """
SELECT id, data, retry_count, status, next_retry_at, last_error
FROM sync_queue
WHERE id = ? AND entity_type = ?
"""

SQLITE_RESET_DEAD = """
UPDATE sync_queue
SET status = 'pending', retry_count = 0, next_retry_at = NULL, updated_at = ?
WHERE entity_type = ? AND status = 'dead_lettered'
"""

SQLITE_CLEAR_ACTIVE = """
DELETE FROM sync_queue
WHERE entity_type = ? AND status IN ('pending', 'dead_lettered')
"""

SQLITE_COUNT_BY_STATUS = """
SELECT status, COUNT(*) FROM sync_queue WHERE entity_type = ? GROUP BY status
"""

# ---------------------------------------------------------------------------
# PostgreSQL (shared ledger, named pyformat parameters, TIMESTAMPTZ)
# ---------------------------------------------------------------------------

PG_INSERT = """
INSERT INTO sync_queue
    (id, entity_type, entity_id, action, data, retry_count, status,
     created_at, next_retry_at, building_id, last_error, updated_at)
VALUES (%(id)s, %(entity_type)s, %(entity_id)s, %(action)s, %(data)s, %(retry_count)s,
        %(status)s, %(created_at)s, %(next_retry_at)s, %(building_id)s, %(last_error)s,
        %(updated_at)s)
"""

PG_UPDATE_STATUS = """
UPDATE sync_queue
SET status = %(status)s, retry_count = %(retry_count)s, next_retry_at = %(next_retry_at)s,
    last_error = %(last_error)s, updated_at = %(updated_at)s
WHERE id = %(id)s AND entity_type = %(entity_type)s
"""

PG_LOAD_ACTIVE = """
SELECT id, data, retry_count, status, next_retry_at, last_error
FROM sync_queue
WHERE entity_type = %(entity_type)s AND status IN ('pending', 'dead_lettered')
ORDER BY created_at ASC
"""

PG_GET = """
SELECT id, data, retry_count, status, next_retry_at, last_error
FROM sync_queue
WHERE id = %(id)s AND entity_type = %(entity_type)s
"""

PG_RESET_DEAD = """
UPDATE sync_queue
SET status = 'pending', retry_count = 0, next_retry_at = NULL, updated_at = %(updated_at)s
WHERE entity_type = %(entity_type)s AND status = 'dead_lettered'
"""

PG_CLEAR_ACTIVE = """
DELETE FROM sync_queue
WHERE entity_type = %(entity_type)s AND status IN ('pending', 'dead_lettered')
"""

PG_COUNT_BY_STATUS = """
SELECT status, COUNT(*) AS n FROM sync_queue
WHERE entity_type = %(entity_type)s GROUP BY status
"""
