from __future__ import annotations

import asyncio
import json
import subprocess
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from .models import EventStatus
from .outbox import WorkerEventOutbox
from .settings import OutboxSettings, get_settings

app = typer.Typer(help="field-outbox operational CLI")

# ---------------------------
# Common options
# ---------------------------


def ledger_opt() -> Optional[str]:
    return typer.Option(
        None, "--ledger", help="SQLite ledger path (overrides FIELD_OUTBOX_LEDGER_PATH)"
    )


def _settings(ledger: Optional[str]) -> OutboxSettings:
    settings = get_settings()
    if ledger:
        settings = settings.model_copy(update={"LEDGER_BACKEND": "sqlite", "LEDGER_PATH": ledger})
    # one-shot commands: no background flushing behind the operator's back
    return settings.model_copy(update={"AUTO_FLUSH": False, "FLUSH_INTERVAL_SEC": None})


def _run(ledger: Optional[str], op):
    async def main():
        async with WorkerEventOutbox.from_settings(_settings(ledger)) as outbox:
            return await op(outbox)

    return asyncio.run(main())


def _echo(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# ---------------------------
# Inspection
# ---------------------------


@app.command("status")
def status(ledger: Optional[str] = ledger_opt()):
    """Queue counters and ledger health."""

    async def op(outbox: WorkerEventOutbox):
        health = await outbox.health()
        counts = await outbox.ledger.count_by_status()
        return {
            **outbox.status().model_dump(mode="json"),
            "ledger_ok": health.ledger_ok,
            "ledger_rows": {s.value: n for s, n in counts.items()},
        }

    _echo(_run(ledger, op))


@app.command("list")
def list_events(
    status: Optional[EventStatus] = typer.Option(
        None, "--status", help="Only events in this status (pending | dead_lettered)"
    ),
    ledger: Optional[str] = ledger_opt(),
):
    """Active events, oldest first."""

    async def op(outbox: WorkerEventOutbox):
        events = outbox.pending_events() + outbox.queue.dead_lettered_events()
        events.sort(key=lambda e: e.created_at)
        if status is not None:
            events = [e for e in events if e.status is status]
        return [e.model_dump(mode="json", exclude={"payload"}) for e in events]

    for row in _run(ledger, op):
        typer.echo(json.dumps(row, default=str))


# ---------------------------
# Operator actions
# ---------------------------


@app.command("flush")
def flush(ledger: Optional[str] = ledger_opt()):
    """Run one delivery pass now."""

    async def op(outbox: WorkerEventOutbox):
        result = await outbox.flush()
        return {**asdict(result), "pending": outbox.pending_count}

    _echo(_run(ledger, op))


@app.command("retry-all")
def retry_all(ledger: Optional[str] = ledger_opt()):
    """Return dead-lettered events to pending (retry_count = 0)."""

    async def op(outbox: WorkerEventOutbox):
        return {"reset": await outbox.retry_all(), "pending": outbox.pending_count}

    _echo(_run(ledger, op))


@app.command("clear")
def clear(
    yes: bool = typer.Option(False, "--yes", help="Confirm deletion of all active events"),
    ledger: Optional[str] = ledger_opt(),
):
    """Delete every pending and dead-lettered event."""
    if not yes:
        typer.echo("Refusing to clear the outbox without --yes", err=True)
        raise typer.Exit(code=2)

    async def op(outbox: WorkerEventOutbox):
        return {"deleted": await outbox.clear()}

    _echo(_run(ledger, op))


@app.command("migrate")
def migrate(target: str = "head"):
    """Run Alembic migrations for the Postgres ledger (default: head)."""
    logger.info(f"Running migrations to {target}")
    result = subprocess.run(
        ["alembic", "upgrade", target],
        capture_output=True,
        text=True,
        cwd=Path(__file__).parent.parent.parent,
    )
    if result.returncode != 0:
        logger.error(f"Migration failed: {result.stderr}")
        sys.exit(1)
    logger.success(f"Successfully migrated to {target}")


if __name__ == "__main__":
    app()
