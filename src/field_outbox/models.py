"""
Pydantic data models for the field outbox.

OutboxEvent is the unit of delivery: one worker action awaiting
acknowledgement by the sync endpoint.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .utils import generate_id, isoformat_utc, parse_datetime, parse_optional_datetime, utc_now

ENTITY_TYPE = "worker_event"


class EventKind(str, Enum):
    """Closed set of worker actions the outbox carries."""

    TASK_COMPLETION = "task_completion"
    CLOCK_IN = "clock_in"
    CLOCK_OUT = "clock_out"
    PHOTO_UPLOAD = "photo_upload"
    BUILDING_STATUS_UPDATE = "building_status_update"
    ROUTINE_INSPECTION = "routine_inspection"
    EMERGENCY_REPORT = "emergency_report"
    COMMENT_UPDATE = "comment_update"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def category(self) -> str:
        return _CATEGORIES[self]


_DISPLAY_NAMES = {
    EventKind.TASK_COMPLETION: "Task Completed",
    EventKind.CLOCK_IN: "Clocked In",
    EventKind.CLOCK_OUT: "Clocked Out",
    EventKind.PHOTO_UPLOAD: "Photo Uploaded",
    EventKind.COMMENT_UPDATE: "Comment Added",
    EventKind.ROUTINE_INSPECTION: "Routine Inspection",
    EventKind.BUILDING_STATUS_UPDATE: "Building Status Updated",
    EventKind.EMERGENCY_REPORT: "Emergency Reported",
}

_CATEGORIES = {
    EventKind.TASK_COMPLETION: "Tasks",
    EventKind.ROUTINE_INSPECTION: "Tasks",
    EventKind.CLOCK_IN: "Time Tracking",
    EventKind.CLOCK_OUT: "Time Tracking",
    EventKind.PHOTO_UPLOAD: "Evidence",
    EventKind.COMMENT_UPDATE: "Evidence",
    EventKind.BUILDING_STATUS_UPDATE: "Building",
    EventKind.EMERGENCY_REPORT: "Emergency",
}


class EventStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"


class OutboxEvent(BaseModel):
    """A worker action not yet acknowledged by the backend."""

    id: str = Field(default_factory=generate_id)
    kind: EventKind
    worker_id: str
    building_id: str
    payload: bytes = b""
    created_at: datetime = Field(default_factory=utc_now)
    retry_count: int = Field(default=0, ge=0)
    status: EventStatus = EventStatus.PENDING
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @field_validator("worker_id", "building_id")
    @classmethod
    def _require_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("correlation keys must not be blank")
        return v

    @field_validator("created_at")
    @classmethod
    def _utc_created(cls, v: datetime) -> datetime:
        return parse_datetime(v)

    @field_validator("next_retry_at")
    @classmethod
    def _utc_next_retry(cls, v: Optional[datetime]) -> Optional[datetime]:
        return parse_optional_datetime(v)

    def is_due(self, now: datetime) -> bool:
        """True when the backoff window (if any) has elapsed."""
        return self.next_retry_at is None or self.next_retry_at <= now

    # ---------- ledger encoding ----------

    def serialize(self) -> str:
        """Full JSON form stored in the ledger ``data`` column."""
        return json.dumps(
            {
                "id": self.id,
                "kind": self.kind.value,
                "worker_id": self.worker_id,
                "building_id": self.building_id,
                "payload": base64.b64encode(self.payload).decode("ascii"),
                "created_at": isoformat_utc(self.created_at),
                "retry_count": self.retry_count,
                "status": self.status.value,
                "next_retry_at": (
                    isoformat_utc(self.next_retry_at) if self.next_retry_at else None
                ),
                "last_error": self.last_error,
            }
        )

    @classmethod
    def deserialize(cls, raw: Union[str, bytes]) -> "OutboxEvent":
        d = json.loads(raw)
        return cls(
            id=d["id"],
            kind=d["kind"],
            worker_id=d["worker_id"],
            building_id=d["building_id"],
            payload=base64.b64decode(d.get("payload") or ""),
            created_at=d["created_at"],
            retry_count=d.get("retry_count", 0),
            status=d.get("status", EventStatus.PENDING.value),
            next_retry_at=d.get("next_retry_at"),
            last_error=d.get("last_error"),
        )

    @classmethod
    def from_record(
        cls,
        data: Union[str, bytes],
        *,
        retry_count: int,
        status: str,
        next_retry_at: Any = None,
        last_error: Optional[str] = None,
    ) -> "OutboxEvent":
        """Rebuild from a ledger row; the mutable columns override ``data``."""
        event = cls.deserialize(data)
        event.retry_count = int(retry_count)
        event.status = EventStatus(status)
        event.next_retry_at = parse_optional_datetime(next_retry_at)
        event.last_error = last_error
        return event

    # ---------- wire encoding ----------

    def to_wire(self) -> dict[str, Any]:
        """Request body for POST /api/v1/worker-events."""
        return {
            "id": self.id,
            "type": self.kind.value,
            "workerId": self.worker_id,
            "buildingId": self.building_id,
            "timestamp": isoformat_utc(self.created_at),
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "retryCount": self.retry_count,
        }


class QueueStatus(BaseModel):
    """Introspection snapshot consumed by UI collaborators and the CLI."""

    pending: int
    high_retry: int
    dead_lettered: int
    in_progress: bool
    auth_required: bool
    last_sync_time: Optional[datetime] = None
