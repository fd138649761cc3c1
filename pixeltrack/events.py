from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventType(str, Enum):
    pageview = "pageview"
    click = "click"
    custom = "custom"


class Event(BaseModel):
    """One tracked interaction as it travels from the tracker to /api/events."""

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., description="client session id, e.g. sess_4fzyo82mvlc6kqx")
    event_type: str = Field(..., description="pageview / click / custom")
    url: str = Field(..., description="page url when the event happened")
    referrer: Optional[str] = None
    timestamp: str = Field(..., description="ISO8601, UTC")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IncomingEvent(BaseModel):
    # server side view of a posted event; presence checks happen in the ingest worker
    session_id: str
    event_type: str
    url: str
    referrer: Optional[str] = None
    timestamp: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("timestamp")
    @classmethod
    def _naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None


def utcnow() -> datetime:
    """Naive UTC now; the database stores naive UTC timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Render a (naive UTC or aware) datetime as 2024-05-01T10:00:00.000Z."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = to_naive_utc(dt)
    return dt.isoformat(timespec="milliseconds") + "Z"
