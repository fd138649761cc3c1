from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, func
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..db import events, sessions, upsert_insert
from ..errors import TransactionFailure, ValidationError
from ..events import EventType, IncomingEvent, utcnow

logger = logging.getLogger(__name__)

MAX_BATCH = 100
REQUIRED_FIELDS = ("session_id", "event_type", "url")


def check_batch(payload: Any, max_batch: int = MAX_BATCH) -> None:
    if not isinstance(payload, list):
        raise ValidationError("Invalid payload, expected array of events")
    if not payload:
        raise ValidationError("Empty events array")
    if len(payload) > max_batch:
        raise ValidationError(f"Too many events in batch (max {max_batch})")


def parse_event(raw: Any, received_at: datetime) -> IncomingEvent:
    if not isinstance(raw, dict) or any(not raw.get(f) for f in REQUIRED_FIELDS):
        raise ValidationError("Missing required fields: session_id, event_type, url")
    try:
        ev = IncomingEvent.model_validate(raw)
    except PydanticValidationError as exc:
        err = exc.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ()))
        raise ValidationError(f"Invalid event field {field}: {err['msg']}") from None
    if ev.timestamp is None:
        ev = ev.model_copy(update={"timestamp": received_at})
    return ev


def _write_event(conn: Connection, ev: IncomingEvent, user_agent: Optional[str]) -> None:
    conn.execute(
        events.insert().values(
            session_id=ev.session_id,
            event_type=ev.event_type,
            url=ev.url,
            referrer=ev.referrer or None,
            timestamp=ev.timestamp,
            metadata=ev.metadata or {},
        )
    )

    insert = upsert_insert(conn.dialect.name)
    stmt = insert(sessions).values(
        session_id=ev.session_id,
        start_time=ev.timestamp,
        end_time=None,
        page_views=1 if ev.event_type == EventType.pageview.value else 0,
        user_agent=user_agent,
    )
    incoming = stmt.excluded.start_time
    latest = func.coalesce(sessions.c.end_time, sessions.c.start_time)
    # page_views counts every delivered pageview; a batch delivered twice is counted twice
    stmt = stmt.on_conflict_do_update(
        index_elements=[sessions.c.session_id],
        set_={
            "start_time": case((incoming < sessions.c.start_time, incoming), else_=sessions.c.start_time),
            "end_time": case((incoming > latest, incoming), else_=latest),
            "page_views": sessions.c.page_views + stmt.excluded.page_views,
            "user_agent": func.coalesce(sessions.c.user_agent, stmt.excluded.user_agent),
        },
    )
    conn.execute(stmt)


def ingest_batch(
    engine: Engine,
    payload: Any,
    user_agent: Optional[str] = None,
    max_batch: int = MAX_BATCH,
) -> int:
    """
    Persist a posted batch in a single transaction and return how many events were stored.

    Raises ValidationError (nothing committed) for a bad batch shape or the first
    invalid event, TransactionFailure (rolled back) when the database write fails.
    """
    check_batch(payload, max_batch)
    received_at = utcnow()

    try:
        # begin() commits on clean exit, rolls back on any exception, always releases
        with engine.begin() as conn:
            for raw in payload:
                ev = parse_event(raw, received_at)
                _write_event(conn, ev, user_agent)
    except ValidationError as exc:
        logger.info("[ingest] rejected batch of %d: %s", len(payload), exc)
        raise
    except SQLAlchemyError as exc:
        logger.error("[ingest] transaction rolled back: %s", exc)
        raise TransactionFailure("Error ingesting events") from exc

    logger.info("[ingest] committed %d events", len(payload))
    return len(payload)
