from __future__ import annotations
import logging
import time
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .errors import PersistentInitFailure
from .events import isoformat_utc, utcnow

logger = logging.getLogger(__name__)

metadata = MetaData()

# immutable, one row per ingested event
events = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("session_id", String(128), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("url", Text, nullable=False),
    Column("referrer", Text, nullable=True),
    Column("timestamp", DateTime, nullable=False),
    Column("metadata", JSON, nullable=False, default=dict),
    Column("received_at", DateTime, nullable=False, default=utcnow),
    Index("ix_events_session_ts", "session_id", "timestamp"),
    Index("ix_events_type_ts", "event_type", "timestamp"),
)

# per-session aggregate, upserted by the ingest worker
sessions = Table(
    "sessions",
    metadata,
    Column("session_id", String(128), primary_key=True),
    Column("start_time", DateTime, nullable=False),
    Column("end_time", DateTime, nullable=True),
    Column("page_views", Integer, nullable=False, default=0),
    Column("user_agent", Text, nullable=True),
    CheckConstraint("page_views >= 0", name="ck_sessions_page_views"),
    Index("ix_sessions_start_time", "start_time"),
)

_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def create_db_engine(
    database_url: str,
    slow_query_ms: float = 1000.0,
    statement_timeout_ms: int = 15000,
    connect_timeout_s: int = 3,
) -> Engine:
    url = make_url(database_url)
    backend = url.get_backend_name()
    kwargs: Dict[str, Any] = {"pool_pre_ping": True}

    if backend == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": connect_timeout_s}
        if url.database in (None, "", ":memory:"):
            # one shared connection, otherwise every checkout sees an empty db
            kwargs["poolclass"] = StaticPool
    elif backend == "postgresql":
        kwargs["connect_args"] = {
            "connect_timeout": connect_timeout_s,
            "options": f"-c statement_timeout={statement_timeout_ms}",
        }

    engine = create_engine(database_url, **kwargs)
    _log_slow_queries(engine, slow_query_ms)
    return engine


def _log_slow_queries(engine: Engine, threshold_ms: float) -> None:
    @event.listens_for(engine, "before_cursor_execute")
    def _before(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def _after(conn, cursor, statement, parameters, context, executemany):
        started = conn.info["query_start_time"].pop()
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if elapsed_ms > threshold_ms:
            logger.warning("[db] slow query (%.0fms): %s", elapsed_ms, statement[:100])

    @event.listens_for(engine, "handle_error")
    def _failed(context):
        stack = context.connection.info.get("query_start_time") if context.connection else None
        if stack:
            stack.pop()


def upsert_insert(dialect_name: str):
    """The dialect's ``insert`` construct that supports ON CONFLICT DO UPDATE."""
    try:
        return _UPSERT_DIALECTS[dialect_name]
    except KeyError:
        raise NotImplementedError(f"no upsert support for dialect {dialect_name!r}") from None


def init_schema(engine: Engine, production: bool = False) -> bool:
    """
    Create the tables if they are missing.

    In production a failure is fatal (PersistentInitFailure propagates and the
    process exits); in development it is logged and the server keeps running.
    """
    try:
        metadata.create_all(engine)
    except SQLAlchemyError as exc:
        logger.error("[db] schema initialization failed: %s", exc)
        if production:
            raise PersistentInitFailure(str(exc)) from exc
        logger.warning("[db] server will start anyway (development mode)")
        return False
    logger.info("[db] schema initialized")
    return True


def health_check(engine: Engine) -> Dict[str, Any]:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("[db] health check failed: %s", exc)
        return {"healthy": False, "message": str(exc), "timestamp": isoformat_utc(utcnow())}
    return {"healthy": True, "message": "Database connection OK", "timestamp": isoformat_utc(utcnow())}
