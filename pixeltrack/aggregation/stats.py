from __future__ import annotations
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine

from ..db import events, sessions
from ..events import EventType, isoformat_utc, to_naive_utc, utcnow

TOP_N = 5

# window -> (bucket frequency, number of buckets, bucket width)
WINDOWS = {
    "day": ("h", 24, pd.Timedelta(hours=1)),
    "week": ("D", 7, pd.Timedelta(days=1)),
}


def session_durations(df: pd.DataFrame) -> pd.Series:
    """Seconds between start_time and end_time; NaN where the session has no end yet."""
    start = pd.to_datetime(df["start_time"])
    end = pd.to_datetime(df["end_time"])
    return (end - start).dt.total_seconds()


def _top_click_targets(conn: Connection) -> List[Dict]:
    target = events.c["metadata"]["target"].as_string()
    inner = (
        select(target.label("target"))
        .where(events.c.event_type == EventType.click.value)
        .subquery()
    )
    count = func.count().label("count")
    stmt = (
        select(inner.c.target, count)
        .where(inner.c.target.is_not(None))
        .group_by(inner.c.target)
        .order_by(count.desc(), inner.c.target)
        .limit(TOP_N)
    )
    return [{"target": t, "count": int(n)} for t, n in conn.execute(stmt)]


def _top_pages(conn: Connection) -> List[Dict]:
    count = func.count().label("count")
    stmt = (
        select(events.c.url, count)
        .where(events.c.event_type == EventType.pageview.value)
        .group_by(events.c.url)
        .order_by(count.desc(), events.c.url)
        .limit(TOP_N)
    )
    return [{"url": u, "count": int(n)} for u, n in conn.execute(stmt)]


def _avg_session_duration(conn: Connection) -> float:
    df = pd.read_sql(select(sessions.c.start_time, sessions.c.end_time), conn)
    if df.empty:
        return 0.0
    d = session_durations(df)
    d = d[d > 0]
    return float(d.mean()) if not d.empty else 0.0


def summary_stats(engine: Engine) -> Dict:
    with engine.connect() as conn:
        total_sessions = conn.execute(select(func.count()).select_from(sessions)).scalar_one()
        total_events = conn.execute(select(func.count()).select_from(events)).scalar_one()
        return {
            "total_sessions": int(total_sessions or 0),
            "total_events": int(total_events or 0),
            "top_click_targets": _top_click_targets(conn),
            "top_pages": _top_pages(conn),
            "avg_session_duration": _avg_session_duration(conn),
        }


def click_series(
    engine: Engine,
    window: str = "day",
    session_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Dict]:
    """
    Click counts per bucket, zero filled, oldest first.

    ``day`` gives 24 hourly buckets and ``week`` 7 daily buckets; the last
    bucket is the one containing ``now``.
    """
    if window not in WINDOWS:
        raise ValueError(f"unknown window {window!r}, expected one of {sorted(WINDOWS)}")
    freq, periods, width = WINDOWS[window]

    now = to_naive_utc(now) if now is not None else utcnow()
    last = pd.Timestamp(now).floor(freq)
    index = pd.date_range(end=last, periods=periods, freq=freq)

    stmt = select(events.c.timestamp).where(
        events.c.event_type == EventType.click.value,
        events.c.timestamp >= index[0].to_pydatetime(),
        events.c.timestamp < (last + width).to_pydatetime(),
    )
    if session_id is not None:
        stmt = stmt.where(events.c.session_id == session_id)

    with engine.connect() as conn:
        df = pd.read_sql(stmt, conn)

    if df.empty:
        counts = pd.Series(0, index=index)
    else:
        ts = pd.to_datetime(df["timestamp"]).dt.floor(freq)
        counts = ts.value_counts().reindex(index, fill_value=0)

    return [
        {"bucket": isoformat_utc(b.to_pydatetime()), "count": int(c)}
        for b, c in counts.items()
    ]
