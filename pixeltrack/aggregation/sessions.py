from __future__ import annotations
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from ..db import events, sessions
from ..events import EventType, isoformat_utc

RECENT_LIMIT = 50


def _duration(start, end) -> float:
    if start is None or end is None:
        return 0.0
    return max((end - start).total_seconds(), 0.0)


def _session_record(row) -> Dict:
    return {
        "session_id": row.session_id,
        "start_time": isoformat_utc(row.start_time),
        "end_time": isoformat_utc(row.end_time),
        "page_views": int(row.page_views),
        "user_agent": row.user_agent,
        "duration": _duration(row.start_time, row.end_time),
    }


def recent_sessions(engine: Engine, limit: int = RECENT_LIMIT) -> List[Dict]:
    clicks = (
        select(events.c.session_id, func.count().label("total_clicks"))
        .where(events.c.event_type == EventType.click.value)
        .group_by(events.c.session_id)
        .subquery()
    )
    stmt = (
        select(sessions, func.coalesce(clicks.c.total_clicks, 0).label("total_clicks"))
        .select_from(sessions.outerjoin(clicks, clicks.c.session_id == sessions.c.session_id))
        .order_by(sessions.c.start_time.desc(), sessions.c.session_id)
        .limit(limit)
    )
    with engine.connect() as conn:
        rows = conn.execute(stmt).all()
    return [dict(_session_record(r), total_clicks=int(r.total_clicks)) for r in rows]


def page_rollup(ev: pd.DataFrame) -> pd.DataFrame:
    """
    Per-url view counts and time on page for one session's events.

    A pageview lasts until the next pageview, or until the session's last
    event for the final one. Repeat visits to a url are summed.
    """
    cols = ["url", "first_visit", "view_count", "time_on_page"]
    pv = ev[ev["event_type"] == EventType.pageview.value]
    if pv.empty:
        return pd.DataFrame(columns=cols)

    pv = pv.sort_values(["timestamp", "id"], kind="mergesort")
    session_end = ev["timestamp"].max()
    nxt = pv["timestamp"].shift(-1)
    nxt = nxt.where(nxt.notna(), session_end)
    pv = pv.assign(time_on_page=(nxt - pv["timestamp"]).dt.total_seconds().clip(lower=0.0))

    out = (
        pv.groupby("url", sort=False)
        .agg(
            first_visit=("timestamp", "min"),
            view_count=("id", "count"),
            time_on_page=("time_on_page", "sum"),
        )
        .reset_index()
        .sort_values("first_visit", kind="mergesort")
    )
    return out[cols]


def session_detail(engine: Engine, session_id: str) -> Optional[Dict]:
    with engine.connect() as conn:
        row = conn.execute(select(sessions).where(sessions.c.session_id == session_id)).first()
        if row is None:
            return None
        ev = pd.read_sql(
            select(events)
            .where(events.c.session_id == session_id)
            .order_by(events.c.timestamp, events.c.id),
            conn,
        )

    detail = _session_record(row)
    if ev.empty:
        return dict(detail, events=[], pages=[], clicks=[])

    ev["timestamp"] = pd.to_datetime(ev["timestamp"])
    timeline = [
        {
            "id": int(r.id),
            "event_type": r.event_type,
            "url": r.url,
            "referrer": r.referrer,
            "timestamp": isoformat_utc(r.timestamp.to_pydatetime()),
            "metadata": r.metadata or {},
        }
        for r in ev.itertuples(index=False)
    ]
    pages = [
        {
            "url": p.url,
            "first_visit": isoformat_utc(p.first_visit.to_pydatetime()),
            "view_count": int(p.view_count),
            "time_on_page": float(p.time_on_page),
        }
        for p in page_rollup(ev).itertuples(index=False)
    ]
    clicks = [e for e in timeline if e["event_type"] == EventType.click.value]
    return dict(detail, events=timeline, pages=pages, clicks=clicks)
