"""Tests for the HTTP API."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from pixeltrack.app import create_app
from pixeltrack.config import Settings
from pixeltrack.db import create_db_engine, events, sessions
from pixeltrack.errors import PersistentInitFailure

from conftest import make_event


def _post(client, payload, user_agent="pytest-agent"):
    return client.post("/api/events", json=payload, headers={"User-Agent": user_agent})


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["env"] == "test"

    def test_health_db_ok(self, client):
        response = client.get("/health/db")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": "connected"}

    def test_health_db_down(self, tmp_path):
        settings = Settings(env="test", database_url=f"sqlite:///{tmp_path / 'missing' / 'x.db'}")
        app = create_app(settings=settings)
        with TestClient(app) as c:
            response = c.get("/health/db")
        assert response.status_code == 503
        assert response.json()["database"] == "disconnected"

    def test_unknown_route(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}


class TestIngestEndpoint:
    def test_success(self, client):
        response = _post(client, [make_event(), make_event(event_type="click")])
        assert response.status_code == 200
        assert response.json() == {"message": "Events ingested successfully", "count": 2}

    @pytest.mark.parametrize("payload", [{"not": "a list"}, [], [make_event()] * 101])
    def test_bad_shape(self, client, payload):
        response = _post(client, payload)
        assert response.status_code == 400
        assert "error" in response.json()

    def test_invalid_json(self, client):
        response = client.post(
            "/api/events", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_partial_batch_rejected_in_full(self, client, engine):
        bad = make_event()
        del bad["url"]
        response = _post(client, [make_event(), make_event(), make_event(), bad])
        assert response.status_code == 400
        assert response.json()["error"] == "Missing required fields: session_id, event_type, url"
        with engine.connect() as conn:
            assert conn.execute(select(func.count()).select_from(events)).scalar_one() == 0

    def test_oversized_body(self, tmp_path, engine):
        settings = Settings(env="test", database_url="sqlite://", max_body_bytes=1024)
        app = create_app(settings=settings, engine=engine)
        with TestClient(app) as c:
            big = [make_event(metadata={"blob": "x" * 2048})]
            response = _post(c, big)
        assert response.status_code == 413

    def test_oversized_chunked_body(self, engine):
        settings = Settings(env="test", database_url="sqlite://", max_body_bytes=1024)
        app = create_app(settings=settings, engine=engine)

        def chunks():
            yield b'[{"session_id": "s", "event_type": "click", "url": "u", "metadata": {"blob": "'
            for _ in range(8):
                yield b"x" * 256
            yield b'"}}]'

        with TestClient(app) as c:
            response = c.post(
                "/api/events", content=chunks(), headers={"Content-Type": "application/json"}
            )
        assert response.status_code == 413
        with engine.connect() as conn:
            assert conn.execute(select(func.count()).select_from(events)).scalar_one() == 0

    def test_transaction_failure_is_500(self, client, engine):
        with engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE sessions")
        response = _post(client, [make_event()])
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_user_agent_from_header(self, client, engine):
        _post(client, [make_event()], user_agent="Mozilla/5.0 first")
        _post(client, [make_event()], user_agent="Mozilla/5.0 second")
        with engine.connect() as conn:
            ua = conn.execute(select(sessions.c.user_agent)).scalar_one()
        assert ua == "Mozilla/5.0 first"


class TestReadEndpoints:
    def test_stats_empty(self, client):
        response = client.get("/api/stats")
        assert response.status_code == 200
        assert response.json() == {
            "total_sessions": 0,
            "total_events": 0,
            "top_click_targets": [],
            "top_pages": [],
            "avg_session_duration": 0.0,
        }

    def test_stats(self, client):
        _post(client, [
            make_event(timestamp="2024-05-01T10:00:00Z"),
            make_event(event_type="click", metadata={"target": "BUTTON"}, timestamp="2024-05-01T10:01:00Z"),
            make_event(event_type="click", metadata={"target": "BUTTON"}, timestamp="2024-05-01T10:02:00Z"),
            make_event(event_type="click", metadata={"target": "A"}, timestamp="2024-05-01T10:03:00Z"),
        ])
        body = client.get("/api/stats").json()
        assert body["total_sessions"] == 1
        assert body["total_events"] == 4
        assert body["top_click_targets"] == [{"target": "BUTTON", "count": 2}, {"target": "A", "count": 1}]
        assert body["top_pages"] == [{"url": "https://example.com/", "count": 1}]
        assert body["avg_session_duration"] == pytest.approx(180.0)

    def test_sessions_list(self, client):
        _post(client, [
            make_event(session_id="sess_a", timestamp="2024-05-01T10:00:00Z"),
            make_event(session_id="sess_a", event_type="click", timestamp="2024-05-01T10:00:30Z"),
            make_event(session_id="sess_b", timestamp="2024-05-01T11:00:00Z"),
        ])
        listed = client.get("/api/sessions").json()["sessions"]
        assert [s["session_id"] for s in listed] == ["sess_b", "sess_a"]
        a = listed[1]
        assert a["total_clicks"] == 1
        assert a["duration"] == 30.0
        assert a["page_views"] == 1
        assert a["start_time"] == "2024-05-01T10:00:00.000Z"
        assert listed[0]["end_time"] is None

    def test_session_detail_round_trip(self, client):
        sid = "sess_roundtrip"
        batch = [
            make_event(session_id=sid, event_type="click", timestamp="2024-05-01T10:00:20Z",
                       metadata={"target": "A", "href": "https://example.com/b"}),
            make_event(session_id=sid, timestamp="2024-05-01T10:00:00Z"),
            make_event(session_id=sid, url="https://example.com/b", timestamp="2024-05-01T10:00:30Z"),
        ]
        assert _post(client, batch).status_code == 200
        assert _post(client, [make_event(session_id=sid, timestamp="2024-05-01T10:02:00Z")]).status_code == 200

        detail = client.get(f"/api/sessions/{sid}").json()
        stamps = [e["timestamp"] for e in detail["events"]]
        assert stamps == sorted(stamps)
        assert len(detail["events"]) == 4
        assert detail["page_views"] == 3
        assert [c["metadata"]["target"] for c in detail["clicks"]] == ["A"]
        pages = {p["url"]: p for p in detail["pages"]}
        assert pages["https://example.com/"]["view_count"] == 2
        assert pages["https://example.com/b"]["view_count"] == 1
        assert pages["https://example.com/b"]["time_on_page"] == 90.0

    def test_session_detail_unknown(self, client):
        response = client.get("/api/sessions/sess_missing")
        assert response.status_code == 404

    def test_click_series(self, client):
        response = client.get("/api/stats/clicks", params={"window": "week"})
        assert response.status_code == 200
        body = response.json()
        assert body["window"] == "week"
        assert len(body["buckets"]) == 7
        assert all(b["count"] == 0 for b in body["buckets"])


def test_schema_failure_fatal_in_production(tmp_path):
    settings = Settings(env="production", database_url=f"sqlite:///{tmp_path / 'missing' / 'x.db'}")
    app = create_app(settings=settings, engine=create_db_engine(settings.database_url))
    with pytest.raises(PersistentInitFailure):
        with TestClient(app):
            pass


def test_schema_failure_tolerated_in_development(tmp_path):
    settings = Settings(env="development", database_url=f"sqlite:///{tmp_path / 'missing' / 'x.db'}")
    app = create_app(settings=settings)
    with TestClient(app) as c:
        assert c.get("/health").status_code == 200
