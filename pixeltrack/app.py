from __future__ import annotations
import json
import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .aggregation.sessions import recent_sessions, session_detail
from .aggregation.stats import click_series, summary_stats
from .config import Settings, get_settings
from .db import create_db_engine, health_check, init_schema
from .errors import TransactionFailure, ValidationError
from .events import isoformat_utc, utcnow
from .logging_setup import setup_logging
from .workers.ingest import ingest_batch

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _read_limited(request: Request, limit: int) -> Optional[bytes]:
    """The request body, or None once it grows past ``limit`` bytes."""
    # chunked uploads carry no content-length, so the middleware cannot see them
    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    settings = settings or get_settings()
    engine = engine or create_db_engine(
        settings.database_url,
        slow_query_ms=settings.slow_query_ms,
        statement_timeout_ms=settings.statement_timeout_ms,
        connect_timeout_s=settings.connect_timeout_s,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # PersistentInitFailure escapes here in production and stops the server
        init_schema(engine, production=settings.is_production)
        yield
        logger.info("[db] closing connection pool")
        engine.dispose()

    app = FastAPI(title="pixeltrack API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length")
        if length is not None and length.isdigit() and int(length) > settings.max_body_bytes:
            return _error(413, "Request body too large")
        return await call_next(request)

    if settings.is_production:
        @app.middleware("http")
        async def log_requests(request: Request, call_next):
            logger.info("%s %s", request.method, request.url.path)
            return await call_next(request)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error(404, "Not found")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error" if settings.is_production else str(exc))

    @app.get("/health")
    def health():
        return {"status": "ok", "timestamp": isoformat_utc(utcnow()), "env": settings.env}

    @app.get("/health/db")
    def health_db():
        result = health_check(engine)
        if result["healthy"]:
            return {"status": "ok", "database": "connected"}
        return JSONResponse(status_code=503, content={"status": "error", "database": "disconnected"})

    @app.post("/api/events")
    async def ingest(request: Request):
        """
        Accept a JSON array of events and persist it in one transaction.
        Either every event is stored or none is.
        """
        body = await _read_limited(request, settings.max_body_bytes)
        if body is None:
            return _error(413, "Request body too large")
        try:
            payload = json.loads(body)
        except ValueError:
            return _error(400, "Invalid payload, expected array of events")

        try:
            count = await run_in_threadpool(
                ingest_batch,
                engine,
                payload,
                request.headers.get("user-agent"),
                settings.max_batch_size,
            )
        except ValidationError as e:
            return _error(400, str(e))
        except TransactionFailure:
            logger.exception("[ingest] error ingesting events")
            return _error(500, "Internal server error")
        return {"message": "Events ingested successfully", "count": count}

    @app.get("/api/stats")
    def stats():
        try:
            return summary_stats(engine)
        except Exception:
            logger.exception("Error fetching stats")
            return _error(500, "Internal server error")

    @app.get("/api/stats/clicks")
    def clicks(
        window: Literal["day", "week"] = Query("day"),
        session_id: Optional[str] = Query(None),
    ):
        try:
            return {"window": window, "buckets": click_series(engine, window, session_id)}
        except Exception:
            logger.exception("Error fetching click series")
            return _error(500, "Internal server error")

    @app.get("/api/sessions")
    def sessions_list():
        try:
            return {"sessions": recent_sessions(engine)}
        except Exception:
            logger.exception("Error fetching sessions")
            return _error(500, "Internal server error")

    @app.get("/api/sessions/{session_id}")
    def sessions_detail(session_id: str):
        try:
            detail = session_detail(engine, session_id)
        except Exception:
            logger.exception("Error fetching session %s", session_id)
            return _error(500, "Internal server error")
        if detail is None:
            return _error(404, "Session not found")
        return detail

    return app


def main():
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)
    logger.info("Starting pixeltrack on %s:%d (%s)", settings.host, settings.port, settings.env)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
