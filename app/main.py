from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.logs import configure_logging
from app.settings import Settings
from health.health import consecutive_failures, derive_health_status, recent_metrics
from health.quality import recent_quality_metrics
from ingest.pipeline import run_batch
from ingest.scheduler import run_scheduler, seed_feed_packs
from ingest.sources import get_source, load_sources
from store.db import Database, close_database, open_database


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()
    configure_logging(settings.log_level)
    db = open_database(settings.db_path)
    seed_feed_packs(settings, db)
    app.state.settings = settings
    app.state.db = db
    app.state.http_client = httpx.AsyncClient(follow_redirects=True)

    scheduler_task = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(run_scheduler(settings=settings, db=db))
        logger.info("scheduler started, tick %ss", settings.scheduler_tick_seconds)
    try:
        yield
    finally:
        if scheduler_task is not None:
            scheduler_task.cancel()
            with suppress(asyncio.CancelledError):
                await scheduler_task
        await app.state.http_client.aclose()
        close_database(db)


app = FastAPI(lifespan=lifespan)


class RunRequest(BaseModel):
    source_id: str | None = None
    test_mode: bool = False


@app.get("/api/sources")
def api_sources(request: Request) -> JSONResponse:
    settings: Settings = request.app.state.settings
    db: Database = request.app.state.db
    payload = []
    for source in load_sources(db, active_only=False):
        metrics = recent_metrics(db, source.id, settings.health_window)
        payload.append(
            {
                "id": source.id,
                "name": source.name,
                "source_type": source.source_type,
                "api_endpoint": source.api_endpoint,
                "is_active": source.is_active,
                "polling_interval": source.polling_interval,
                "last_poll_at": source.last_poll_at,
                "health_status": derive_health_status(
                    db, source.id, settings.health_window
                ),
                "consecutive_failures": consecutive_failures(metrics),
                "last_error": next(
                    (m.error_message for m in metrics if not m.success), None
                ),
            }
        )
    return JSONResponse(payload)


@app.get("/api/sources/{source_id}/metrics")
def api_source_metrics(
    request: Request, source_id: str, limit: int = Query(default=50, ge=1, le=500)
) -> JSONResponse:
    db: Database = request.app.state.db
    if get_source(db, source_id) is None:
        return JSONResponse({"error": "not_found"}, status_code=404)
    metrics = recent_metrics(db, source_id, limit)
    return JSONResponse(
        [
            {
                "source_id": m.source_id,
                "response_time_ms": m.response_time_ms,
                "success": m.success,
                "error_message": m.error_message,
                "records_processed": m.records_processed,
                "http_status_code": m.http_status_code,
                "recorded_at": m.recorded_at,
            }
            for m in metrics
        ]
    )


@app.get("/api/queue")
def api_queue(
    request: Request,
    status: str = Query(default="pending", pattern="^(pending|processing|completed|failed)$"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> JSONResponse:
    db: Database = request.app.state.db
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT id, source_id, raw_payload, processing_status, attempts,
                   error_message, created_at, completed_at
            FROM alert_ingestion_queue
            WHERE processing_status = ?
            ORDER BY created_at ASC
            LIMIT ?;
            """,
            (status, limit),
        ).fetchall()
    items = []
    for r in rows:
        item = {k: r[k] for k in r.keys()}
        item["raw_payload"] = json.loads(r["raw_payload"])
        items.append(item)
    return JSONResponse(items)


@app.get("/api/quality")
def api_quality(
    request: Request,
    source_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> JSONResponse:
    db: Database = request.app.state.db
    return JSONResponse(recent_quality_metrics(db, source_id=source_id, limit=limit))


@app.post("/api/ingest/run")
async def api_ingest_run(request: Request, body: RunRequest) -> JSONResponse:
    settings: Settings = request.app.state.settings
    db: Database = request.app.state.db
    client: httpx.AsyncClient = request.app.state.http_client
    try:
        results = await run_batch(
            db,
            settings,
            client,
            source_id=body.source_id,
            test_mode=body.test_mode,
        )
    except LookupError:
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse(
        {
            "test_mode": body.test_mode,
            "sources": len(results),
            "succeeded": sum(1 for r in results if r.success),
            "results": [r.to_dict() for r in results],
        }
    )
