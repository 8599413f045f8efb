from __future__ import annotations

import asyncio
import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from icalsync.config_manager import ConfigManager
from icalsync.feed_client import FeedClient
from icalsync.models import parse_calendar_lines
from icalsync.node_store import SqliteNodeStore
from icalsync.scheduler import SyncScheduler
from icalsync.sync_engine import SyncEngine


BUSY_MESSAGE = "Sync is already in progress."


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRequest(BaseModel):
    force_refresh: bool = False
    wait: bool = False


class AppContext:
    def __init__(self, config_path: str, store_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.store = SqliteNodeStore(store_path)
        self.sync_engine = SyncEngine(self.config_manager, self.store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)

    @property
    def feed_client(self) -> FeedClient:
        return self.sync_engine.feed_client


def _calendar_errors(payload: dict[str, Any]) -> list[str]:
    raw = payload.get("calendars")
    if raw is None or (isinstance(raw, list) and all(isinstance(item, dict) for item in raw)):
        return []
    _sources, errors = parse_calendar_lines(raw)
    return errors


def create_app() -> FastAPI:
    config_path = os.getenv("ICALSYNC_CONFIG_PATH", "config.yaml")
    store_path = os.getenv("ICALSYNC_STORE_PATH", "data/store.db")
    context = AppContext(config_path=config_path, store_path=store_path)

    app = FastAPI(title="icalsync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        errors = _calendar_errors(request.payload)
        app.state.context.config_manager.update(request.payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
            "errors": errors,
        }

    @app.post("/api/sync")
    def trigger_sync(request: SyncRequest | None = None) -> dict[str, Any]:
        request = request or SyncRequest()
        engine = app.state.context.sync_engine
        if engine.in_progress:
            raise HTTPException(status_code=409, detail=BUSY_MESSAGE)
        if not request.wait:
            app.state.context.scheduler.trigger_manual(force_refresh=request.force_refresh)
            return {"message": "sync triggered"}
        # Sync routes run on the threadpool, so there is no running loop here.
        result = asyncio.run(engine.run_once(trigger="manual", force_refresh=request.force_refresh))
        if result.status == "busy":
            raise HTTPException(status_code=409, detail=BUSY_MESSAGE)
        return {"message": result.message, "result": result.to_dict()}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.store.recent_sync_runs(limit=limit)}

    @app.get("/api/cache")
    def cache_stats() -> dict[str, Any]:
        return {"cache": app.state.context.feed_client.cache.stats()}

    return app


app = create_app()
