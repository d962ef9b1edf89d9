from __future__ import annotations

import json
import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calimport.config_manager import ConfigManager
from calimport.google_client import GoogleCalendarClient
from calimport.scheduler import SyncScheduler
from calimport.state_store import StateStore
from calimport.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

PENDING_REAUTH_KEY = "pending_reauth"


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(
            self.config_manager,
            self.state_store,
            reauth_handoff=self.request_reauthorization,
        )
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)

    def request_reauthorization(self, recovery: dict[str, Any], request_code: int) -> None:
        pending = self.pending_reauthorization()
        if pending is not None:
            # Keep the outstanding consent URL valid until its callback arrives.
            logger.info("Reauthorization already pending; visit %s", pending.get("authorization_url", ""))
            return
        payload = dict(recovery)
        payload["request_code"] = request_code
        self.state_store.set_meta(PENDING_REAUTH_KEY, json.dumps(payload, ensure_ascii=False))
        logger.info("Reauthorization requested; visit %s", payload.get("authorization_url", ""))

    def pending_reauthorization(self) -> dict[str, Any] | None:
        raw = self.state_store.get_meta(PENDING_REAUTH_KEY)
        if raw is None:
            return None
        return json.loads(raw)


def create_app() -> FastAPI:
    config_path = os.getenv("CALIMPORT_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALIMPORT_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calimport", version="0.1.0")
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
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"invalid config: {exc}") from exc
        return {"message": "config updated", "config": updated.to_dict()}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        engine = app.state.context.sync_engine
        return {
            "state": engine.state,
            "last_failure": engine.last_failure.to_dict() if engine.last_failure else None,
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/events")
    def list_events(limit: int = 100) -> dict[str, Any]:
        store = app.state.context.state_store
        return {
            "total": store.count_events(),
            "events": [event.to_dict() for event in store.list_events(limit=limit)],
        }

    @app.get("/api/event-types")
    def list_event_types() -> dict[str, Any]:
        return {"event_types": [item.to_dict() for item in app.state.context.state_store.list_event_types()]}

    @app.get("/api/auth/pending")
    def pending_auth() -> dict[str, Any]:
        return {"pending": app.state.context.pending_reauthorization()}

    @app.get("/api/auth/callback")
    def auth_callback(code: str, state: str) -> dict[str, str]:
        pending = app.state.context.pending_reauthorization()
        if pending is None:
            raise HTTPException(status_code=409, detail="no reauthorization pending")
        if pending.get("state") != state:
            raise HTTPException(status_code=400, detail="state mismatch")
        config = app.state.context.config_manager.load()
        client = GoogleCalendarClient(config.google)
        try:
            client.complete_authorization(code=code, state=state)
        except Exception as exc:
            logger.warning("Authorization exchange failed: %s", exc)
            raise HTTPException(status_code=502, detail=f"authorization failed: {exc}") from exc
        app.state.context.state_store.delete_meta(PENDING_REAUTH_KEY)
        app.state.context.scheduler.trigger_manual()
        return {"message": "authorization stored, sync triggered"}

    return app


app = create_app()
