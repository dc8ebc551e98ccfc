from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from timeledger.config_manager import SECRET_FIELDS, ConfigError, ConfigManager
from timeledger.mapping_store import MappingFile
from timeledger.state_store import StateStore
from timeledger.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRequest(BaseModel):
    apply: bool = False


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    for section, key in SECRET_FIELDS:
        present = bool(str(config_dict.get(section, {}).get(key, "") or "").strip())
        meta.setdefault(section, {})[key] = {"is_masked": present}
    return meta


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop blank or masked secrets so they never overwrite stored values."""
    sanitized = dict(payload)
    for section, key in SECRET_FIELDS:
        block = sanitized.get(section)
        if not isinstance(block, dict):
            continue
        block = dict(block)
        value = block.get(key)
        if value is not None and str(value).strip() in {"", "***"}:
            if str(current.get(section, {}).get(key, "") or ""):
                block.pop(key, None)
            else:
                block[key] = ""
        if block:
            sanitized[section] = block
        else:
            sanitized.pop(section, None)
    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("TIMELEDGER_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TIMELEDGER_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Timeledger Admin", version="0.1.0")
    app.state.context = context

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
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        masked = app.state.context.config_manager.masked()
        return {"config": masked, "meta": _masked_meta(raw)}

    @app.post("/api/plan")
    def plan() -> dict[str, Any]:
        try:
            sync_plan = app.state.context.sync_engine.plan()
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "window": sync_plan.window.to_dict(),
            "total_events": len(sync_plan.events),
            "existing_entries": len(sync_plan.records),
            "plan": sync_plan.result.to_dict(),
        }

    @app.post("/api/sync")
    def sync(request: SyncRequest) -> dict[str, Any]:
        result = app.state.context.sync_engine.run_once(trigger="web", apply=request.apply)
        if result.status == "busy":
            raise HTTPException(status_code=409, detail=result.message)
        return result.to_dict()

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit")
    def audit(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/mapping")
    def mapping() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        store = MappingFile(config.storage.mapping_path).load()
        return {
            "schema_version": store.schema_version,
            "entry_count": len(store.entries),
            "legacy_count": len(store.legacy or {}),
            "entries": {key: entry.to_dict() for key, entry in store.entries.items()},
        }

    return app
