"""FastAPI application exposing the protocol engine to a hosting agent."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .builder import build
from .config import load_config
from .errors import ProtocolError
from .models import DEFAULT_MAX_DEPTH, MessageType
from .parser import parse
from .state import DEFAULT_CLEANUP_MS, StateStore

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class TextRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Raw channel text containing a protocol block.")


class BuildRequest(BaseModel):
    fields: Dict[str, Any] = Field(default_factory=dict)


class BuildResponse(BaseModel):
    text: str


class TimeoutRequest(BaseModel):
    reason: str = Field(default="timeout")


class CleanupRequest(BaseModel):
    olderThanMs: Optional[float] = Field(default=None, ge=0)


# -----------------------------
# Utilities
# -----------------------------
def _make_store(cfg: Dict[str, Any]) -> StateStore:
    return StateStore.from_config(cfg)


def _cleanup_default_ms(cfg: Dict[str, Any]) -> float:
    hours = (cfg.get("state") or {}).get("cleanup_after_hours")
    if hours is None:
        return DEFAULT_CLEANUP_MS
    return float(hours) * 60 * 60 * 1000


def _parse_or_422(text: str):
    message = parse(text)
    if message is None:
        raise HTTPException(status_code=422, detail="Not a protocol message.")
    return message


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    store: Optional[StateStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    logging.basicConfig(level=str((cfg.get("logging") or {}).get("level", "INFO")).upper())

    cors_origins = (cfg.get("server") or {}).get("cors_origins", ["*"])
    max_depth = int((cfg.get("depth") or {}).get("max", DEFAULT_MAX_DEPTH))
    cleanup_ms = _cleanup_default_ms(cfg)
    store = store or _make_store(cfg)
    logger.info("Conversation state file: %s", store.path)

    app = FastAPI(title="Bot Protocol Engine", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "state_file": str(store.path), "max_depth": max_depth}

    @app.post("/parse")
    def parse_text(req: TextRequest) -> Dict[str, Any]:
        return _parse_or_422(req.text).to_dict()

    @app.post("/build/{message_type}", response_model=BuildResponse)
    def build_message(message_type: str, req: BuildRequest):
        if MessageType.lookup(message_type.upper()) is None:
            raise HTTPException(status_code=404, detail=f"Unknown message type: {message_type}")
        fields = dict(req.fields)
        fields.setdefault("depth", {"current": 1, "max": max_depth})
        try:
            text = build(message_type, fields)
        except ProtocolError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return BuildResponse(text=text)

    @app.post("/conversations/track")
    def track(req: TextRequest) -> Dict[str, Any]:
        message = _parse_or_422(req.text)
        record = store.track(message)
        return {"requestId": message.request_id, **record}

    @app.get("/conversations")
    def list_conversations(
        status: Optional[str] = None,
        sender: Optional[str] = Query(default=None, alias="from"),
        to: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return store.list(status=status, sender=sender, to=to)

    @app.get("/conversations/{request_id}")
    def get_conversation(request_id: str) -> Dict[str, Any]:
        record = store.get(request_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Unknown conversation: {request_id}")
        return {"requestId": request_id, **record}

    @app.post("/conversations/{request_id}/timeout")
    def timeout_conversation(request_id: str, req: Optional[TimeoutRequest] = None) -> Dict[str, Any]:
        record = store.timeout(request_id, req.reason if req else "timeout")
        if record is None:
            raise HTTPException(status_code=404, detail=f"Unknown conversation: {request_id}")
        return {"requestId": request_id, **record}

    @app.post("/maintenance/check-timeouts")
    def check_timeouts() -> Dict[str, Any]:
        return {"timedOut": store.check_timeouts()}

    @app.post("/maintenance/cleanup")
    def cleanup(req: Optional[CleanupRequest] = None) -> Dict[str, Any]:
        older_than = cleanup_ms if req is None or req.olderThanMs is None else req.olderThanMs
        return {"removed": store.cleanup(older_than)}

    return app
