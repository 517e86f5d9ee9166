"""Live session graph API."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from sessiongraph.session import SessionMonitor, SessionView

logger = logging.getLogger("sessiongraph.api")

session_router = APIRouter(prefix="/api/session", tags=["session"])


class WatchRequest(BaseModel):
    filePath: str = Field(..., min_length=1)
    sessionId: str = ""
    claudeDir: Optional[str] = None
    maxTurns: Optional[int] = Field(default=None, ge=0)


def _get_monitor(request: Request) -> SessionMonitor:
    monitor = getattr(request.app.state, "session_monitor", None)
    if not monitor:
        raise HTTPException(status_code=503, detail="Session monitor not initialized")
    return monitor


def _get_view(request: Request) -> tuple[SessionMonitor, SessionView]:
    monitor = _get_monitor(request)
    if monitor.view is None:
        raise HTTPException(status_code=404, detail="No session is being watched")
    return monitor, monitor.view


@session_router.post("/watch")
async def watch_session(request: Request, req: WatchRequest) -> dict[str, Any]:
    monitor = _get_monitor(request)
    path = Path(req.filePath).expanduser()
    if not path.is_file():
        raise HTTPException(status_code=400, detail=f"Transcript not found: {req.filePath}")

    claude_dir = Path(req.claudeDir).expanduser() if req.claudeDir else None
    view = await monitor.watch(path, session_id=req.sessionId, claude_dir=claude_dir, max_turns=req.maxTurns)
    if view is None:
        return {"status": "superseded", "generation": monitor.generation}
    return {
        "status": "watching",
        "generation": monitor.generation,
        "filePath": str(path),
        "endReason": view.end_reason,
        "messageCount": len(view.messages),
        "nodeCount": len(view.graph.nodes),
    }


@session_router.post("/stop")
async def stop_watching(request: Request) -> dict[str, Any]:
    monitor = _get_monitor(request)
    await monitor.stop()
    return {"status": "stopped"}


@session_router.get("/graph")
async def get_graph(request: Request) -> dict[str, Any]:
    monitor, view = _get_view(request)
    monitor.refresh_liveness()
    payload = view.graph.model_dump()
    payload["endReason"] = view.end_reason
    payload["newNodeIds"] = sorted(view.new_node_ids)
    return payload


@session_router.get("/activity")
async def get_activity(request: Request) -> dict[str, Any]:
    monitor, view = _get_view(request)
    monitor.refresh_liveness()
    payload = view.activity().model_dump()
    payload["endReason"] = view.end_reason
    payload["lastError"] = monitor.last_error
    return payload


@session_router.get("/usage")
async def get_usage(request: Request) -> dict[str, Any]:
    _, view = _get_view(request)
    return view.token_stats.model_dump()


@session_router.get("/layout")
async def get_layout(
    request: Request,
    expanded: Optional[str] = Query(default=None),
    force: bool = Query(default=False),
) -> dict[str, Any]:
    _, view = _get_view(request)
    return view.layout(expanded_node_id=expanded, force=force).model_dump()
