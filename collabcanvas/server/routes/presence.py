from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from collabcanvas.server.core.deps import (
    Actor,
    ensure_collaboration_enabled,
    ensure_presence_enabled,
    get_actor,
    get_hub,
)
from collabcanvas.server.core.hub import CanvasHub

LOGGER = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/canvases/{canvas_id}/presence",
    tags=["Presence"],
    dependencies=[Depends(ensure_collaboration_enabled), Depends(ensure_presence_enabled)],
)


class JoinRequest(BaseModel):
    display_name: str | None = Field(default=None, max_length=256)
    color: str | None = Field(default=None, max_length=32)

    model_config = ConfigDict(extra="forbid")


class CursorRequest(BaseModel):
    x: float
    y: float

    model_config = ConfigDict(extra="forbid")


class ReapRequest(BaseModel):
    max_age: float | None = Field(default=None, ge=0.0)

    model_config = ConfigDict(extra="forbid")


@router.get("")
async def list_presence(
    canvas_id: str, actor: Actor = Depends(get_actor), hub: CanvasHub = Depends(get_hub)
) -> Dict[str, Any]:
    sessions = await hub.presence_for(actor.actor_id).sessions(canvas_id, exclude=actor.actor_id)
    return {
        "ok": True,
        "canvas_id": canvas_id,
        "sessions": [session.as_dict() for session in sessions.values()],
    }


@router.post("/join")
async def join(
    canvas_id: str,
    request: JoinRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await hub.presence_for(actor.actor_id).join(
        canvas_id, actor.actor_id, request.display_name or actor.name or "", request.color
    )
    return {"ok": True, "session": session.as_dict()}


@router.post("/cursor")
async def move_cursor(
    canvas_id: str,
    request: CursorRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    await hub.presence_for(actor.actor_id).update_position(
        canvas_id, actor.actor_id, request.x, request.y
    )
    return {"ok": True}


@router.post("/leave")
async def leave(
    canvas_id: str, actor: Actor = Depends(get_actor), hub: CanvasHub = Depends(get_hub)
) -> Dict[str, Any]:
    await hub.presence_for(actor.actor_id).leave(canvas_id, actor.actor_id)
    return {"ok": True}


@router.post("/reap")
async def reap(
    canvas_id: str,
    request: ReapRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    max_age = request.max_age if request.max_age is not None else hub.settings.presence_max_age
    removed = await hub.presence_for(actor.actor_id).reap_stale(canvas_id, max_age)
    if removed:
        LOGGER.info("Reaped %d stale presence entries on canvas %s", removed, canvas_id)
    return {"ok": True, "removed": removed}
