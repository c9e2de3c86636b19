from __future__ import annotations

"""
Canvas registry endpoints: create/list/update/delete canvases and the
share-code join flow.  Callers identify themselves with ``X-Actor-Id``.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from collabcanvas.collab import PermissionDeniedError
from collabcanvas.collab.registry import format_share_code
from collabcanvas.server.core.deps import (
    Actor,
    ensure_collaboration_enabled,
    ensure_share_codes_enabled,
    get_actor,
    get_hub,
)
from collabcanvas.server.core.hub import CanvasHub

LOGGER = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/canvases",
    tags=["Canvases"],
    dependencies=[Depends(ensure_collaboration_enabled)],
)


class CanvasCreateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=256)
    settings: Dict[str, Any] | None = None

    model_config = ConfigDict(extra="forbid")


class CanvasUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=256)
    settings: Dict[str, Any] | None = None
    thumbnail: str | None = None

    model_config = ConfigDict(extra="forbid")


class JoinRequest(BaseModel):
    share_code: str = Field(..., min_length=6, max_length=16)

    model_config = ConfigDict(extra="forbid")


def _record_payload(record) -> Dict[str, Any]:
    payload = record.as_dict()
    payload["shareCodeDisplay"] = format_share_code(record.share_code)
    return payload


@router.post("")
async def create_canvas(
    request: CanvasCreateRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    record = await hub.registry.create_canvas(
        actor.actor_id, request.name, actor.name, request.settings
    )
    LOGGER.info("Canvas %s created by %s", record.id, actor.actor_id)
    return {"ok": True, "canvas": _record_payload(record)}


@router.get("")
async def list_canvases(
    actor: Actor = Depends(get_actor), hub: CanvasHub = Depends(get_hub)
) -> Dict[str, Any]:
    return {
        "ok": True,
        "owned": await hub.registry.owned_canvases(actor.actor_id),
        "shared": await hub.registry.shared_canvases(actor.actor_id),
    }


@router.post("/join", dependencies=[Depends(ensure_share_codes_enabled)])
async def join_canvas(
    request: JoinRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    record = await hub.registry.join_by_share_code(request.share_code, actor.actor_id, actor.name)
    return {"ok": True, "canvas": _record_payload(record)}


@router.get("/share-codes/{code}", dependencies=[Depends(ensure_share_codes_enabled)])
async def validate_share_code(code: str, hub: CanvasHub = Depends(get_hub)) -> Dict[str, Any]:
    record = await hub.registry.validate_share_code(code)
    return {"ok": True, "canvas_id": record.id, "name": record.name, "owner": record.owner_name}


@router.get("/{canvas_id}")
async def get_canvas(
    canvas_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    record = await hub.registry.get_canvas(canvas_id)
    await hub.registry.touch(canvas_id, actor.actor_id)
    return {"ok": True, "canvas": _record_payload(record)}


@router.patch("/{canvas_id}")
async def update_canvas(
    canvas_id: str,
    request: CanvasUpdateRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    record = await hub.registry.get_canvas(canvas_id)
    if not record.can_access(actor.actor_id):
        raise PermissionDeniedError(
            "Only the owner or a collaborator can update this canvas",
            details={"canvas_id": canvas_id},
        )
    updated = await hub.registry.update_canvas(
        canvas_id, request.model_dump(exclude_unset=True)
    )
    return {"ok": True, "canvas": _record_payload(updated)}


@router.delete("/{canvas_id}")
async def delete_canvas(
    canvas_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    await hub.registry.delete_canvas(canvas_id, actor.actor_id)
    dropped = await hub.discard(canvas_id)
    LOGGER.info(
        "Canvas %s deleted by %s (%d sessions closed)", canvas_id, actor.actor_id, dropped
    )
    return {"ok": True, "canvas_id": canvas_id, "sessions_closed": dropped}


@router.post("/{canvas_id}/share-code", dependencies=[Depends(ensure_share_codes_enabled)])
async def regenerate_share_code(
    canvas_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    code = await hub.registry.regenerate_share_code(canvas_id, actor.actor_id)
    return {"ok": True, "share_code": code, "display": format_share_code(code)}


@router.delete("/{canvas_id}/collaborators/{user_id}")
async def remove_collaborator(
    canvas_id: str,
    user_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    record = await hub.registry.remove_collaborator(canvas_id, user_id, actor.actor_id)
    return {"ok": True, "collaborators": list(record.collaborators)}
