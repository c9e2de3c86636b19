from __future__ import annotations

"""
Shape, lease, layer and history endpoints for headless clients.

Each call runs through the caller's hub-held ``CanvasSession`` so undo history
survives between requests for the same ``X-Actor-Id``.
"""

import logging
from typing import Any, Dict, List, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from collabcanvas.collab import CanvasSession
from collabcanvas.server.core.deps import Actor, ensure_collaboration_enabled, get_actor, get_hub
from collabcanvas.server.core.hub import CanvasHub

LOGGER = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/canvases/{canvas_id}",
    tags=["Shapes"],
    dependencies=[Depends(ensure_collaboration_enabled)],
)


class ShapeCreateRequest(BaseModel):
    kind: Literal["rectangle", "circle", "triangle", "text"] | None = None
    x: float | None = None
    y: float | None = None
    fill: str | None = None
    fields: Dict[str, Any] | None = None
    shape: Dict[str, Any] | None = None

    model_config = ConfigDict(extra="forbid")


class ShapeBatchCreateRequest(BaseModel):
    shapes: List[Dict[str, Any]] = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class ShapeUpdateRequest(BaseModel):
    fields: Dict[str, Any]

    model_config = ConfigDict(extra="forbid")


class ShapeBatchUpdateRequest(BaseModel):
    updates: List[Dict[str, Any]] = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class ShapeBatchDeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class MoveRequest(BaseModel):
    move: Literal["front", "back", "forward", "backward"]

    model_config = ConfigDict(extra="forbid")


class OrderRequest(BaseModel):
    ids: List[str]

    model_config = ConfigDict(extra="forbid")


async def _session(canvas_id: str, actor: Actor, hub: CanvasHub) -> CanvasSession:
    return await hub.session(canvas_id, actor.actor_id, display_name=actor.name)


def _history_flags(session: CanvasSession) -> Dict[str, bool]:
    return {"can_undo": session.history.can_undo, "can_redo": session.history.can_redo}


# Shapes -----------------------------------------------------------------------
@router.get("/shapes")
async def list_shapes(
    canvas_id: str, actor: Actor = Depends(get_actor), hub: CanvasHub = Depends(get_hub)
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    shapes = await session.store.shapes()
    return {"ok": True, "canvas_id": canvas_id, "shapes": [s.as_dict() for s in shapes]}


@router.post("/shapes")
async def create_shape(
    canvas_id: str,
    request: ShapeCreateRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    if request.shape is not None:
        shape = await session.store.create(request.shape, actor.actor_id)
    else:
        position = None
        if request.x is not None and request.y is not None:
            position = (request.x, request.y)
        shape = await session.add_shape(
            request.kind or "rectangle", position, fill=request.fill, fields=request.fields
        )
    return {"ok": True, "shape": shape.as_dict(), **_history_flags(session)}


@router.post("/shapes/batch")
async def create_shapes(
    canvas_id: str,
    request: ShapeBatchCreateRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    created = await session.add_shapes(request.shapes)
    return {"ok": True, "shapes": [s.as_dict() for s in created], **_history_flags(session)}


@router.patch("/shapes/batch")
async def update_shapes(
    canvas_id: str,
    request: ShapeBatchUpdateRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    updated = await session.update_shapes(request.updates)
    return {"ok": True, "updated": updated, **_history_flags(session)}


@router.post("/shapes/delete")
async def delete_shapes(
    canvas_id: str,
    request: ShapeBatchDeleteRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    removed = await session.delete_shapes(request.ids)
    return {"ok": True, "deleted": removed, **_history_flags(session)}


@router.patch("/shapes/{shape_id}")
async def update_shape(
    canvas_id: str,
    shape_id: str,
    request: ShapeUpdateRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    shape = await session.update_shape(shape_id, request.fields)
    return {"ok": True, "shape": shape.as_dict(), **_history_flags(session)}


@router.delete("/shapes/{shape_id}")
async def delete_shape(
    canvas_id: str,
    shape_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    deleted = await session.delete_shape(shape_id)
    return {"ok": True, "deleted": deleted, **_history_flags(session)}


@router.get("/shapes/{shape_id}/permission")
async def edit_permission(
    canvas_id: str,
    shape_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    return {"ok": True, **session.edit_permission(shape_id).as_dict()}


@router.post("/shapes/{shape_id}/duplicate")
async def duplicate_shape(
    canvas_id: str,
    shape_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    shape = await session.duplicate(shape_id)
    return {"ok": True, "shape": shape.as_dict(), **_history_flags(session)}


@router.post("/shapes/{shape_id}/visibility")
async def toggle_visibility(
    canvas_id: str,
    shape_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    shape = await session.toggle_visibility(shape_id)
    return {"ok": True, "shape": shape.as_dict()}


@router.post("/shapes/{shape_id}/layer-lock")
async def toggle_layer_lock(
    canvas_id: str,
    shape_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    shape = await session.toggle_layer_lock(shape_id)
    return {"ok": True, "shape": shape.as_dict()}


# Leases -----------------------------------------------------------------------
@router.post("/shapes/{shape_id}/lock")
async def acquire_lease(
    canvas_id: str,
    shape_id: str,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    granted = await session.lock(shape_id)
    return {"ok": True, "granted": granted, "timeout": session.locks.timeout}


@router.delete("/shapes/{shape_id}/lock")
async def release_lease(
    canvas_id: str,
    shape_id: str,
    force: bool = False,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    if force:
        released = await session.locks.release(shape_id, None)
    else:
        released = await session.unlock(shape_id)
    return {"ok": True, "released": released}


@router.post("/locks/reap")
async def reap_leases(canvas_id: str, hub: CanvasHub = Depends(get_hub)) -> Dict[str, Any]:
    cleared = await hub.lock_manager(canvas_id).reap_expired()
    if cleared:
        LOGGER.info("Reaped %d expired leases on canvas %s", cleared, canvas_id)
    return {"ok": True, "cleared": cleared}


# Layers -----------------------------------------------------------------------
@router.post("/shapes/{shape_id}/z")
async def move_layer(
    canvas_id: str,
    shape_id: str,
    request: MoveRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    movers = {
        "front": session.bring_to_front,
        "back": session.send_to_back,
        "forward": session.bring_forward,
        "backward": session.send_backward,
    }
    moved = await movers[request.move](shape_id)
    return {"ok": True, "moved": moved, **_history_flags(session)}


@router.put("/order")
async def reorder(
    canvas_id: str,
    request: OrderRequest,
    actor: Actor = Depends(get_actor),
    hub: CanvasHub = Depends(get_hub),
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    moved = await session.reorder(request.ids)
    order = [shape.id for shape in await session.store.shapes()]
    return {"ok": True, "moved": moved, "order": order, **_history_flags(session)}


# History ----------------------------------------------------------------------
@router.get("/history")
async def history_state(
    canvas_id: str, actor: Actor = Depends(get_actor), hub: CanvasHub = Depends(get_hub)
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    return {
        "ok": True,
        **_history_flags(session),
        "undo": [action.as_dict() for action in session.history.undo_stack],
        "redo": [action.as_dict() for action in session.history.redo_stack],
    }


@router.post("/history/undo")
async def undo(
    canvas_id: str, actor: Actor = Depends(get_actor), hub: CanvasHub = Depends(get_hub)
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    action = await session.undo()
    return {
        "ok": True,
        "action": action.as_dict() if action else None,
        **_history_flags(session),
    }


@router.post("/history/redo")
async def redo(
    canvas_id: str, actor: Actor = Depends(get_actor), hub: CanvasHub = Depends(get_hub)
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    action = await session.redo()
    return {
        "ok": True,
        "action": action.as_dict() if action else None,
        **_history_flags(session),
    }


@router.post("/history/batch/start")
async def start_batch(
    canvas_id: str, actor: Actor = Depends(get_actor), hub: CanvasHub = Depends(get_hub)
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    session.start_batch()
    return {"ok": True, "batching": session.history.batching}


@router.post("/history/batch/end")
async def end_batch(
    canvas_id: str, actor: Actor = Depends(get_actor), hub: CanvasHub = Depends(get_hub)
) -> Dict[str, Any]:
    session = await _session(canvas_id, actor, hub)
    entry = session.end_batch()
    return {
        "ok": True,
        "committed": entry.as_dict() if entry else None,
        **_history_flags(session),
    }
