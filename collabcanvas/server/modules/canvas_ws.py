from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from collabcanvas.collab import CanvasSession, CanvasState, CanvasSyncError
from collabcanvas.config import feature_flags

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/api/canvases", tags=["Canvas WebSocket"])

CLOSE_DISABLED = 4403
CLOSE_ACTOR_REQUIRED = 4401

Handler = Callable[[CanvasSession, Dict[str, Any]], Awaitable[Any]]


def _dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _actor_from_socket(websocket: WebSocket) -> Dict[str, str]:
    actor_id = (
        websocket.headers.get("x-actor-id") or websocket.query_params.get("actor_id") or ""
    ).strip()
    name = (
        websocket.headers.get("x-actor-name") or websocket.query_params.get("name") or ""
    ).strip()
    return {"actor_id": actor_id, "name": name}


def _shape_id(body: Dict[str, Any]) -> str:
    shape_id = body.get("id") or body.get("shape_id")
    if not shape_id:
        raise CanvasSyncError("Message needs a shape id", details={"field": "id"})
    return str(shape_id)


def _shapes_payload(state: CanvasState):
    return [shape.as_dict() for shape in state.shapes]


async def _create(session: CanvasSession, body: Dict[str, Any]) -> Any:
    if isinstance(body.get("shape"), dict):
        shape = await session.store.create(body["shape"], session.actor_id)
    else:
        position = None
        if body.get("x") is not None and body.get("y") is not None:
            position = (float(body["x"]), float(body["y"]))
        shape = await session.add_shape(
            str(body.get("kind") or "rectangle"),
            position,
            fill=body.get("fill"),
            fields=body.get("fields") if isinstance(body.get("fields"), dict) else None,
        )
    return shape.as_dict()


async def _create_batch(session: CanvasSession, body: Dict[str, Any]) -> Any:
    created = await session.add_shapes(list(body.get("shapes") or []))
    return [shape.as_dict() for shape in created]


async def _update(session: CanvasSession, body: Dict[str, Any]) -> Any:
    shape = await session.update_shape(_shape_id(body), dict(body.get("fields") or {}))
    return shape.as_dict()


async def _duplicate(session: CanvasSession, body: Dict[str, Any]) -> Any:
    return (await session.duplicate(_shape_id(body))).as_dict()


async def _paste(session: CanvasSession, body: Dict[str, Any]) -> Any:
    pasted = await session.paste()
    return pasted.as_dict() if pasted else None


async def _copy(session: CanvasSession, body: Dict[str, Any]) -> Any:
    await session.copy(_shape_id(body))
    return True


async def _visibility(session: CanvasSession, body: Dict[str, Any]) -> Any:
    return (await session.toggle_visibility(_shape_id(body))).as_dict()


async def _layer_lock(session: CanvasSession, body: Dict[str, Any]) -> Any:
    return (await session.toggle_layer_lock(_shape_id(body))).as_dict()


async def _select(session: CanvasSession, body: Dict[str, Any]) -> Any:
    shape_id = body.get("id")
    session.select(str(shape_id) if shape_id else None)
    return session.selected_id


async def _undo(session: CanvasSession, body: Dict[str, Any]) -> Any:
    action = await session.undo()
    return action.as_dict() if action else None


async def _redo(session: CanvasSession, body: Dict[str, Any]) -> Any:
    action = await session.redo()
    return action.as_dict() if action else None


async def _batch_end(session: CanvasSession, body: Dict[str, Any]) -> Any:
    entry = session.end_batch()
    return entry.as_dict() if entry else None


async def _batch_start(session: CanvasSession, body: Dict[str, Any]) -> Any:
    session.start_batch()
    return True


async def _cursor(session: CanvasSession, body: Dict[str, Any]) -> Any:
    return await session.move_cursor(float(body.get("x") or 0.0), float(body.get("y") or 0.0))


HANDLERS: Dict[str, Handler] = {
    "shape.create": _create,
    "shape.create_batch": _create_batch,
    "shape.update": _update,
    "shape.update_batch": lambda s, b: s.update_shapes(list(b.get("updates") or [])),
    "shape.delete": lambda s, b: s.delete_shape(_shape_id(b)),
    "shape.delete_batch": lambda s, b: s.delete_shapes([str(i) for i in b.get("ids") or []]),
    "shape.duplicate": _duplicate,
    "shape.copy": _copy,
    "shape.paste": _paste,
    "shape.visibility": _visibility,
    "shape.layer_lock": _layer_lock,
    "shape.select": _select,
    "lock.acquire": lambda s, b: s.lock(_shape_id(b)),
    "lock.release": lambda s, b: s.unlock(_shape_id(b)),
    "z.front": lambda s, b: s.bring_to_front(_shape_id(b)),
    "z.back": lambda s, b: s.send_to_back(_shape_id(b)),
    "z.forward": lambda s, b: s.bring_forward(_shape_id(b)),
    "z.backward": lambda s, b: s.send_backward(_shape_id(b)),
    "z.reorder": lambda s, b: s.reorder(list(b.get("ids") or [])),
    "history.undo": _undo,
    "history.redo": _redo,
    "history.batch_start": _batch_start,
    "history.batch_end": _batch_end,
    "cursor.update": _cursor,
}


class _StatePusher:
    """Forward session state to the socket, one message per changed facet."""

    def __init__(self, websocket: WebSocket, canvas_id: str) -> None:
        self.websocket = websocket
        self.canvas_id = canvas_id
        self._shapes: Any = None
        self._presence: Any = None
        self._history: Any = None

    async def __call__(self, state: CanvasState) -> None:
        shapes = _shapes_payload(state)
        if shapes != self._shapes:
            self._shapes = shapes
            await self.websocket.send_text(
                _dumps({"type": "shapes.snapshot", "canvasId": self.canvas_id, "shapes": shapes})
            )
        presence = {key: value.as_dict() for key, value in state.presence.items()}
        if presence != self._presence:
            self._presence = presence
            await self.websocket.send_text(
                _dumps(
                    {"type": "presence.update", "canvasId": self.canvas_id, "sessions": presence}
                )
            )
        history = {"canUndo": state.can_undo, "canRedo": state.can_redo}
        if history != self._history:
            self._history = history
            await self.websocket.send_text(_dumps({"type": "history.state", **history}))


@router.websocket("/{canvas_id}/ws")
async def canvas_ws(websocket: WebSocket, canvas_id: str) -> None:
    await websocket.accept()
    if not feature_flags.is_enabled("enable_collaboration"):
        await websocket.send_text(_dumps({"type": "error", "error": "collaboration_disabled"}))
        await websocket.close(code=CLOSE_DISABLED)
        return
    actor = _actor_from_socket(websocket)
    if not actor["actor_id"]:
        await websocket.send_text(_dumps({"type": "error", "error": "actor_required"}))
        await websocket.close(code=CLOSE_ACTOR_REQUIRED)
        return

    hub = websocket.app.state.hub
    connection_id = f"ws:{actor['actor_id']}:{secrets.token_hex(4)}"
    session = await hub.connect(
        canvas_id, actor["actor_id"], connection_id, display_name=actor["name"] or None
    )
    pusher = _StatePusher(websocket, canvas_id)
    try:
        await websocket.send_text(
            _dumps(
                {
                    "type": "session.joined",
                    "canvasId": canvas_id,
                    "actorId": session.actor_id,
                    "connectionId": connection_id,
                    "displayName": session.display_name,
                    "color": session.color,
                }
            )
        )
        await pusher(session.state())
        session.subscribe(pusher)

        while True:
            raw = await websocket.receive_text()
            try:
                body = json.loads(raw)
            except json.JSONDecodeError:
                body = {"type": "ping"}
            if not isinstance(body, dict):
                body = {"type": "ping"}
            msg_type = str(body.get("type") or "").lower()

            if msg_type == "ping":
                await websocket.send_text(_dumps({"type": "pong", "ts": time.time()}))
                continue

            handler = HANDLERS.get(msg_type)
            if handler is None:
                await websocket.send_text(
                    _dumps({"type": "error", "error": "unknown_message_type", "received": msg_type})
                )
                continue
            try:
                result = await handler(session, body)
            except CanvasSyncError as exc:
                await websocket.send_text(_dumps({"type": "error", "op": msg_type, **exc.as_dict()}))
                continue
            except (ValueError, TypeError) as exc:
                LOGGER.debug("Malformed %s message on %s: %s", msg_type, connection_id, exc)
                await websocket.send_text(
                    _dumps(
                        {
                            "type": "error",
                            "op": msg_type,
                            "ok": False,
                            "code": "invalid_message",
                            "message": str(exc),
                        }
                    )
                )
                continue
            if msg_type != "cursor.update":
                await websocket.send_text(
                    _dumps({"type": "ack", "op": msg_type, "ok": True, "result": result})
                )
    except WebSocketDisconnect:
        LOGGER.info("Canvas websocket disconnected for %s (%s)", canvas_id, actor["actor_id"])
    except Exception as exc:
        LOGGER.warning("Canvas websocket error (%s): %s", connection_id, exc, exc_info=True)
    finally:
        await hub.disconnect(session, connection_id)
