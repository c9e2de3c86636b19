from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from collabcanvas.config import feature_flags
from collabcanvas.server.core.hub import CanvasHub


@dataclass(frozen=True)
class Actor:
    actor_id: str
    name: Optional[str] = None


def get_hub(request: Request) -> CanvasHub:
    return request.app.state.hub


def get_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_name: Optional[str] = Header(default=None),
) -> Actor:
    actor_id = (x_actor_id or "").strip()
    if not actor_id:
        raise HTTPException(status_code=401, detail="actor_required")
    return Actor(actor_id=actor_id, name=(x_actor_name or "").strip() or None)


def ensure_collaboration_enabled() -> None:
    if not feature_flags.is_enabled("enable_collaboration"):
        raise HTTPException(status_code=403, detail="collaboration_disabled")


def ensure_share_codes_enabled() -> None:
    if not feature_flags.is_enabled("enable_share_codes"):
        raise HTTPException(status_code=403, detail="share_codes_disabled")


def ensure_presence_enabled() -> None:
    if not feature_flags.is_enabled("enable_presence"):
        raise HTTPException(status_code=403, detail="presence_disabled")
