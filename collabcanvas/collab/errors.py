from __future__ import annotations

"""
Failure taxonomy for the shape synchronisation engine.

Lease conflicts are deliberately absent: ``LockManager.acquire`` reports them
as a ``False`` result that callers check before destructive edits.
"""

from typing import Any, Dict, Optional


class CanvasSyncError(Exception):
    """Base class for every error surfaced by the collaboration core."""

    code = "canvas_sync_error"
    status = 400

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": False, "code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ShapeNotFoundError(CanvasSyncError):
    code = "shape_not_found"
    status = 404

    def __init__(self, shape_id: str):
        super().__init__(f"Shape not found: {shape_id}", details={"shape_id": shape_id})
        self.shape_id = shape_id


class LayerLockedError(CanvasSyncError):
    code = "layer_locked"
    status = 423

    def __init__(self, shape_id: str):
        super().__init__(
            f"Layer {shape_id} is locked; unlock it in the layers panel to edit",
            details={"shape_id": shape_id},
        )
        self.shape_id = shape_id


class InvalidShapeError(CanvasSyncError):
    code = "invalid_shape"
    status = 422


class WriteFailureError(CanvasSyncError):
    code = "write_failed"
    status = 503


class ReplayFailureError(CanvasSyncError):
    code = "replay_failed"
    status = 409

    def __init__(self, direction: str, action_type: str):
        super().__init__(
            f"{direction} of {action_type} action failed; entry kept for retry",
            details={"direction": direction, "action": action_type},
        )
        self.direction = direction
        self.action_type = action_type


class CanvasNotFoundError(CanvasSyncError):
    code = "canvas_not_found"
    status = 404

    def __init__(self, canvas_id: str):
        super().__init__(f"Canvas not found: {canvas_id}", details={"canvas_id": canvas_id})
        self.canvas_id = canvas_id


class PermissionDeniedError(CanvasSyncError):
    code = "permission_denied"
    status = 403


class ShareCodeError(CanvasSyncError):
    code = "share_code_error"
    status = 400


__all__ = [
    "CanvasSyncError",
    "ShapeNotFoundError",
    "LayerLockedError",
    "InvalidShapeError",
    "WriteFailureError",
    "ReplayFailureError",
    "CanvasNotFoundError",
    "PermissionDeniedError",
    "ShareCodeError",
]
