"""
Shape synchronisation engine.

The shape store, leases, layer ordering, undo history and presence tracking
live here so both the FastAPI surface and in-process clients drive the same
read-modify-write protocol.
"""

from __future__ import annotations

from .ephemeral import EphemeralChannel, MemoryEphemeralBackend, MemoryEphemeralChannel
from .errors import (
    CanvasNotFoundError,
    CanvasSyncError,
    InvalidShapeError,
    LayerLockedError,
    PermissionDeniedError,
    ReplayFailureError,
    ShapeNotFoundError,
    ShareCodeError,
    WriteFailureError,
)
from .gateway import JsonDocumentStore, MemoryDocumentStore, PersistenceGateway
from .history import Action, FieldChange, UndoRedoLog
from .locks import LockManager
from .presence import CursorThrottle, PresenceSession, PresenceTracker
from .registry import CanvasRecord, CanvasRegistry
from .session import CanvasSession, CanvasState, EditPermission, Maintenance
from .shapes import (
    CircleShape,
    RectangleShape,
    Shape,
    TextShape,
    TriangleShape,
    new_shape,
    shape_from_dict,
)
from .store import ShapeStore
from .zorder import ZOrderManager

__all__ = [
    "Action",
    "CanvasNotFoundError",
    "CanvasRecord",
    "CanvasRegistry",
    "CanvasSession",
    "CanvasState",
    "CanvasSyncError",
    "CircleShape",
    "CursorThrottle",
    "EditPermission",
    "EphemeralChannel",
    "FieldChange",
    "InvalidShapeError",
    "JsonDocumentStore",
    "LayerLockedError",
    "LockManager",
    "Maintenance",
    "MemoryDocumentStore",
    "MemoryEphemeralBackend",
    "MemoryEphemeralChannel",
    "PermissionDeniedError",
    "PersistenceGateway",
    "PresenceSession",
    "PresenceTracker",
    "RectangleShape",
    "ReplayFailureError",
    "Shape",
    "ShapeNotFoundError",
    "ShapeStore",
    "ShareCodeError",
    "TextShape",
    "TriangleShape",
    "UndoRedoLog",
    "WriteFailureError",
    "ZOrderManager",
    "new_shape",
    "shape_from_dict",
]
