from __future__ import annotations

"""
Shape variants stored in a canvas document.

Shapes travel as camelCase JSON objects tagged by ``type``.  Each kind is a
dataclass carrying only its own geometry; keys the engine does not know about
are preserved in ``extra`` so foreign fields survive a read-modify-write cycle.
"""

import math
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from functools import lru_cache
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type

from .errors import InvalidShapeError

DEFAULT_SHAPE_FILL = "#cccccc"
DEFAULT_BLEND_MODE = "source-over"
DEFAULT_POSITION = (100.0, 100.0)

DEFAULT_SHAPE_WIDTH = 300.0
DEFAULT_SHAPE_HEIGHT = 300.0
DEFAULT_CIRCLE_RADIUS = 150.0
DEFAULT_TEXT_WIDTH = 1200.0
DEFAULT_TEXT_HEIGHT = 600.0
DEFAULT_TEXT_CONTENT = "Double-click to edit"
DEFAULT_TEXT_SIZE = 200.0
DEFAULT_TEXT_COLOR = "#000000"
DEFAULT_TEXT_FONT_FAMILY = "Arial"

# Lease and bookkeeping fields are never copied onto a pasted shape.
_PASTE_EXCLUDED = frozenset(
    {
        "id",
        "is_locked",
        "locked_by",
        "lock_start_time",
        "layer_locked",
        "layer_locked_by",
        "created_by",
        "created_at",
        "last_modified_by",
        "last_modified_at",
    }
)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def generate_shape_id() -> str:
    return f"shape_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(slots=True)
class Shape:
    """Fields shared by every shape kind."""

    kind: ClassVar[str] = ""

    id: str
    x: float = DEFAULT_POSITION[0]
    y: float = DEFAULT_POSITION[1]
    rotation: float = 0.0
    scale_x: float = 1.0
    scale_y: float = 1.0
    fill: str = DEFAULT_SHAPE_FILL
    opacity: float = 1.0
    blend_mode: str = DEFAULT_BLEND_MODE
    visible: bool = True
    layer_locked: bool = False
    layer_locked_by: Optional[str] = None
    is_locked: bool = False
    locked_by: Optional[str] = None
    lock_start_time: Optional[float] = None
    created_by: Optional[str] = None
    created_at: Optional[float] = None
    last_modified_by: Optional[str] = None
    last_modified_at: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    # Serialisation ---------------------------------------------------------
    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "Shape":
        mapping = _wire_map(cls)
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in raw.items():
            if key == "type":
                continue
            attr = mapping.get(key)
            if attr is None:
                extra[key] = value
            else:
                kwargs[attr] = value
        if not kwargs.get("id"):
            raise InvalidShapeError("Shape payload is missing an id")
        kwargs["id"] = str(kwargs["id"])
        return cls(**kwargs, extra=extra)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.kind}
        for item in fields(self):
            if item.name == "extra":
                continue
            payload[_camel(item.name)] = getattr(self, item.name)
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload

    def with_fields(self, updates: Mapping[str, Any]) -> "Shape":
        """Return a copy with a partial wire-keyed update merged in."""
        if "type" in updates and updates["type"] != self.kind:
            raise InvalidShapeError(
                f"Cannot change type of {self.id} from {self.kind!r}",
                details={"shape_id": self.id},
            )
        if "id" in updates and str(updates["id"]) != self.id:
            raise InvalidShapeError(
                f"Cannot change id of {self.id}", details={"shape_id": self.id}
            )
        merged = self.as_dict()
        merged.update(updates)
        return type(self).from_wire(merged)

    def wire_keys(self, updates: Mapping[str, Any]) -> Dict[str, Any]:
        """Rename snake_case keys in ``updates`` to their camelCase wire names."""
        mapping = _wire_map(type(self))
        return {
            (_camel(mapping[key]) if key in mapping else key): value
            for key, value in updates.items()
        }

    def pick(self, keys) -> Dict[str, Any]:
        """Current wire values for ``keys``.  Keys the shape does not carry are left out."""
        current = self.as_dict()
        return {key: current[key] for key in keys if key in current}

    def without_extra(self, keys) -> "Shape":
        dropped = set(keys)
        return replace(self, extra={k: v for k, v in self.extra.items() if k not in dropped})

    # Geometry --------------------------------------------------------------
    def area(self) -> float:
        raise NotImplementedError(type(self).__name__)

    def bounds(self) -> Tuple[float, float, float, float]:
        raise NotImplementedError(type(self).__name__)

    def _scaled(self, width: float, height: float) -> Tuple[float, float]:
        return abs(width * (self.scale_x or 1.0)), abs(height * (self.scale_y or 1.0))


@dataclass(slots=True)
class RectangleShape(Shape):
    kind: ClassVar[str] = "rectangle"

    width: float = DEFAULT_SHAPE_WIDTH
    height: float = DEFAULT_SHAPE_HEIGHT

    def area(self) -> float:
        width, height = self._scaled(self.width, self.height)
        return width * height

    def bounds(self) -> Tuple[float, float, float, float]:
        width, height = self._scaled(self.width, self.height)
        return (self.x, self.y, width, height)


@dataclass(slots=True)
class CircleShape(Shape):
    """Circles are positioned by their centre."""

    kind: ClassVar[str] = "circle"

    radius: float = DEFAULT_CIRCLE_RADIUS

    def area(self) -> float:
        rx, ry = self._scaled(self.radius, self.radius)
        return math.pi * rx * ry

    def bounds(self) -> Tuple[float, float, float, float]:
        rx, ry = self._scaled(self.radius, self.radius)
        return (self.x - rx, self.y - ry, 2 * rx, 2 * ry)


@dataclass(slots=True)
class TriangleShape(Shape):
    kind: ClassVar[str] = "triangle"

    width: float = DEFAULT_SHAPE_WIDTH
    height: float = DEFAULT_SHAPE_HEIGHT

    def area(self) -> float:
        width, height = self._scaled(self.width, self.height)
        return 0.5 * width * height

    def bounds(self) -> Tuple[float, float, float, float]:
        width, height = self._scaled(self.width, self.height)
        return (self.x, self.y, width, height)


@dataclass(slots=True)
class TextShape(Shape):
    kind: ClassVar[str] = "text"

    fill: str = DEFAULT_TEXT_COLOR
    text: str = DEFAULT_TEXT_CONTENT
    font_size: float = DEFAULT_TEXT_SIZE
    font_family: str = DEFAULT_TEXT_FONT_FAMILY
    font_style: str = "normal"
    width: float = DEFAULT_TEXT_WIDTH
    height: float = DEFAULT_TEXT_HEIGHT

    def area(self) -> float:
        width, height = self._scaled(self.width, self.height)
        return width * height

    def bounds(self) -> Tuple[float, float, float, float]:
        width, height = self._scaled(self.width, self.height)
        return (self.x, self.y, width, height)


SHAPE_TYPES: Dict[str, Type[Shape]] = {
    cls.kind: cls for cls in (RectangleShape, CircleShape, TriangleShape, TextShape)
}


@lru_cache(maxsize=None)
def _wire_map(cls: Type[Shape]) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for item in fields(cls):
        if item.name == "extra":
            continue
        mapping[item.name] = item.name
        mapping[_camel(item.name)] = item.name
    return mapping


def shape_from_dict(raw: Mapping[str, Any]) -> Shape:
    if not isinstance(raw, Mapping):
        raise InvalidShapeError("Shape payload must be an object")
    kind = str(raw.get("type") or "")
    cls = SHAPE_TYPES.get(kind)
    if cls is None:
        raise InvalidShapeError(f"Unknown shape type: {kind!r}", details={"type": kind})
    return cls.from_wire(raw)


def coerce_shape(value: Shape | Mapping[str, Any]) -> Shape:
    if isinstance(value, Shape):
        return value
    return shape_from_dict(value)


def new_shape(
    kind: str,
    *,
    shape_id: Optional[str] = None,
    x: Optional[float] = None,
    y: Optional[float] = None,
    fill: Optional[str] = None,
) -> Shape:
    """Build a shape of ``kind`` populated with its default geometry."""
    cls = SHAPE_TYPES.get(kind)
    if cls is None:
        raise InvalidShapeError(f"Unknown shape type: {kind!r}", details={"type": kind})
    kwargs: Dict[str, Any] = {
        "id": shape_id or generate_shape_id(),
        "x": DEFAULT_POSITION[0] if x is None else x,
        "y": DEFAULT_POSITION[1] if y is None else y,
    }
    # Text keeps its own colour so a picked fill does not turn text grey.
    if fill and cls is not TextShape:
        kwargs["fill"] = fill
    return cls(**kwargs)


def clone_for_paste(shape: Shape, *, offset: float, shape_id: Optional[str] = None) -> Shape:
    payload = {
        _camel(item.name): getattr(shape, item.name)
        for item in fields(shape)
        if item.name not in _PASTE_EXCLUDED and item.name != "extra"
    }
    payload["type"] = shape.kind
    payload["id"] = shape_id or generate_shape_id()
    payload["x"] = (shape.x or 0.0) + offset
    payload["y"] = (shape.y or 0.0) + offset
    return shape_from_dict(payload)


def lease_holder(shape: Shape, *, now: float, timeout: float) -> Optional[str]:
    """Return the actor holding an unexpired lease on ``shape``, if any."""
    if not shape.is_locked or not shape.locked_by:
        return None
    started = shape.lock_start_time or 0.0
    if now - started > timeout:
        return None
    return shape.locked_by


__all__ = [
    "Shape",
    "RectangleShape",
    "CircleShape",
    "TriangleShape",
    "TextShape",
    "SHAPE_TYPES",
    "shape_from_dict",
    "coerce_shape",
    "new_shape",
    "clone_for_paste",
    "generate_shape_id",
    "lease_holder",
]
