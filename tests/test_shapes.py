from __future__ import annotations

import math
import re

import pytest

from collabcanvas.collab.errors import InvalidShapeError
from collabcanvas.collab.shapes import (
    CircleShape,
    RectangleShape,
    TextShape,
    TriangleShape,
    clone_for_paste,
    generate_shape_id,
    lease_holder,
    new_shape,
    shape_from_dict,
)


def test_shape_from_wire_keeps_unknown_keys() -> None:
    shape = shape_from_dict(
        {
            "id": "r1",
            "type": "rectangle",
            "x": 10,
            "y": 20,
            "scaleX": 2,
            "blendMode": "multiply",
            "annotation": {"by": "ai"},
        }
    )
    assert isinstance(shape, RectangleShape)
    assert shape.scale_x == 2
    assert shape.blend_mode == "multiply"
    assert shape.extra == {"annotation": {"by": "ai"}}

    wire = shape.as_dict()
    assert wire["type"] == "rectangle"
    assert wire["scaleX"] == 2
    assert wire["annotation"] == {"by": "ai"}
    assert "scale_x" not in wire


def test_shape_from_dict_rejects_bad_payloads() -> None:
    with pytest.raises(InvalidShapeError):
        shape_from_dict({"id": "x", "type": "hexagon"})
    with pytest.raises(InvalidShapeError):
        shape_from_dict({"type": "circle"})
    with pytest.raises(InvalidShapeError):
        shape_from_dict(["not", "a", "shape"])


def test_with_fields_merges_and_guards_identity() -> None:
    shape = new_shape("circle", shape_id="c1", x=0, y=0)
    moved = shape.with_fields({"x": 50, "radius": 10, "lockedBy": None})
    assert isinstance(moved, CircleShape)
    assert (moved.x, moved.radius) == (50, 10)
    assert shape.x == 0

    with pytest.raises(InvalidShapeError):
        shape.with_fields({"type": "rectangle"})
    with pytest.raises(InvalidShapeError):
        shape.with_fields({"id": "other"})


def test_geometry_per_variant() -> None:
    rect = RectangleShape(id="r", width=10, height=20, scale_x=2)
    assert rect.area() == 400
    assert rect.bounds() == (rect.x, rect.y, 20, 20)

    circle = CircleShape(id="c", x=100, y=100, radius=10)
    assert circle.area() == pytest.approx(math.pi * 100)
    assert circle.bounds() == (90, 90, 20, 20)

    triangle = TriangleShape(id="t", width=10, height=10)
    assert triangle.area() == 50

    text = TextShape(id="x", width=100, height=50)
    assert text.area() == 5000


def test_new_shape_defaults() -> None:
    rect = new_shape("rectangle", fill="#ff0000")
    assert rect.fill == "#ff0000"
    assert (rect.x, rect.y) == (100.0, 100.0)
    assert (rect.width, rect.height) == (300.0, 300.0)

    text = new_shape("text", fill="#ff0000")
    assert text.fill == "#000000"
    assert text.text == "Double-click to edit"
    assert text.font_size == 200.0

    with pytest.raises(InvalidShapeError):
        new_shape("star")


def test_clone_for_paste_drops_lease_and_metadata() -> None:
    source = RectangleShape(
        id="r1",
        x=10,
        y=10,
        is_locked=True,
        locked_by="alice",
        lock_start_time=5.0,
        layer_locked=True,
        layer_locked_by="alice",
        created_by="alice",
        created_at=1.0,
        fill="#123456",
    )
    clone = clone_for_paste(source, offset=80)
    assert clone.id != "r1"
    assert (clone.x, clone.y) == (90, 90)
    assert clone.fill == "#123456"
    assert clone.is_locked is False and clone.locked_by is None
    assert clone.layer_locked is False
    assert clone.created_by is None


def test_lease_holder_honours_timeout() -> None:
    shape = RectangleShape(id="r", is_locked=True, locked_by="alice", lock_start_time=100.0)
    assert lease_holder(shape, now=104.0, timeout=5.0) == "alice"
    assert lease_holder(shape, now=105.0, timeout=5.0) == "alice"
    assert lease_holder(shape, now=105.01, timeout=5.0) is None

    unlocked = RectangleShape(id="u")
    assert lease_holder(unlocked, now=0.0, timeout=5.0) is None


def test_generate_shape_id_format() -> None:
    assert re.fullmatch(r"shape_\d+_[0-9a-f]{9}", generate_shape_id())
    assert generate_shape_id() != generate_shape_id()
