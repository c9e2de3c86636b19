from __future__ import annotations

"""Layer ordering.  List index 0 is the bottom layer, the last index the top."""

import logging
from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

from .errors import ShapeNotFoundError
from .history import Action
from .shapes import Shape
from .store import ShapeStore, index_of

LOGGER = logging.getLogger(__name__)

Mover = Callable[[List[Shape], int], Optional[List[Shape]]]


def _to_front(shapes: List[Shape], index: int) -> Optional[List[Shape]]:
    if index == len(shapes) - 1:
        return None
    shapes.append(shapes.pop(index))
    return shapes


def _to_back(shapes: List[Shape], index: int) -> Optional[List[Shape]]:
    if index == 0:
        return None
    shapes.insert(0, shapes.pop(index))
    return shapes


def _forward(shapes: List[Shape], index: int) -> Optional[List[Shape]]:
    if index >= len(shapes) - 1:
        return None
    shapes[index], shapes[index + 1] = shapes[index + 1], shapes[index]
    return shapes


def _backward(shapes: List[Shape], index: int) -> Optional[List[Shape]]:
    if index <= 0:
        return None
    shapes[index], shapes[index - 1] = shapes[index - 1], shapes[index]
    return shapes


class ZOrderManager:
    def __init__(self, store: ShapeStore) -> None:
        self.store = store

    async def bring_to_front(self, shape_id: str) -> bool:
        return await self._move(shape_id, _to_front, "front", missing_ok=False)

    async def send_to_back(self, shape_id: str) -> bool:
        return await self._move(shape_id, _to_back, "back", missing_ok=False)

    async def bring_forward(self, shape_id: str) -> bool:
        return await self._move(shape_id, _forward, "forward", missing_ok=True)

    async def send_backward(self, shape_id: str) -> bool:
        return await self._move(shape_id, _backward, "backward", missing_ok=True)

    async def reorder(
        self, ordered: Sequence[Union[str, Shape, Mapping[str, Any]]], *, record: bool = True
    ) -> bool:
        orders = await self.store.apply_order(ordered)
        if orders is None:
            LOGGER.debug("Reorder on %s left the stack unchanged", self.store.canvas_id)
            return False
        old, new = orders
        LOGGER.info("Reordered %d layer(s) on %s", len(new), self.store.canvas_id)
        if record:
            self.store.emit_action(Action.reorder(old, new))
        return True

    async def _move(self, shape_id: str, mover: Mover, label: str, *, missing_ok: bool) -> bool:
        orders: dict = {}

        def transform(current: List[Shape]) -> Optional[List[Shape]]:
            index = index_of(current, shape_id)
            if index is None:
                if missing_ok:
                    return None
                raise ShapeNotFoundError(shape_id)
            old = [shape.id for shape in current]
            result = mover(current, index)
            if result is not None:
                orders["old"] = old
                orders["new"] = [shape.id for shape in result]
            return result

        if not await self.store.mutate(transform):
            LOGGER.debug("Move %s of %s was a no-op", label, shape_id)
            return False
        LOGGER.info("Moved %s %s on %s", shape_id, label, self.store.canvas_id)
        self.store.emit_action(Action.reorder(orders["old"], orders["new"]))
        return True


__all__ = ["ZOrderManager"]
