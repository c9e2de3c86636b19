from __future__ import annotations

"""
Canonical ordered shape list for one canvas.

Every mutation is a full read-modify-write of the canvas document: read the
whole list, transform it in memory, replace the whole list.  Two clients whose
cycles overlap race and the last write wins for the entire list.  Batched
calls read once and write once regardless of how many shapes they touch.
"""

import inspect
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import InvalidShapeError, LayerLockedError, ShapeNotFoundError, WriteFailureError
from .gateway import PersistenceGateway
from .history import Action, FieldChange
from .shapes import Shape, coerce_shape, shape_from_dict

LOGGER = logging.getLogger(__name__)

# Fields the layers panel may change on a layer-locked shape.
PANEL_FIELDS = frozenset({"visible", "layerLocked", "layerLockedBy"})

ShapesCallback = Callable[[List[Shape]], Union[None, Awaitable[None]]]
Transform = Callable[[List[Shape]], Optional[List[Shape]]]


def index_of(shapes: Sequence[Shape], shape_id: str) -> Optional[int]:
    for index, shape in enumerate(shapes):
        if shape.id == shape_id:
            return index
    return None


def parse_shapes(document: Optional[Mapping[str, Any]]) -> List[Shape]:
    if not document:
        return []
    raw_shapes = document.get("shapes") or []
    shapes: List[Shape] = []
    for raw in raw_shapes:
        try:
            shapes.append(shape_from_dict(raw))
        except InvalidShapeError as exc:
            LOGGER.warning("Skipping unreadable shape entry: %s", exc)
    return shapes


def _change_fields(change: Mapping[str, Any]) -> Dict[str, Any]:
    fields = change.get("fields")
    if fields is None:
        fields = change.get("updates")
    if not isinstance(fields, Mapping):
        raise InvalidShapeError("Batch update entries need an id and a fields object")
    return dict(fields)


def _change_removals(change: Mapping[str, Any]) -> List[str]:
    return [str(key) for key in change.get("remove") or ()]


def _field_change(
    shape: Shape, updates: Mapping[str, Any], removals: Sequence[str] = ()
) -> FieldChange:
    old = shape.pick([*updates, *removals])
    added = tuple(key for key in updates if key not in old)
    return FieldChange(shape.id, old, dict(updates), added)


def _clear_lease(shape: Shape) -> Shape:
    return replace(shape, is_locked=False, locked_by=None, lock_start_time=None)


class ShapeStore:
    def __init__(
        self,
        gateway: PersistenceGateway,
        canvas_id: str,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.gateway = gateway
        self.canvas_id = canvas_id
        self._clock = clock or time.time
        self._action_listeners: List[Callable[[Action], None]] = []

    # Action feed --------------------------------------------------------------
    def add_action_listener(self, callback: Callable[[Action], None]) -> Callable[[], None]:
        self._action_listeners.append(callback)

        def _remove() -> None:
            if callback in self._action_listeners:
                self._action_listeners.remove(callback)

        return _remove

    def emit_action(self, action: Action) -> None:
        for callback in list(self._action_listeners):
            callback(action)

    # Document IO --------------------------------------------------------------
    async def _read(self) -> List[Shape]:
        try:
            document = await self.gateway.get_document(self.canvas_id)
        except Exception as exc:
            raise WriteFailureError(
                f"Could not read canvas {self.canvas_id}: {exc}",
                details={"canvas_id": self.canvas_id},
            ) from exc
        return parse_shapes(document)

    async def _write(self, shapes: Sequence[Shape]) -> None:
        document = {
            "canvasId": self.canvas_id,
            "shapes": [shape.as_dict() for shape in shapes],
            "lastUpdated": self._clock(),
        }
        try:
            await self.gateway.replace_document(self.canvas_id, document)
        except Exception as exc:
            raise WriteFailureError(
                f"Write to canvas {self.canvas_id} failed: {exc}",
                details={"canvas_id": self.canvas_id},
            ) from exc

    async def mutate(self, transform: Transform) -> bool:
        """
        Run one read-transform-write cycle.

        ``transform`` receives a private copy of the list and returns the new
        list, or ``None`` to skip the write.  Exceptions raised by the
        transform abort the cycle before anything is written.
        """
        shapes = await self._read()
        result = transform(list(shapes))
        if result is None:
            return False
        await self._write(result)
        return True

    # Reads --------------------------------------------------------------------
    async def shapes(self) -> List[Shape]:
        return await self._read()

    async def get(self, shape_id: str) -> Optional[Shape]:
        shapes = await self._read()
        index = index_of(shapes, shape_id)
        return shapes[index] if index is not None else None

    async def subscribe(self, on_change: ShapesCallback) -> Callable[[], None]:
        """Deliver the authoritative list now and after every document change."""

        async def _forward(document: Optional[Dict[str, Any]]) -> None:
            result = on_change(parse_shapes(document))
            if inspect.isawaitable(result):
                await result

        unsubscribe = self.gateway.subscribe(self.canvas_id, _forward)
        current = await self._read()
        result = on_change(current)
        if inspect.isawaitable(result):
            await result
        return unsubscribe

    # Create -------------------------------------------------------------------
    def _stamp_new(self, shape: Shape, actor_id: str, now: float) -> Shape:
        return replace(
            shape,
            created_by=actor_id,
            created_at=now,
            last_modified_by=actor_id,
            last_modified_at=now,
            is_locked=False,
            locked_by=None,
            lock_start_time=None,
            visible=True,
            layer_locked=False,
            layer_locked_by=None,
        )

    async def create(self, shape: Union[Shape, Mapping[str, Any]], actor_id: str) -> Shape:
        created = await self.create_batch([shape], actor_id)
        return created[0]

    async def create_batch(
        self, shapes: Iterable[Union[Shape, Mapping[str, Any]]], actor_id: str
    ) -> List[Shape]:
        now = self._clock()
        incoming = [self._stamp_new(coerce_shape(item), actor_id, now) for item in shapes]
        if not incoming:
            return []
        ids = [shape.id for shape in incoming]
        if len(set(ids)) != len(ids):
            raise InvalidShapeError("Duplicate shape ids in batch", details={"ids": ids})
        positions: List[int] = []

        def transform(current: List[Shape]) -> List[Shape]:
            existing = {shape.id for shape in current}
            clashes = [shape_id for shape_id in ids if shape_id in existing]
            if clashes:
                raise InvalidShapeError(
                    "Shape id already exists", details={"ids": clashes}
                )
            positions.extend(range(len(current), len(current) + len(incoming)))
            return current + incoming

        await self.mutate(transform)
        LOGGER.info(
            "Created %d shape(s) on %s by %s", len(incoming), self.canvas_id, actor_id
        )
        self.emit_action(Action.create([s.as_dict() for s in incoming], positions))
        return incoming

    # Update -------------------------------------------------------------------
    async def update(self, shape_id: str, fields: Mapping[str, Any], actor_id: str) -> Shape:
        updates = dict(fields)
        result: Dict[str, Shape] = {}
        changes: List[FieldChange] = []

        def transform(current: List[Shape]) -> Optional[List[Shape]]:
            index = index_of(current, shape_id)
            if index is None:
                raise ShapeNotFoundError(shape_id)
            shape = current[index]
            if not updates:
                result["shape"] = shape
                return None
            wired = shape.wire_keys(updates)
            self._check_layer_lock(shape, wired)
            changes.append(_field_change(shape, wired))
            current[index] = self._apply_fields(shape, wired, actor_id)
            result["shape"] = current[index]
            return current

        written = await self.mutate(transform)
        if written:
            LOGGER.info("Updated %s on %s by %s", shape_id, self.canvas_id, actor_id)
            self.emit_action(Action.update(changes))
        return result["shape"]

    async def update_batch(
        self, changes: Sequence[Mapping[str, Any]], actor_id: str, *, record: bool = True
    ) -> int:
        """
        Apply ``[{id, fields}]`` in one cycle; unknown ids are skipped.

        An entry may also carry ``remove``, a list of foreign keys to drop from
        the shape.  ``record=False`` writes without emitting an action.
        """
        requested: List[Tuple[str, Dict[str, Any], List[str]]] = []
        for change in changes:
            shape_id = str(change.get("id") or "")
            if not shape_id:
                raise InvalidShapeError("Batch update entries need an id and a fields object")
            requested.append((shape_id, _change_fields(change), _change_removals(change)))
        if not requested:
            return 0
        recorded: List[FieldChange] = []

        def transform(current: List[Shape]) -> Optional[List[Shape]]:
            pending: List[Tuple[int, Dict[str, Any], List[str]]] = []
            for shape_id, updates, removals in requested:
                index = index_of(current, shape_id)
                if index is None:
                    LOGGER.debug("Batch update skipped missing shape %s", shape_id)
                    continue
                if not updates and not removals:
                    continue
                wired = current[index].wire_keys(updates)
                self._check_layer_lock(current[index], [*wired, *removals])
                pending.append((index, wired, removals))
            for index, wired, removals in pending:
                shape = current[index]
                recorded.append(_field_change(shape, wired, removals))
                current[index] = self._apply_fields(shape, wired, actor_id, removals)
            return current if recorded else None

        if await self.mutate(transform):
            LOGGER.info(
                "Updated %d shape(s) on %s by %s", len(recorded), self.canvas_id, actor_id
            )
            if record:
                self.emit_action(Action.update(recorded))
        return len(recorded)

    def _apply_fields(
        self,
        shape: Shape,
        updates: Mapping[str, Any],
        actor_id: str,
        removals: Sequence[str] = (),
    ) -> Shape:
        updated = shape.with_fields(updates)
        if removals:
            updated = updated.without_extra(removals)
        return replace(updated, last_modified_by=actor_id, last_modified_at=self._clock())

    @staticmethod
    def _check_layer_lock(shape: Shape, updates: Iterable[str]) -> None:
        if shape.layer_locked and not set(updates) <= PANEL_FIELDS:
            raise LayerLockedError(shape.id)

    # Delete -------------------------------------------------------------------
    async def delete(self, shape_id: str) -> bool:
        return bool(await self.delete_batch([shape_id]))

    async def delete_batch(self, shape_ids: Iterable[str], *, record: bool = True) -> int:
        targets = {str(shape_id) for shape_id in shape_ids}
        removed: List[Tuple[int, Shape]] = []

        def transform(current: List[Shape]) -> Optional[List[Shape]]:
            for index, shape in enumerate(current):
                if shape.id in targets:
                    if shape.layer_locked:
                        raise LayerLockedError(shape.id)
                    removed.append((index, shape))
            if not removed:
                return None
            return [shape for shape in current if shape.id not in targets]

        if await self.mutate(transform):
            LOGGER.info("Deleted %d shape(s) from %s", len(removed), self.canvas_id)
            if record:
                self.emit_action(
                    Action.delete(
                        [shape.as_dict() for _, shape in removed],
                        [index for index, _ in removed],
                    )
                )
        return len(removed)

    # Layer panel toggles (not undoable) --------------------------------------
    async def set_visibility(self, shape_id: str, visible: bool, actor_id: str) -> Shape:
        return await self._set_panel_fields(shape_id, {"visible": bool(visible)}, actor_id)

    async def set_layer_lock(self, shape_id: str, locked: bool, actor_id: str) -> Shape:
        fields = {"layerLocked": bool(locked), "layerLockedBy": actor_id if locked else None}
        return await self._set_panel_fields(shape_id, fields, actor_id)

    async def _set_panel_fields(
        self, shape_id: str, fields: Mapping[str, Any], actor_id: str
    ) -> Shape:
        result: Dict[str, Shape] = {}

        def transform(current: List[Shape]) -> List[Shape]:
            index = index_of(current, shape_id)
            if index is None:
                raise ShapeNotFoundError(shape_id)
            current[index] = self._apply_fields(current[index], fields, actor_id)
            result["shape"] = current[index]
            return current

        await self.mutate(transform)
        LOGGER.info("Layer %s set %s on %s", shape_id, dict(fields), self.canvas_id)
        return result["shape"]

    # Ordering -----------------------------------------------------------------
    async def apply_order(
        self, ordered: Sequence[Union[str, Shape, Mapping[str, Any]]]
    ) -> Optional[Tuple[List[str], List[str]]]:
        """
        Rearrange the list to follow ``ordered`` (bottom first).

        The order is applied to a fresh read: unknown ids are ignored and ids
        the request leaves out keep their relative order on top.  Returns the
        old and new id orders, or ``None`` when nothing moved.
        """
        wanted: List[str] = []
        for item in ordered:
            if isinstance(item, Shape):
                wanted.append(item.id)
            elif isinstance(item, Mapping):
                wanted.append(str(item.get("id")))
            else:
                wanted.append(str(item))
        orders: Dict[str, List[str]] = {}

        def transform(current: List[Shape]) -> Optional[List[Shape]]:
            by_id = {shape.id: shape for shape in current}
            seen = set()
            result: List[Shape] = []
            for shape_id in wanted:
                if shape_id in by_id and shape_id not in seen:
                    seen.add(shape_id)
                    result.append(by_id[shape_id])
            result.extend(shape for shape in current if shape.id not in seen)
            old = [shape.id for shape in current]
            new = [shape.id for shape in result]
            if old == new:
                return None
            orders["old"], orders["new"] = old, new
            return result

        if not await self.mutate(transform):
            return None
        return orders["old"], orders["new"]

    # Replay support -----------------------------------------------------------
    async def restore(
        self, snapshots: Sequence[Mapping[str, Any]], positions: Sequence[int] = ()
    ) -> List[Shape]:
        """
        Put snapshot shapes back exactly as captured, at their old positions.

        Existing shapes with the same ids are replaced.  Leases are never
        restored.  No action is emitted.
        """
        shapes = [_clear_lease(shape_from_dict(raw)) for raw in snapshots]
        if not shapes:
            return []
        slots = list(positions) + [None] * (len(shapes) - len(positions))
        placed = sorted(
            zip(slots, range(len(shapes)), shapes),
            key=lambda item: (item[0] is None, item[0] if item[0] is not None else 0, item[1]),
        )
        restored_ids = {shape.id for shape in shapes}

        def transform(current: List[Shape]) -> List[Shape]:
            result = [shape for shape in current if shape.id not in restored_ids]
            for slot, _, shape in placed:
                if slot is None or slot > len(result):
                    result.append(shape)
                else:
                    result.insert(max(0, slot), shape)
            return result

        await self.mutate(transform)
        LOGGER.info("Restored %d shape(s) on %s", len(shapes), self.canvas_id)
        return shapes


__all__ = ["ShapeStore", "PANEL_FIELDS", "index_of", "parse_shapes"]
