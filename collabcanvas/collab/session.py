from __future__ import annotations

"""
Per-client observable canvas store.

A ``CanvasSession`` wires one actor's view of one canvas together: the shared
shape list, leases, layer order, the actor's private undo history, presence
and the local-only bits (selection, clipboard).  Every mutation funnels
through the engine components; observers get a fresh ``CanvasState`` after
each change.
"""

import asyncio
import contextlib
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from ..config.settings import SyncSettings
from .ephemeral import EphemeralChannel
from .errors import ShapeNotFoundError
from .gateway import PersistenceGateway
from .history import Action, UndoRedoLog
from .locks import LockManager
from .presence import CursorThrottle, PresenceSession, PresenceTracker, cursor_color_for, display_name_for
from .shapes import Shape, clone_for_paste, new_shape
from .store import ShapeStore, index_of
from .zorder import ZOrderManager

LOGGER = logging.getLogger(__name__)

LAYER_LOCKED_MESSAGE = "This layer is locked. Unlock it in the Layers panel to edit."
LEASED_MESSAGE = (
    "This shape is currently being edited by another user. "
    "Please wait until they finish."
)

StateCallback = Callable[["CanvasState"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class EditPermission:
    can_edit: bool
    message: str = ""
    holder: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"canEdit": self.can_edit, "message": self.message, "holder": self.holder}


@dataclass
class CanvasState:
    canvas_id: str
    actor_id: str
    shapes: List[Shape] = field(default_factory=list)
    selected_id: Optional[str] = None
    presence: Dict[str, PresenceSession] = field(default_factory=dict)
    can_undo: bool = False
    can_redo: bool = False
    has_clipboard: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "canvasId": self.canvas_id,
            "actorId": self.actor_id,
            "shapes": [shape.as_dict() for shape in self.shapes],
            "selectedId": self.selected_id,
            "presence": {key: session.as_dict() for key, session in self.presence.items()},
            "canUndo": self.can_undo,
            "canRedo": self.can_redo,
            "hasClipboard": self.has_clipboard,
        }


class CanvasSession:
    def __init__(
        self,
        canvas_id: str,
        actor_id: str,
        *,
        gateway: PersistenceGateway,
        channel: Optional[EphemeralChannel] = None,
        display_name: Optional[str] = None,
        color: Optional[str] = None,
        settings: Optional[SyncSettings] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.canvas_id = canvas_id
        self.actor_id = actor_id
        self.settings = settings or SyncSettings()
        self.display_name = display_name_for(display_name)
        self.color = color or cursor_color_for(actor_id)
        self._clock = clock or time.time

        self.store = ShapeStore(gateway, canvas_id, clock=self._clock)
        self.locks = LockManager(self.store, timeout=self.settings.lease_timeout, clock=self._clock)
        self.zorder = ZOrderManager(self.store)
        self.history = UndoRedoLog(
            self.store,
            actor_id,
            zorder=self.zorder,
            max_entries=self.settings.undo_depth or None,
        )
        self.presence = PresenceTracker(channel, clock=self._clock) if channel is not None else None
        self.throttle = CursorThrottle(
            interval=self.settings.cursor_interval,
            min_distance=self.settings.cursor_min_distance,
        )

        self._shapes: List[Shape] = []
        self._sessions: Dict[str, PresenceSession] = {}
        self._selected_id: Optional[str] = None
        self._clipboard: Optional[Shape] = None
        self._observers: List[StateCallback] = []
        self._notify_tasks: Set[asyncio.Task] = set()
        self._unsubscribers: List[Callable[[], None]] = []
        self._joined = False
        self._opened = False

        self._unsubscribers.append(self.store.add_action_listener(self.history.record))
        self._unsubscribers.append(self.history.subscribe(lambda _log: self._schedule_notify()))

    # Lifecycle ----------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self._opened

    async def open(self) -> "CanvasSession":
        if self._opened:
            return self
        self._opened = True
        self._unsubscribers.append(await self.store.subscribe(self._on_shapes))
        if self.presence is not None:
            await self.presence.join(self.canvas_id, self.actor_id, self.display_name, self.color)
            self._joined = True
            self._unsubscribers.append(
                await self.presence.subscribe(
                    self.canvas_id, self._on_presence, exclude=self.actor_id
                )
            )
        LOGGER.info("Session opened: %s on %s", self.actor_id, self.canvas_id)
        return self

    async def close(self) -> None:
        self._opened = False
        while self._unsubscribers:
            self._unsubscribers.pop()()
        if self.presence is not None and self._joined:
            self._joined = False
            await self.presence.leave(self.canvas_id, self.actor_id)
        self._observers.clear()
        LOGGER.info("Session closed: %s on %s", self.actor_id, self.canvas_id)

    async def __aenter__(self) -> "CanvasSession":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Observers ----------------------------------------------------------------
    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def state(self) -> CanvasState:
        now = self._clock()
        shapes = []
        for shape in self._shapes:
            if shape.is_locked and self.locks.holder(shape, now=now) is None:
                shape = replace(shape, is_locked=False, locked_by=None, lock_start_time=None)
            shapes.append(shape)
        return CanvasState(
            canvas_id=self.canvas_id,
            actor_id=self.actor_id,
            shapes=shapes,
            selected_id=self._selected_id,
            presence=dict(self._sessions),
            can_undo=self.history.can_undo,
            can_redo=self.history.can_redo,
            has_clipboard=self._clipboard is not None,
        )

    async def _notify(self) -> None:
        snapshot = self.state()
        for callback in list(self._observers):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                LOGGER.warning("Session observer failed for %s: %s", self.actor_id, exc)

    def _schedule_notify(self) -> None:
        if not self._observers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._notify())
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _on_shapes(self, shapes: List[Shape]) -> None:
        self._shapes = list(shapes)
        if self._selected_id and index_of(self._shapes, self._selected_id) is None:
            self._selected_id = None
        await self._notify()

    async def _on_presence(self, sessions: Dict[str, PresenceSession]) -> None:
        self._sessions = dict(sessions)
        await self._notify()

    # Reads --------------------------------------------------------------------
    @property
    def shapes(self) -> List[Shape]:
        return list(self._shapes)

    @property
    def selected_id(self) -> Optional[str]:
        return self._selected_id

    @property
    def clipboard(self) -> Optional[Shape]:
        return self._clipboard

    def find(self, shape_id: str) -> Optional[Shape]:
        index = index_of(self._shapes, shape_id)
        return self._shapes[index] if index is not None else None

    async def _fresh(self, shape_id: str) -> Shape:
        shape = await self.store.get(shape_id)
        if shape is None:
            raise ShapeNotFoundError(shape_id)
        return shape

    def edit_permission(self, shape_id: str) -> EditPermission:
        shape = self.find(shape_id)
        if shape is None:
            return EditPermission(False, f"Shape not found: {shape_id}")
        if shape.layer_locked:
            return EditPermission(False, LAYER_LOCKED_MESSAGE)
        holder = self.locks.holder(shape)
        if holder is not None and holder != self.actor_id:
            return EditPermission(False, LEASED_MESSAGE, holder)
        return EditPermission(True)

    # Selection ----------------------------------------------------------------
    def select(self, shape_id: Optional[str]) -> None:
        self._selected_id = shape_id
        self._schedule_notify()

    def deselect(self) -> None:
        self.select(None)

    # Shape edits --------------------------------------------------------------
    async def add_shape(
        self,
        kind: str,
        position: Optional[Sequence[float]] = None,
        *,
        fill: Optional[str] = None,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> Shape:
        x, y = (position[0], position[1]) if position else (None, None)
        shape = new_shape(kind, x=x, y=y, fill=fill)
        if fields:
            shape = shape.with_fields(fields)
        return await self.store.create(shape, self.actor_id)

    async def add_shapes(self, shapes: Iterable[Union[Shape, Mapping[str, Any]]]) -> List[Shape]:
        return await self.store.create_batch(shapes, self.actor_id)

    async def update_shape(self, shape_id: str, fields: Mapping[str, Any]) -> Shape:
        return await self.store.update(shape_id, fields, self.actor_id)

    async def update_shapes(self, changes: Sequence[Mapping[str, Any]]) -> int:
        return await self.store.update_batch(changes, self.actor_id)

    async def delete_shape(self, shape_id: str) -> bool:
        """Delete unless another actor holds an unexpired lease on the shape."""
        current = await self.store.get(shape_id)
        if current is not None:
            holder = self.locks.holder(current)
            if holder is not None and holder != self.actor_id:
                LOGGER.warning("Cannot delete %s: leased by %s", shape_id, holder)
                return False
        deleted = await self.store.delete(shape_id)
        if self._selected_id == shape_id:
            self._selected_id = None
        return deleted

    async def delete_shapes(self, shape_ids: Iterable[str]) -> int:
        targets = list(shape_ids)
        now = self._clock()
        leased = {
            shape.id
            for shape in await self.store.shapes()
            if shape.id in targets
            and self.locks.holder(shape, now=now) not in (None, self.actor_id)
        }
        if leased:
            LOGGER.warning("Skipping %d leased shape(s) in batch delete", len(leased))
        removed = await self.store.delete_batch([i for i in targets if i not in leased])
        if self._selected_id in targets and self._selected_id not in leased:
            self._selected_id = None
        return removed

    # Leases -------------------------------------------------------------------
    async def lock(self, shape_id: str) -> bool:
        return await self.locks.acquire(shape_id, self.actor_id)

    async def unlock(self, shape_id: str) -> bool:
        return await self.locks.release(shape_id, self.actor_id)

    # Layers -------------------------------------------------------------------
    async def bring_to_front(self, shape_id: str) -> bool:
        return await self.zorder.bring_to_front(shape_id)

    async def send_to_back(self, shape_id: str) -> bool:
        return await self.zorder.send_to_back(shape_id)

    async def bring_forward(self, shape_id: str) -> bool:
        return await self.zorder.bring_forward(shape_id)

    async def send_backward(self, shape_id: str) -> bool:
        return await self.zorder.send_backward(shape_id)

    async def reorder(self, ordered: Sequence[Any]) -> bool:
        return await self.zorder.reorder(ordered)

    async def toggle_visibility(self, shape_id: str) -> Shape:
        shape = await self._fresh(shape_id)
        return await self.store.set_visibility(shape_id, not shape.visible, self.actor_id)

    async def toggle_layer_lock(self, shape_id: str) -> Shape:
        shape = await self._fresh(shape_id)
        return await self.store.set_layer_lock(shape_id, not shape.layer_locked, self.actor_id)

    # History ------------------------------------------------------------------
    async def undo(self) -> Optional[Action]:
        return await self.history.undo()

    async def redo(self) -> Optional[Action]:
        return await self.history.redo()

    def start_batch(self) -> None:
        self.history.start_batch()

    def end_batch(self) -> Optional[Action]:
        return self.history.end_batch()

    @contextlib.asynccontextmanager
    async def batch(self) -> AsyncIterator["CanvasSession"]:
        """Group every edit made inside the block into one undo entry."""
        self.start_batch()
        try:
            yield self
        finally:
            self.end_batch()

    # Clipboard ----------------------------------------------------------------
    async def copy(self, shape_id: str) -> Shape:
        shape = self.find(shape_id) or await self._fresh(shape_id)
        self._clipboard = clone_for_paste(shape, offset=0.0, shape_id=shape.id)
        LOGGER.debug("Copied %s to clipboard", shape_id)
        self._schedule_notify()
        return self._clipboard

    async def paste(self) -> Optional[Shape]:
        if self._clipboard is None:
            LOGGER.debug("Nothing to paste")
            return None
        offset = self.settings.paste_offset
        pasted = await self.store.create(
            clone_for_paste(self._clipboard, offset=offset), self.actor_id
        )
        self._selected_id = pasted.id
        # Each paste lands one offset further than the last.
        self._clipboard = replace(
            self._clipboard, x=self._clipboard.x + offset, y=self._clipboard.y + offset
        )
        return pasted

    async def duplicate(self, shape_id: str) -> Shape:
        shape = await self._fresh(shape_id)
        duplicated = await self.store.create(
            clone_for_paste(shape, offset=self.settings.paste_offset), self.actor_id
        )
        self._selected_id = duplicated.id
        return duplicated

    # Presence -----------------------------------------------------------------
    async def move_cursor(self, x: float, y: float, *, force: bool = False) -> bool:
        if self.presence is None or not self._joined:
            return False
        if not force and not self.throttle.should_send(x, y):
            return False
        await self.presence.update_position(self.canvas_id, self.actor_id, x, y)
        return True

    def presence_sessions(self) -> Dict[str, PresenceSession]:
        return dict(self._sessions)


class Maintenance:
    """
    Background sweeps for one canvas: expired leases on a short interval,
    stale presence on a long one.  A failed sweep is logged and retried on
    the next tick.
    """

    def __init__(
        self,
        locks: LockManager,
        presence: Optional[PresenceTracker],
        canvas_id: str,
        *,
        settings: Optional[SyncSettings] = None,
    ) -> None:
        self.locks = locks
        self.presence = presence
        self.canvas_id = canvas_id
        self.settings = settings or SyncSettings()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def reap_locks(self) -> int:
        return await self.locks.reap_expired()

    async def reap_presence(self) -> int:
        if self.presence is None:
            return 0
        return await self.presence.reap_stale(self.canvas_id, self.settings.presence_max_age)

    async def run_once(self) -> Dict[str, int]:
        return {"locks": await self.reap_locks(), "presence": await self.reap_presence()}

    async def _loop(self, name: str, interval: float, sweep: Callable[[], Awaitable[int]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("%s sweep on %s failed: %s", name, self.canvas_id, exc)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop("lease", self.settings.lock_reap_interval, self.reap_locks)
            ),
        ]
        if self.presence is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._loop(
                        "presence", self.settings.presence_reap_interval, self.reap_presence
                    )
                )
            )
        LOGGER.debug("Maintenance started for %s", self.canvas_id)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = ["CanvasSession", "CanvasState", "EditPermission", "Maintenance"]
