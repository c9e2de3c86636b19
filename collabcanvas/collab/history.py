from __future__ import annotations

"""
Per-client undo/redo log.

Every entry is self-describing: create/delete entries carry full shape
snapshots with their list positions, update entries carry the old and new
values of exactly the fields that changed, and reorder entries carry both id
orders.  Inverting an entry never needs to look at any other entry.
"""

import copy
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ReplayFailureError

if TYPE_CHECKING:
    from .store import ShapeStore
    from .zorder import ZOrderManager

LOGGER = logging.getLogger(__name__)

ACTION_TYPES = ("create", "delete", "update", "reorder", "batch")


def _now() -> float:
    return time.time()


@dataclass(frozen=True)
class FieldChange:
    """Old and new wire values for one shape.  ``added`` names keys the shape lacked before."""

    shape_id: str
    old_fields: Dict[str, Any]
    new_fields: Dict[str, Any]
    added: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        payload = {
            "id": self.shape_id,
            "oldProps": copy.deepcopy(self.old_fields),
            "newProps": copy.deepcopy(self.new_fields),
        }
        if self.added:
            payload["addedProps"] = list(self.added)
        return payload


@dataclass(frozen=True)
class Action:
    """One undoable mutation (or a batch of them)."""

    type: str
    shapes: Tuple[Dict[str, Any], ...] = ()
    positions: Tuple[int, ...] = ()
    changes: Tuple[FieldChange, ...] = ()
    old_order: Tuple[str, ...] = ()
    new_order: Tuple[str, ...] = ()
    actions: Tuple["Action", ...] = ()
    timestamp: float = field(default_factory=_now)

    @classmethod
    def create(cls, shapes: Sequence[Mapping[str, Any]], positions: Sequence[int]) -> "Action":
        return cls(
            type="create",
            shapes=tuple(copy.deepcopy(dict(s)) for s in shapes),
            positions=tuple(positions),
        )

    @classmethod
    def delete(cls, shapes: Sequence[Mapping[str, Any]], positions: Sequence[int]) -> "Action":
        return cls(
            type="delete",
            shapes=tuple(copy.deepcopy(dict(s)) for s in shapes),
            positions=tuple(positions),
        )

    @classmethod
    def update(cls, changes: Sequence[FieldChange]) -> "Action":
        return cls(
            type="update",
            changes=tuple(
                FieldChange(
                    c.shape_id,
                    copy.deepcopy(c.old_fields),
                    copy.deepcopy(c.new_fields),
                    tuple(c.added),
                )
                for c in changes
            ),
        )

    @classmethod
    def reorder(cls, old_order: Sequence[str], new_order: Sequence[str]) -> "Action":
        return cls(type="reorder", old_order=tuple(old_order), new_order=tuple(new_order))

    @classmethod
    def batch(cls, actions: Sequence["Action"]) -> "Action":
        return cls(type="batch", actions=tuple(actions))

    @property
    def shape_ids(self) -> List[str]:
        return [str(s.get("id")) for s in self.shapes]

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "timestamp": self.timestamp}
        if self.type in {"create", "delete"}:
            payload["shapes"] = [copy.deepcopy(s) for s in self.shapes]
            payload["positions"] = list(self.positions)
        elif self.type == "update":
            payload["updates"] = [change.as_dict() for change in self.changes]
        elif self.type == "reorder":
            payload["oldOrder"] = list(self.old_order)
            payload["newOrder"] = list(self.new_order)
        elif self.type == "batch":
            payload["actions"] = [action.as_dict() for action in self.actions]
        return payload


class UndoRedoLog:
    """
    Two-stack history bound to one actor's ``ShapeStore``.

    Replay writes go through the store with recording turned off, so edits that
    land while an undo or redo is in flight are still recorded.  ``record`` is
    diverted into the open batch while ``start_batch``/``end_batch`` bracket a
    multi-step edit.
    """

    def __init__(
        self,
        store: "ShapeStore",
        actor_id: str,
        *,
        zorder: Optional["ZOrderManager"] = None,
        max_entries: Optional[int] = None,
    ) -> None:
        self.store = store
        self.actor_id = actor_id
        self.zorder = zorder
        self.max_entries = max_entries
        self._undo: Deque[Action] = deque()
        self._redo: List[Action] = []
        self._batch: Optional[List[Action]] = None
        self._batch_depth = 0
        self._replaying = False
        self._recorded = 0
        self._observers: List[Callable[["UndoRedoLog"], None]] = []

    # Observers ----------------------------------------------------------------
    def subscribe(self, callback: Callable[["UndoRedoLog"], None]) -> Callable[[], None]:
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        for callback in list(self._observers):
            try:
                callback(self)
            except Exception as exc:
                LOGGER.warning("History observer failed: %s", exc)

    # State --------------------------------------------------------------------
    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def replaying(self) -> bool:
        return self._replaying

    @property
    def batching(self) -> bool:
        return self._batch is not None

    @property
    def undo_stack(self) -> List[Action]:
        return list(self._undo)

    @property
    def redo_stack(self) -> List[Action]:
        return list(self._redo)

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()
        self._batch = None
        self._batch_depth = 0
        self._notify()

    # Recording ----------------------------------------------------------------
    def record(self, action: Action) -> None:
        if self._batch is not None:
            self._batch.append(action)
            LOGGER.debug("Action collected into batch: %s", action.type)
            return
        self._push_undo(action)
        self._redo.clear()
        self._recorded += 1
        LOGGER.debug("Action recorded: %s", action.type)
        self._notify()

    def _push_undo(self, action: Action) -> None:
        self._undo.append(action)
        if self.max_entries:
            while len(self._undo) > self.max_entries:
                self._undo.popleft()

    def start_batch(self) -> None:
        self._batch_depth += 1
        if self._batch is None:
            self._batch = []

    def end_batch(self) -> Optional[Action]:
        if self._batch is None:
            return None
        self._batch_depth = max(0, self._batch_depth - 1)
        if self._batch_depth:
            return None
        collected, self._batch = self._batch, None
        if not collected:
            return None
        entry = Action.batch(collected)
        self._push_undo(entry)
        self._redo.clear()
        self._recorded += 1
        LOGGER.info("Batch recorded with %d action(s)", len(collected))
        self._notify()
        return entry

    # Replay -------------------------------------------------------------------
    async def undo(self) -> Optional[Action]:
        if not self._undo or self._replaying:
            LOGGER.debug("Nothing to undo")
            return None
        action = self._undo.pop()
        mark = self._recorded
        self._replaying = True
        try:
            await self._invert(action)
        except Exception as exc:
            self._undo.append(action)
            LOGGER.warning("Undo of %s failed: %s", action.type, exc)
            self._notify()
            raise ReplayFailureError("undo", action.type) from exc
        finally:
            self._replaying = False
        if self._recorded == mark:
            self._redo.append(action)
        else:
            LOGGER.debug("Undo of %s not redoable: a new edit landed meanwhile", action.type)
        self._notify()
        return action

    async def redo(self) -> Optional[Action]:
        if not self._redo or self._replaying:
            LOGGER.debug("Nothing to redo")
            return None
        action = self._redo.pop()
        self._replaying = True
        try:
            await self._replay(action)
        except Exception as exc:
            self._redo.append(action)
            LOGGER.warning("Redo of %s failed: %s", action.type, exc)
            self._notify()
            raise ReplayFailureError("redo", action.type) from exc
        finally:
            self._replaying = False
        self._push_undo(action)
        self._notify()
        return action

    async def _invert(self, action: Action) -> None:
        if action.type == "create":
            await self.store.delete_batch(action.shape_ids, record=False)
        elif action.type == "delete":
            await self.store.restore(action.shapes, action.positions)
        elif action.type == "update":
            await self.store.update_batch(
                [
                    {"id": c.shape_id, "fields": c.old_fields, "remove": list(c.added)}
                    for c in action.changes
                ],
                self.actor_id,
                record=False,
            )
        elif action.type == "reorder":
            await self._require_zorder().reorder(list(action.old_order), record=False)
        elif action.type == "batch":
            for sub_action in reversed(action.actions):
                await self._invert(sub_action)
        else:
            raise ValueError(f"unknown action type: {action.type}")

    async def _replay(self, action: Action) -> None:
        if action.type == "create":
            await self.store.restore(action.shapes, action.positions)
        elif action.type == "delete":
            await self.store.delete_batch(action.shape_ids, record=False)
        elif action.type == "update":
            await self.store.update_batch(
                [{"id": c.shape_id, "fields": c.new_fields} for c in action.changes],
                self.actor_id,
                record=False,
            )
        elif action.type == "reorder":
            await self._require_zorder().reorder(list(action.new_order), record=False)
        elif action.type == "batch":
            for sub_action in action.actions:
                await self._replay(sub_action)
        else:
            raise ValueError(f"unknown action type: {action.type}")

    def _require_zorder(self) -> "ZOrderManager":
        if self.zorder is None:
            raise RuntimeError("reorder actions need a ZOrderManager")
        return self.zorder


__all__ = ["ACTION_TYPES", "Action", "FieldChange", "UndoRedoLog"]
