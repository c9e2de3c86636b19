from __future__ import annotations

"""
Advisory per-shape edit leases.

Leases live on the shapes themselves (``isLocked``/``lockedBy``/
``lockStartTime``) and are written through the same whole-list cycle as every
other mutation.  They only keep well-behaved clients apart: nothing stops a
client from writing through a lease, and any client may steal a lease once it
is older than the timeout.
"""

import logging
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from .errors import CanvasSyncError, LayerLockedError, ShapeNotFoundError
from .shapes import Shape, lease_holder
from .store import ShapeStore, index_of

LOGGER = logging.getLogger(__name__)

DEFAULT_LEASE_TIMEOUT = 5.0


class LockManager:
    def __init__(
        self,
        store: ShapeStore,
        *,
        timeout: float = DEFAULT_LEASE_TIMEOUT,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.timeout = float(timeout)
        self._clock = clock or time.time

    def holder(self, shape: Shape, *, now: Optional[float] = None) -> Optional[str]:
        """Actor holding an unexpired lease on ``shape``; expired reads as free."""
        return lease_holder(
            shape, now=self._clock() if now is None else now, timeout=self.timeout
        )

    def is_expired(self, shape: Shape, *, now: Optional[float] = None) -> bool:
        return shape.is_locked and self.holder(shape, now=now) is None

    async def acquire(self, shape_id: str, actor_id: str) -> bool:
        """
        Take the lease on ``shape_id`` for ``actor_id``.

        Returns ``False`` without writing when another actor holds an
        unexpired lease.  Re-acquiring an own lease refreshes its start time.
        """
        outcome: Dict[str, Optional[str]] = {}

        def transform(current: List[Shape]) -> Optional[List[Shape]]:
            index = index_of(current, shape_id)
            if index is None:
                raise ShapeNotFoundError(shape_id)
            shape = current[index]
            if shape.layer_locked:
                raise LayerLockedError(shape.id)
            now = self._clock()
            holder = self.holder(shape, now=now)
            if holder is not None and holder != actor_id:
                outcome["denied_by"] = holder
                return None
            if shape.is_locked and shape.locked_by and shape.locked_by != actor_id:
                outcome["stolen_from"] = shape.locked_by
            current[index] = replace(
                shape, is_locked=True, locked_by=actor_id, lock_start_time=now
            )
            return current

        await self.store.mutate(transform)
        if "denied_by" in outcome:
            LOGGER.debug(
                "Lease on %s denied to %s (held by %s)",
                shape_id,
                actor_id,
                outcome["denied_by"],
            )
            return False
        if "stolen_from" in outcome:
            LOGGER.info(
                "Expired lease on %s taken from %s by %s",
                shape_id,
                outcome["stolen_from"],
                actor_id,
            )
        else:
            LOGGER.debug("Lease on %s granted to %s", shape_id, actor_id)
        return True

    async def release(self, shape_id: str, actor_id: Optional[str] = None) -> bool:
        """
        Clear the lease on ``shape_id``.

        Only the holder may release; ``actor_id=None`` forces the release.
        Missing shapes and foreign leases are left alone and return ``False``.
        """

        def transform(current: List[Shape]) -> Optional[List[Shape]]:
            index = index_of(current, shape_id)
            if index is None:
                return None
            shape = current[index]
            if not shape.is_locked:
                return None
            if actor_id is not None and shape.locked_by != actor_id:
                return None
            current[index] = replace(
                shape, is_locked=False, locked_by=None, lock_start_time=None
            )
            return current

        released = await self.store.mutate(transform)
        if released:
            LOGGER.debug("Lease on %s released by %s", shape_id, actor_id or "<forced>")
        return released

    async def reap_expired(self) -> int:
        """Clear every expired lease in one write; sweep failures are logged."""
        cleared: List[str] = []

        def transform(current: List[Shape]) -> Optional[List[Shape]]:
            now = self._clock()
            for index, shape in enumerate(current):
                if self.is_expired(shape, now=now):
                    cleared.append(shape.id)
                    current[index] = replace(
                        shape, is_locked=False, locked_by=None, lock_start_time=None
                    )
            return current if cleared else None

        try:
            await self.store.mutate(transform)
        except CanvasSyncError as exc:
            LOGGER.warning("Lease sweep on %s failed: %s", self.store.canvas_id, exc)
            return 0
        if cleared:
            LOGGER.info(
                "Reaped %d expired lease(s) on %s", len(cleared), self.store.canvas_id
            )
        return len(cleared)


__all__ = ["DEFAULT_LEASE_TIMEOUT", "LockManager"]
