from __future__ import annotations

"""
Process-wide canvas hub.

One document store and one ephemeral backend are shared by every client of
the process.  Sessions are created lazily per ``(canvas_id, actor_id)`` for
REST callers and per connection for WebSocket callers; each canvas that has
seen a session also gets a background ``Maintenance`` sweep once the hub is
started.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from collabcanvas.collab import (
    CanvasRegistry,
    CanvasSession,
    JsonDocumentStore,
    LockManager,
    Maintenance,
    MemoryDocumentStore,
    MemoryEphemeralBackend,
    PersistenceGateway,
    PresenceTracker,
    ShapeStore,
)
from collabcanvas.config.feature_flags import load_feature_flags
from collabcanvas.config.settings import SyncSettings, load_settings

LOGGER = logging.getLogger(__name__)


def build_gateway(settings: SyncSettings) -> PersistenceGateway:
    if settings.storage_backend == "json":
        LOGGER.info("Using JSON document store under %s", settings.data_dir)
        return JsonDocumentStore(settings.data_dir)
    return MemoryDocumentStore()


class CanvasHub:
    def __init__(
        self,
        *,
        settings: Optional[SyncSettings] = None,
        gateway: Optional[PersistenceGateway] = None,
        backend: Optional[MemoryEphemeralBackend] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.gateway = gateway or build_gateway(self.settings)
        self.backend = backend or MemoryEphemeralBackend()
        self._clock = clock or time.time
        self.registry = CanvasRegistry(self.gateway, clock=self._clock)
        self._sessions: Dict[Tuple[str, str], CanvasSession] = {}
        self._trackers: Dict[str, PresenceTracker] = {}
        self._maintenance: Dict[str, Maintenance] = {}
        self._lock = asyncio.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def feature_flags(self) -> Dict[str, bool]:
        return load_feature_flags()

    # Sessions -----------------------------------------------------------------
    async def session(
        self, canvas_id: str, actor_id: str, *, display_name: Optional[str] = None
    ) -> CanvasSession:
        """REST session for ``actor_id``: shape state and history, no presence."""
        key = (canvas_id, actor_id)
        async with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                return session
            session = CanvasSession(
                canvas_id,
                actor_id,
                gateway=self.gateway,
                display_name=display_name,
                settings=self.settings,
                clock=self._clock,
            )
            await session.open()
            self._sessions[key] = session
            self._ensure_maintenance(canvas_id)
            LOGGER.debug("REST session created for %s on %s", actor_id, canvas_id)
            return session

    async def connect(
        self,
        canvas_id: str,
        actor_id: str,
        connection_id: str,
        *,
        display_name: Optional[str] = None,
    ) -> CanvasSession:
        """Connection-scoped session whose presence is removed on disconnect."""
        flags = self.feature_flags()
        channel = self.backend.connect(connection_id) if flags.get("enable_presence", True) else None
        session = CanvasSession(
            canvas_id,
            actor_id,
            gateway=self.gateway,
            channel=channel,
            display_name=display_name,
            settings=self.settings,
            clock=self._clock,
        )
        await session.open()
        self._ensure_maintenance(canvas_id)
        return session

    async def disconnect(self, session: CanvasSession, connection_id: str) -> None:
        try:
            await session.close()
        finally:
            removed = await self.backend.disconnect(connection_id)
            if removed:
                LOGGER.debug("Connection %s dropped %d presence path(s)", connection_id, removed)

    def presence_for(self, actor_id: str) -> PresenceTracker:
        tracker = self._trackers.get(actor_id)
        if tracker is None:
            tracker = PresenceTracker(self.backend.connect(f"rest:{actor_id}"), clock=self._clock)
            self._trackers[actor_id] = tracker
        return tracker

    def lock_manager(self, canvas_id: str) -> LockManager:
        return LockManager(
            ShapeStore(self.gateway, canvas_id, clock=self._clock),
            timeout=self.settings.lease_timeout,
            clock=self._clock,
        )

    # Maintenance --------------------------------------------------------------
    def _ensure_maintenance(self, canvas_id: str) -> Maintenance:
        maintenance = self._maintenance.get(canvas_id)
        if maintenance is None:
            maintenance = Maintenance(
                self.lock_manager(canvas_id),
                PresenceTracker(self.backend.connect("maintenance"), clock=self._clock),
                canvas_id,
                settings=self.settings,
            )
            self._maintenance[canvas_id] = maintenance
        if self._running:
            maintenance.start()
        return maintenance

    async def sweep(self, canvas_id: str) -> Dict[str, int]:
        return await self._ensure_maintenance(canvas_id).run_once()

    async def start(self) -> None:
        self._running = True
        for maintenance in self._maintenance.values():
            maintenance.start()
        LOGGER.info("Canvas hub started (%d canvas(es) tracked)", len(self._maintenance))

    async def stop(self) -> None:
        self._running = False
        for maintenance in list(self._maintenance.values()):
            await maintenance.stop()
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.close()
        LOGGER.info("Canvas hub stopped")

    async def discard(self, canvas_id: str) -> int:
        """Forget every REST session and the sweep for a deleted canvas."""
        async with self._lock:
            keys = [key for key in self._sessions if key[0] == canvas_id]
            sessions = [self._sessions.pop(key) for key in keys]
        for session in sessions:
            await session.close()
        maintenance = self._maintenance.pop(canvas_id, None)
        if maintenance is not None:
            await maintenance.stop()
        return len(sessions)

    def stats(self) -> Dict[str, Any]:
        return {
            "canvases": len({canvas_id for canvas_id, _ in self._sessions} | set(self._maintenance)),
            "sessions": len(self._sessions),
            "sweeps_running": sum(1 for m in self._maintenance.values() if m.running),
            "running": self._running,
        }


__all__ = ["CanvasHub", "build_gateway"]
