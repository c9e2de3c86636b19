from __future__ import annotations

"""
Ephemeral key-value channel used for presence.

Values live in a slash-separated tree.  Each client talks through its own
connection so the backend can run that connection's remove-on-disconnect
registrations when the connection is lost.
"""

import asyncio
import copy
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

LOGGER = logging.getLogger(__name__)

ValueCallback = Callable[[Any], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


def split_path(path: str) -> Tuple[str, ...]:
    return tuple(part for part in str(path).split("/") if part)


class EphemeralChannel(Protocol):
    async def write(self, path: str, value: Any) -> None: ...

    async def merge(self, path: str, partial: Mapping[str, Any]) -> None: ...

    async def read(self, path: str) -> Any: ...

    async def remove(self, path: str) -> None: ...

    def subscribe(self, path: str, callback: ValueCallback) -> Unsubscribe: ...

    async def register_remove_on_disconnect(self, path: str) -> None: ...

    async def cancel_remove_on_disconnect(self, path: str) -> None: ...


class MemoryEphemeralBackend:
    """Shared in-process tree standing in for a realtime key-value service."""

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = max(0.0, float(latency))
        self._root: Dict[str, Any] = {}
        self._subscribers: List[Tuple[Tuple[str, ...], ValueCallback]] = []
        self._on_disconnect: Dict[str, Dict[Tuple[str, ...], None]] = {}
        self._connections: Dict[str, "MemoryEphemeralChannel"] = {}

    # Connections -----------------------------------------------------------
    def connect(self, connection_id: Optional[str] = None) -> "MemoryEphemeralChannel":
        connection_id = connection_id or uuid.uuid4().hex
        channel = self._connections.get(connection_id)
        if channel is None:
            channel = MemoryEphemeralChannel(self, connection_id)
            self._connections[connection_id] = channel
            self._on_disconnect.setdefault(connection_id, {})
        return channel

    async def disconnect(self, connection_id: str) -> int:
        """Simulate connection loss: run every removal the client registered."""
        paths = list(self._on_disconnect.pop(connection_id, {}))
        self._connections.pop(connection_id, None)
        for parts in paths:
            await self._apply(parts, None)
        if paths:
            LOGGER.debug(
                "Disconnect of %s removed %d ephemeral path(s)", connection_id, len(paths)
            )
        return len(paths)

    def drop(self, connection_id: str) -> None:
        """Lose a connection without the server noticing (no removals fire)."""
        self._on_disconnect.pop(connection_id, None)
        self._connections.pop(connection_id, None)

    def pending_removals(self, connection_id: str) -> List[str]:
        return ["/".join(parts) for parts in self._on_disconnect.get(connection_id, {})]

    # Tree access -----------------------------------------------------------
    async def _round_trip(self) -> None:
        await asyncio.sleep(self.latency)

    def _get(self, parts: Tuple[str, ...]) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _set(self, parts: Tuple[str, ...], value: Any) -> None:
        if not parts:
            self._root = dict(value) if isinstance(value, dict) else {}
            return
        if value is None:
            self._delete(parts)
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)

    def _delete(self, parts: Tuple[str, ...]) -> None:
        trail: List[Tuple[Dict[str, Any], str]] = []
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return
            trail.append((node, part))
            node = node[part]
        parent, key = trail.pop()
        parent.pop(key, None)
        # Prune empty branches the way a realtime tree does.
        while trail and not parent:
            parent, key = trail.pop()
            parent.pop(key, None)

    async def _apply(self, parts: Tuple[str, ...], value: Any) -> None:
        self._set(parts, value)
        await self._changed(parts)

    async def _merge(self, parts: Tuple[str, ...], partial: Mapping[str, Any]) -> None:
        current = self._get(parts)
        merged = dict(current) if isinstance(current, dict) else {}
        for key, value in partial.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = copy.deepcopy(value)
        self._set(parts, merged or None)
        await self._changed(parts)

    async def _changed(self, parts: Tuple[str, ...]) -> None:
        for sub_parts, callback in list(self._subscribers):
            length = min(len(sub_parts), len(parts))
            if sub_parts[:length] != parts[:length]:
                continue
            payload = copy.deepcopy(self._get(sub_parts))
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                LOGGER.warning("Ephemeral subscriber failed for %s: %s", "/".join(sub_parts), exc)

    def _subscribe(self, parts: Tuple[str, ...], callback: ValueCallback) -> Unsubscribe:
        entry = (parts, callback)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe


class MemoryEphemeralChannel:
    """One client's connection to a ``MemoryEphemeralBackend``."""

    def __init__(self, backend: MemoryEphemeralBackend, connection_id: str) -> None:
        self.backend = backend
        self.connection_id = connection_id

    async def write(self, path: str, value: Any) -> None:
        await self.backend._round_trip()
        await self.backend._apply(split_path(path), value)

    async def merge(self, path: str, partial: Mapping[str, Any]) -> None:
        await self.backend._round_trip()
        await self.backend._merge(split_path(path), partial)

    async def read(self, path: str) -> Any:
        await self.backend._round_trip()
        return copy.deepcopy(self.backend._get(split_path(path)))

    async def remove(self, path: str) -> None:
        await self.backend._round_trip()
        await self.backend._apply(split_path(path), None)

    def subscribe(self, path: str, callback: ValueCallback) -> Unsubscribe:
        return self.backend._subscribe(split_path(path), callback)

    async def register_remove_on_disconnect(self, path: str) -> None:
        await self.backend._round_trip()
        registrations = self.backend._on_disconnect.setdefault(self.connection_id, {})
        registrations[split_path(path)] = None

    async def cancel_remove_on_disconnect(self, path: str) -> None:
        await self.backend._round_trip()
        registrations = self.backend._on_disconnect.get(self.connection_id)
        if registrations is not None:
            registrations.pop(split_path(path), None)


__all__ = [
    "EphemeralChannel",
    "MemoryEphemeralBackend",
    "MemoryEphemeralChannel",
    "split_path",
]
