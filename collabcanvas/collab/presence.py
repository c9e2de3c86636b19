from __future__ import annotations

"""
Ephemeral presence and cursor sessions.

Sessions live at ``sessions/<canvas_id>/<actor_id>`` on an ephemeral channel.
Joining registers a removal that fires when the connection drops; a periodic
stale sweep covers clients that vanish without the channel noticing.
"""

import inspect
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from .ephemeral import EphemeralChannel

LOGGER = logging.getLogger(__name__)

SESSIONS_ROOT = "sessions"
DEFAULT_STALE_AGE = 120.0
MAX_DISPLAY_NAME_LENGTH = 20

CURSOR_COLORS = (
    "#FF5733",
    "#33C1FF",
    "#8B5CF6",
    "#10B981",
    "#F59E0B",
    "#EC4899",
    "#6366F1",
    "#14B8A6",
    "#F97316",
    "#A855F7",
)

CURSOR_UPDATE_INTERVAL = 1.0 / 30.0
CURSOR_MIN_DISTANCE = 2.0


def session_path(canvas_id: str, actor_id: Optional[str] = None) -> str:
    if actor_id is None:
        return f"{SESSIONS_ROOT}/{canvas_id}"
    return f"{SESSIONS_ROOT}/{canvas_id}/{actor_id}"


def cursor_color_for(actor_id: str) -> str:
    """Stable palette pick so an actor keeps the same colour across sessions."""
    total = sum(ord(char) for char in str(actor_id))
    return CURSOR_COLORS[total % len(CURSOR_COLORS)]


def display_name_for(name: Optional[str] = None, email: Optional[str] = None) -> str:
    display = (name or "").strip()
    if not display and email:
        display = email.split("@", 1)[0].strip()
    if not display:
        display = "Anonymous"
    return display[:MAX_DISPLAY_NAME_LENGTH]


@dataclass(slots=True)
class PresenceSession:
    actor_id: str
    display_name: str
    cursor_color: str
    cursor_x: float = 0.0
    cursor_y: float = 0.0
    last_seen: Optional[float] = None

    @classmethod
    def from_value(cls, actor_id: str, value: Mapping[str, Any]) -> "PresenceSession":
        return cls(
            actor_id=actor_id,
            display_name=str(value.get("displayName") or "Anonymous"),
            cursor_color=str(value.get("cursorColor") or CURSOR_COLORS[0]),
            cursor_x=float(value.get("cursorX") or 0.0),
            cursor_y=float(value.get("cursorY") or 0.0),
            last_seen=value.get("lastSeen"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "actorId": self.actor_id,
            "displayName": self.display_name,
            "cursorColor": self.cursor_color,
            "cursorX": self.cursor_x,
            "cursorY": self.cursor_y,
            "lastSeen": self.last_seen,
        }


SessionsCallback = Callable[[Dict[str, PresenceSession]], Union[None, Awaitable[None]]]


def parse_sessions(
    value: Any, *, exclude: Optional[str] = None
) -> Dict[str, PresenceSession]:
    sessions: Dict[str, PresenceSession] = {}
    if not isinstance(value, Mapping):
        return sessions
    for actor_id, entry in value.items():
        if actor_id == exclude or not isinstance(entry, Mapping):
            continue
        sessions[actor_id] = PresenceSession.from_value(actor_id, entry)
    return sessions


class PresenceTracker:
    def __init__(
        self,
        channel: EphemeralChannel,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.channel = channel
        self._clock = clock or time.time

    async def join(
        self, canvas_id: str, actor_id: str, display_name: str, color: Optional[str] = None
    ) -> PresenceSession:
        session = PresenceSession(
            actor_id=actor_id,
            display_name=display_name_for(display_name),
            cursor_color=color or cursor_color_for(actor_id),
            last_seen=self._clock(),
        )
        path = session_path(canvas_id, actor_id)
        payload = session.as_dict()
        payload.pop("actorId")
        await self.channel.write(path, payload)
        await self.channel.register_remove_on_disconnect(path)
        LOGGER.info("Presence joined: %s on %s", actor_id, canvas_id)
        return session

    async def update_position(self, canvas_id: str, actor_id: str, x: float, y: float) -> None:
        await self.channel.merge(
            session_path(canvas_id, actor_id),
            {"cursorX": float(x), "cursorY": float(y), "lastSeen": self._clock()},
        )

    async def leave(self, canvas_id: str, actor_id: str) -> None:
        path = session_path(canvas_id, actor_id)
        await self.channel.cancel_remove_on_disconnect(path)
        await self.channel.remove(path)
        LOGGER.info("Presence left: %s on %s", actor_id, canvas_id)

    async def sessions(
        self, canvas_id: str, *, exclude: Optional[str] = None
    ) -> Dict[str, PresenceSession]:
        value = await self.channel.read(session_path(canvas_id))
        return parse_sessions(value, exclude=exclude)

    async def subscribe(
        self,
        canvas_id: str,
        on_change: SessionsCallback,
        *,
        exclude: Optional[str] = None,
    ) -> Callable[[], None]:
        """Deliver every live session (minus ``exclude``) now and on each change."""

        async def _forward(value: Any) -> None:
            result = on_change(parse_sessions(value, exclude=exclude))
            if inspect.isawaitable(result):
                await result

        unsubscribe = self.channel.subscribe(session_path(canvas_id), _forward)
        await _forward(await self.channel.read(session_path(canvas_id)))
        return unsubscribe

    async def reap_stale(self, canvas_id: str, max_age: float = DEFAULT_STALE_AGE) -> int:
        try:
            value = await self.channel.read(session_path(canvas_id))
        except Exception as exc:
            LOGGER.warning("Presence sweep on %s could not read sessions: %s", canvas_id, exc)
            return 0
        if not isinstance(value, Mapping):
            return 0
        now = self._clock()
        removed = 0
        for actor_id, entry in value.items():
            if not isinstance(entry, Mapping):
                continue
            last_seen = entry.get("lastSeen")
            if not isinstance(last_seen, (int, float)) or now - last_seen <= max_age:
                continue
            try:
                await self.channel.remove(session_path(canvas_id, actor_id))
            except Exception as exc:
                LOGGER.warning("Failed to reap presence %s on %s: %s", actor_id, canvas_id, exc)
                continue
            removed += 1
            LOGGER.info(
                "Reaped stale presence %s on %s (age %.0fs)", actor_id, canvas_id, now - last_seen
            )
        return removed


class CursorThrottle:
    """
    Caller-side cursor throttle: at most one update per ``interval`` seconds
    and only after the pointer moved ``min_distance`` pixels.
    """

    def __init__(
        self,
        *,
        interval: float = CURSOR_UPDATE_INTERVAL,
        min_distance: float = CURSOR_MIN_DISTANCE,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.interval = interval
        self.min_distance = min_distance
        self._clock = clock or time.monotonic
        self._last_time: Optional[float] = None
        self._last_position = (0.0, 0.0)

    def should_send(self, x: float, y: float) -> bool:
        now = self._clock()
        if self._last_time is not None and now - self._last_time < self.interval:
            return False
        last_x, last_y = self._last_position
        if self._last_time is not None and math.hypot(x - last_x, y - last_y) < self.min_distance:
            return False
        self._last_time = now
        self._last_position = (float(x), float(y))
        return True

    def reset(self) -> None:
        self._last_time = None
        self._last_position = (0.0, 0.0)


__all__ = [
    "CURSOR_COLORS",
    "CursorThrottle",
    "DEFAULT_STALE_AGE",
    "PresenceSession",
    "PresenceTracker",
    "cursor_color_for",
    "display_name_for",
    "parse_sessions",
    "session_path",
]
