from __future__ import annotations

import asyncio

from collabcanvas.collab import CursorThrottle, PresenceTracker
from collabcanvas.collab.presence import (
    CURSOR_COLORS,
    cursor_color_for,
    display_name_for,
    session_path,
)


def test_join_update_leave(backend, clock) -> None:
    async def scenario() -> None:
        channel = backend.connect("alice-conn")
        tracker = PresenceTracker(channel, clock=clock)
        session = await tracker.join("c1", "alice", "Alice")
        assert session.display_name == "Alice"
        assert session.cursor_color == cursor_color_for("alice")
        raw = await channel.read(session_path("c1", "alice"))
        assert "actorId" not in raw
        assert raw["lastSeen"] == clock.now
        assert backend.pending_removals("alice-conn") == ["sessions/c1/alice"]

        clock.advance(1)
        await tracker.update_position("c1", "alice", 12, 34)
        sessions = await tracker.sessions("c1")
        assert (sessions["alice"].cursor_x, sessions["alice"].cursor_y) == (12.0, 34.0)
        assert sessions["alice"].display_name == "Alice"
        assert sessions["alice"].last_seen == clock.now
        assert backend.pending_removals("alice-conn") == ["sessions/c1/alice"]

        await tracker.leave("c1", "alice")
        assert await tracker.sessions("c1") == {}
        assert backend.pending_removals("alice-conn") == []

    asyncio.run(scenario())


def test_disconnect_removes_presence_but_drop_leaves_it(backend, clock) -> None:
    async def scenario() -> None:
        alice = PresenceTracker(backend.connect("a"), clock=clock)
        bob = PresenceTracker(backend.connect("b"), clock=clock)
        observer = PresenceTracker(backend.connect("o"), clock=clock)
        await alice.join("c1", "alice", "Alice")
        await bob.join("c1", "bob", "Bob")

        await backend.disconnect("a")
        assert set(await observer.sessions("c1")) == {"bob"}

        backend.drop("b")
        assert set(await observer.sessions("c1")) == {"bob"}

        clock.advance(121)
        assert await observer.reap_stale("c1", 120) == 1
        assert await observer.sessions("c1") == {}

    asyncio.run(scenario())


def test_reap_stale_keeps_fresh_and_malformed_entries(backend, clock) -> None:
    async def scenario() -> None:
        channel = backend.connect("x")
        tracker = PresenceTracker(channel, clock=clock)
        await tracker.join("c1", "old", "Old")
        clock.advance(100)
        await tracker.join("c1", "fresh", "Fresh")
        await channel.write(session_path("c1", "odd"), {"displayName": "Odd"})
        clock.advance(30)
        assert await tracker.reap_stale("c1", 120) == 1
        assert set(await tracker.sessions("c1")) == {"fresh", "odd"}
        assert await tracker.reap_stale("empty-canvas") == 0

    asyncio.run(scenario())


def test_subscribe_excludes_self_and_delivers_immediately(backend, clock) -> None:
    async def scenario() -> None:
        alice = PresenceTracker(backend.connect("a"), clock=clock)
        bob = PresenceTracker(backend.connect("b"), clock=clock)
        await alice.join("c1", "alice", "Alice")
        seen = []
        unsubscribe = await alice.subscribe(
            "c1", lambda sessions: seen.append(sorted(sessions)), exclude="alice"
        )
        assert seen == [[]]
        await bob.join("c1", "bob", "Bob")
        assert seen[-1] == ["bob"]
        await bob.update_position("c1", "bob", 1, 1)
        assert seen[-1] == ["bob"]
        unsubscribe()
        count = len(seen)
        await bob.leave("c1", "bob")
        assert len(seen) == count

    asyncio.run(scenario())


def test_colours_and_names() -> None:
    assert cursor_color_for("alice") == cursor_color_for("alice")
    assert cursor_color_for("alice") in CURSOR_COLORS
    assert cursor_color_for("") == CURSOR_COLORS[0]

    assert display_name_for("  Alice  ") == "Alice"
    assert display_name_for("", "bob@example.com") == "bob"
    assert display_name_for(None, None) == "Anonymous"
    assert display_name_for("x" * 40) == "x" * 20


def test_cursor_throttle(clock) -> None:
    throttle = CursorThrottle(interval=0.1, min_distance=2, clock=clock)
    assert throttle.should_send(0, 0) is True
    assert throttle.should_send(50, 50) is False
    clock.advance(0.2)
    assert throttle.should_send(1, 1) is False
    assert throttle.should_send(10, 0) is True
    throttle.reset()
    assert throttle.should_send(10, 0) is True
