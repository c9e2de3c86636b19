from __future__ import annotations

import asyncio

from collabcanvas.collab import MemoryEphemeralBackend
from collabcanvas.collab.ephemeral import split_path


def test_split_path_ignores_empty_segments() -> None:
    assert split_path("/sessions//c1/u1/") == ("sessions", "c1", "u1")


def test_write_read_merge_and_prune() -> None:
    async def scenario() -> None:
        backend = MemoryEphemeralBackend()
        channel = backend.connect("conn-a")
        await channel.write("sessions/c1/u1", {"x": 1, "y": 2})
        await channel.merge("sessions/c1/u1", {"x": 5, "y": None})
        assert await channel.read("sessions/c1/u1") == {"x": 5}
        assert await channel.read("sessions/c1") == {"u1": {"x": 5}}

        await channel.remove("sessions/c1/u1")
        assert await channel.read("sessions/c1") is None
        assert await channel.read("sessions") is None

    asyncio.run(scenario())


def test_subscribers_see_their_subtree() -> None:
    async def scenario() -> None:
        backend = MemoryEphemeralBackend()
        channel = backend.connect()
        canvas_events = []
        other_events = []
        channel.subscribe("sessions/c1", canvas_events.append)
        channel.subscribe("sessions/c2", other_events.append)

        await channel.write("sessions/c1/u1", {"cursorX": 1})
        assert canvas_events == [{"u1": {"cursorX": 1}}]
        assert other_events == []

        await channel.write("sessions", {})
        assert canvas_events[-1] is None
        assert other_events == [None]

    asyncio.run(scenario())


def test_disconnect_runs_registered_removals_and_drop_does_not() -> None:
    async def scenario() -> None:
        backend = MemoryEphemeralBackend()
        alice = backend.connect("alice")
        bob = backend.connect("bob")
        await alice.write("sessions/c1/alice", {"n": 1})
        await alice.register_remove_on_disconnect("sessions/c1/alice")
        await bob.write("sessions/c1/bob", {"n": 2})
        await bob.register_remove_on_disconnect("sessions/c1/bob")
        assert backend.pending_removals("alice") == ["sessions/c1/alice"]

        assert await backend.disconnect("alice") == 1
        assert await bob.read("sessions/c1") == {"bob": {"n": 2}}

        backend.drop("bob")
        assert await alice.read("sessions/c1") == {"bob": {"n": 2}}
        assert await backend.disconnect("bob") == 0

    asyncio.run(scenario())


def test_cancel_remove_on_disconnect() -> None:
    async def scenario() -> None:
        backend = MemoryEphemeralBackend()
        channel = backend.connect("conn")
        await channel.write("a/b", 1)
        await channel.register_remove_on_disconnect("a/b")
        await channel.cancel_remove_on_disconnect("a/b")
        assert await backend.disconnect("conn") == 0
        assert await backend.connect("other").read("a/b") == 1

    asyncio.run(scenario())
