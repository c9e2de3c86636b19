from __future__ import annotations

import asyncio

import pytest

from collabcanvas.collab import (
    CanvasSession,
    LockManager,
    Maintenance,
    PresenceTracker,
    ShapeNotFoundError,
    ShapeStore,
)
from collabcanvas.collab.session import LAYER_LOCKED_MESSAGE, LEASED_MESSAGE
from collabcanvas.config.settings import SyncSettings


def _session(gateway, backend, clock, actor_id, name=None, **kwargs):
    channel = backend.connect(f"conn-{actor_id}") if backend is not None else None
    return CanvasSession(
        "c1",
        actor_id,
        gateway=gateway,
        channel=channel,
        display_name=name or actor_id.title(),
        clock=clock,
        **kwargs,
    )


def test_two_sessions_share_shapes_and_presence(gateway, backend, clock) -> None:
    async def scenario() -> None:
        alice = await _session(gateway, backend, clock, "alice").open()
        bob = await _session(gateway, backend, clock, "bob").open()
        assert alice.is_open and bob.is_open

        created = await alice.add_shape("circle", (10, 20), fill="#ff0000")
        assert [s.id for s in bob.shapes] == [created.id]
        assert bob.find(created.id).fill == "#ff0000"

        assert set(alice.presence_sessions()) == {"bob"}
        assert set(bob.presence_sessions()) == {"alice"}

        assert await alice.move_cursor(5, 6, force=True) is True
        cursor = bob.presence_sessions()["alice"]
        assert (cursor.cursor_x, cursor.cursor_y) == (5.0, 6.0)

        await alice.close()
        assert alice.is_open is False
        assert bob.presence_sessions() == {}
        await bob.close()

    asyncio.run(scenario())


def test_session_without_channel_skips_presence(gateway, clock) -> None:
    async def scenario() -> None:
        async with _session(gateway, None, clock, "alice") as session:
            assert session.presence is None
            assert await session.move_cursor(1, 1, force=True) is False
            assert session.presence_sessions() == {}

    asyncio.run(scenario())


def test_observers_receive_state(gateway, backend, clock) -> None:
    async def scenario() -> None:
        session = await _session(gateway, backend, clock, "alice").open()
        states = []
        session.subscribe(states.append)
        shape = await session.add_shape("rectangle")
        latest = states[-1]
        assert [s.id for s in latest.shapes] == [shape.id]
        assert latest.as_dict()["actorId"] == "alice"
        await session.close()

    asyncio.run(scenario())


def test_delete_refused_while_leased_by_someone_else(gateway, backend, clock) -> None:
    async def scenario() -> None:
        alice = await _session(gateway, backend, clock, "alice").open()
        bob = await _session(gateway, backend, clock, "bob").open()
        shape = await alice.add_shape("rectangle")
        other = await alice.add_shape("triangle")
        assert await alice.lock(shape.id) is True

        assert await bob.delete_shape(shape.id) is False
        assert bob.find(shape.id) is not None
        assert await bob.delete_shapes([shape.id, other.id]) == 1
        assert [s.id for s in bob.shapes] == [shape.id]

        assert await alice.delete_shape(shape.id) is True
        assert alice.shapes == []
        assert await alice.delete_shape("ghost") is False

    asyncio.run(scenario())


def test_edit_permission(gateway, backend, clock) -> None:
    async def scenario() -> None:
        alice = await _session(gateway, backend, clock, "alice").open()
        bob = await _session(gateway, backend, clock, "bob").open()
        shape = await alice.add_shape("rectangle")
        await alice.lock(shape.id)

        denied = bob.edit_permission(shape.id)
        assert (denied.can_edit, denied.message, denied.holder) == (False, LEASED_MESSAGE, "alice")
        assert alice.edit_permission(shape.id).can_edit is True
        assert bob.state().shapes[0].locked_by == "alice"

        clock.advance(6)
        assert bob.edit_permission(shape.id).can_edit is True
        assert bob.state().shapes[0].is_locked is False

        await alice.unlock(shape.id)
        await alice.toggle_layer_lock(shape.id)
        blocked = bob.edit_permission(shape.id)
        assert (blocked.can_edit, blocked.message) == (False, LAYER_LOCKED_MESSAGE)
        assert bob.edit_permission("ghost").can_edit is False

    asyncio.run(scenario())


def test_paste_cascades_and_duplicate_selects(gateway, clock) -> None:
    async def scenario() -> None:
        session = await _session(gateway, None, clock, "alice").open()
        assert await session.paste() is None

        source = await session.add_shape("rectangle", (100, 100))
        await session.copy(source.id)
        first = await session.paste()
        second = await session.paste()
        assert (first.x, first.y) == (180, 180)
        assert (second.x, second.y) == (260, 260)
        assert session.selected_id == second.id
        assert len({source.id, first.id, second.id}) == 3

        duplicate = await session.duplicate(source.id)
        assert (duplicate.x, duplicate.y) == (180, 180)
        assert session.selected_id == duplicate.id

        with pytest.raises(ShapeNotFoundError):
            await session.duplicate("ghost")

        await session.delete_shape(duplicate.id)
        assert session.selected_id is None

    asyncio.run(scenario())


def test_batch_context_groups_undo(gateway, clock) -> None:
    async def scenario() -> None:
        session = await _session(gateway, None, clock, "alice").open()
        async with session.batch():
            first = await session.add_shape("rectangle")
            await session.update_shape(first.id, {"x": 500})
            await session.add_shape("circle")
        assert len(session.history.undo_stack) == 1
        assert len(session.shapes) == 2

        await session.undo()
        assert session.shapes == []
        await session.redo()
        assert len(session.shapes) == 2
        assert session.find(first.id).x == 500

    asyncio.run(scenario())


def test_layer_toggles_are_not_undoable(gateway, clock) -> None:
    async def scenario() -> None:
        session = await _session(gateway, None, clock, "alice").open()
        shape = await session.add_shape("rectangle")
        hidden = await session.toggle_visibility(shape.id)
        assert hidden.visible is False
        assert (await session.toggle_visibility(shape.id)).visible is True
        assert len(session.history.undo_stack) == 1
        with pytest.raises(ShapeNotFoundError):
            await session.toggle_layer_lock("ghost")

    asyncio.run(scenario())


def test_selection_cleared_when_shape_disappears(gateway, clock) -> None:
    async def scenario() -> None:
        alice = await _session(gateway, None, clock, "alice").open()
        bob = await _session(gateway, None, clock, "bob").open()
        shape = await alice.add_shape("rectangle")
        bob.select(shape.id)
        await alice.delete_shape(shape.id)
        assert bob.selected_id is None

    asyncio.run(scenario())


def test_maintenance_run_once(gateway, backend, clock) -> None:
    async def scenario() -> None:
        store = ShapeStore(gateway, "c1", clock=clock)
        locks = LockManager(store, clock=clock)
        presence = PresenceTracker(backend.connect("sweeper"), clock=clock)
        await store.create_batch([{"id": "a", "type": "rectangle"}], "alice")
        await locks.acquire("a", "alice")
        await PresenceTracker(backend.connect("ghost"), clock=clock).join("c1", "ghost", "Ghost")
        backend.drop("ghost")

        maintenance = Maintenance(locks, presence, "c1", settings=SyncSettings())
        assert await maintenance.run_once() == {"locks": 0, "presence": 0}
        clock.advance(200)
        assert await maintenance.run_once() == {"locks": 1, "presence": 1}

    asyncio.run(scenario())


def test_maintenance_background_sweeps(gateway, backend, clock) -> None:
    async def scenario() -> None:
        store = ShapeStore(gateway, "c1", clock=clock)
        locks = LockManager(store, clock=clock)
        await store.create_batch([{"id": "a", "type": "rectangle"}], "alice")
        await locks.acquire("a", "alice")
        clock.advance(10)

        settings = SyncSettings(lock_reap_interval=0.01, presence_reap_interval=0.01)
        maintenance = Maintenance(
            locks, PresenceTracker(backend.connect("sweeper"), clock=clock), "c1", settings=settings
        )
        maintenance.start()
        assert maintenance.running
        for _ in range(50):
            await asyncio.sleep(0.01)
            if not (await store.get("a")).is_locked:
                break
        assert (await store.get("a")).is_locked is False
        await maintenance.stop()
        assert maintenance.running is False

    asyncio.run(scenario())


def test_history_notifications_are_held_until_delivered(gateway, clock) -> None:
    async def scenario() -> None:
        session = _session(gateway, None, clock, "alice")
        states = []
        session.subscribe(states.append)
        seen = len(states)

        session.history.clear()
        assert len(session._notify_tasks) == 1
        for _ in range(5):
            await asyncio.sleep(0)
        assert session._notify_tasks == set()
        assert len(states) == seen + 1

    asyncio.run(scenario())
