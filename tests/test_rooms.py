import asyncio
import random

from identity import Identity
from realtime.rooms import RoomRouter
from realtime.sessions import SessionStore


def test_join_and_leave_are_idempotent() -> None:
    async def scenario():
        rooms = RoomRouter()
        assert await rooms.join("c1", "r1") is True
        assert await rooms.join("c1", "r1") is False
        assert await rooms.members_of("r1") == frozenset({"c1"})
        assert await rooms.leave("c2", "r1") is False
        assert await rooms.leave("c1", "r1") is True
        assert await rooms.leave("c1", "r1") is False
        assert await rooms.members_of("r1") == frozenset()
        assert rooms.room_count() == 0

    asyncio.run(scenario())


def test_members_match_replayed_join_leave_sequence() -> None:
    rng = random.Random(7)
    ops = [(rng.choice(["join", "leave"]), f"c{rng.randint(1, 4)}", f"r{rng.randint(1, 3)}") for _ in range(200)]

    async def scenario():
        rooms = RoomRouter()
        expected = {}
        for op, connection_id, request_id in ops:
            members = expected.setdefault(request_id, set())
            if op == "join":
                await rooms.join(connection_id, request_id)
                members.add(connection_id)
            else:
                await rooms.leave(connection_id, request_id)
                members.discard(connection_id)
        for request_id, members in expected.items():
            assert await rooms.members_of(request_id) == frozenset(members)
            assert rooms.member_count(request_id) == len(members)

    asyncio.run(scenario())


def test_drop_connection_leaves_every_room() -> None:
    async def scenario():
        rooms = RoomRouter()
        for request_id in ("r1", "r2", "r3"):
            await rooms.join("c1", request_id)
        await rooms.join("c2", "r2")
        dropped = await rooms.drop_connection("c1")
        assert sorted(dropped) == ["r1", "r2", "r3"]
        assert await rooms.rooms_of("c1") == frozenset()
        assert await rooms.members_of("r2") == frozenset({"c2"})
        assert rooms.room_count() == 1
        assert await rooms.drop_connection("c1") == []

    asyncio.run(scenario())


def test_members_snapshot_is_not_live() -> None:
    async def scenario():
        rooms = RoomRouter()
        await rooms.join("c1", "r1")
        snapshot = await rooms.members_of("r1")
        await rooms.join("c2", "r1")
        assert snapshot == frozenset({"c1"})

    asyncio.run(scenario())


def test_unknown_connection_cannot_join_when_sessions_are_tracked() -> None:
    async def scenario():
        sessions = SessionStore(queue_size=4)
        rooms = RoomRouter(sessions)
        connection = await sessions.register(Identity("u1", "SUPPORT"))
        assert await rooms.join("ghost", "r1") is False
        assert await rooms.join(connection.connection_id, "r1") is True
        await sessions.unregister(connection.connection_id)
        assert connection.closed
        assert connection.offer("frame") is False

    asyncio.run(scenario())


def test_session_store_registry() -> None:
    async def scenario():
        sessions = SessionStore(queue_size=4)
        a = await sessions.register(Identity("u1", "GUEST"))
        b = await sessions.register(Identity("u2", "MENTOR"), connection_id="fixed")
        assert b.connection_id == "fixed"
        assert len(sessions) == 2
        assert "fixed" in sessions
        assert sessions.get(a.connection_id) is a
        assert [c.connection_id for c in await sessions.get_many(["fixed", "nope"])] == ["fixed"]
        snapshot = await sessions.snapshot()
        await sessions.unregister(a.connection_id)
        assert len(snapshot) == 2
        assert len(sessions) == 1
        assert await sessions.unregister(a.connection_id) is None

    asyncio.run(scenario())
