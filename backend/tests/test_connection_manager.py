"""
Tests for the in-memory connection registry.
"""

import uuid

import pytest

from conftest import FakeWebSocket, drain
from experttalk.websockets.connection_manager import ConnectionManager


@pytest.fixture
def registry():
    return ConnectionManager(queue_size=2)


class TestMembership:
    """join / leave / disconnect bookkeeping."""

    @pytest.mark.asyncio
    async def test_connect_accepts_socket(self, registry):
        ws = FakeWebSocket()
        connection = await registry.connect(ws, uuid.uuid4())

        assert ws.accepted
        assert registry.active_connections[connection.id] is connection

    @pytest.mark.asyncio
    async def test_join_and_leave(self, registry):
        session_id = uuid.uuid4()
        user_id = uuid.uuid4()
        connection = await registry.connect(FakeWebSocket(), user_id)

        registry.join(session_id, connection)
        assert registry.is_member(session_id, connection)
        assert registry.get_session_members(session_id) == {user_id}

        registry.leave(session_id, connection)
        assert not registry.is_member(session_id, connection)
        assert session_id not in registry.session_members

    @pytest.mark.asyncio
    async def test_disconnect_leaves_every_session(self, registry):
        first, second = uuid.uuid4(), uuid.uuid4()
        connection = await registry.connect(FakeWebSocket(), uuid.uuid4())
        registry.join(first, connection)
        registry.join(second, connection)

        await registry.disconnect(connection)

        assert registry.session_members == {}
        assert connection.id not in registry.active_connections
        assert connection.closed


class TestBroadcast:
    """Fan-out through per-connection queues."""

    @pytest.mark.asyncio
    async def test_delivers_in_order_to_all_members(self, registry):
        session_id = uuid.uuid4()
        sockets = [FakeWebSocket(), FakeWebSocket()]
        for ws in sockets:
            registry.join(session_id, await registry.connect(ws, uuid.uuid4()))

        for i in range(2):
            assert registry.broadcast_to_session(session_id, {"type": "new_message", "n": i}) == 2
            await drain()

        for ws in sockets:
            assert [f["n"] for f in ws.sent] == [0, 1]

    @pytest.mark.asyncio
    async def test_other_sessions_do_not_receive(self, registry):
        inside, outside = FakeWebSocket(), FakeWebSocket()
        session_id = uuid.uuid4()
        registry.join(session_id, await registry.connect(inside, uuid.uuid4()))
        registry.join(uuid.uuid4(), await registry.connect(outside, uuid.uuid4()))

        registry.broadcast_to_session(session_id, {"type": "new_message"})
        await drain()

        assert len(inside.sent) == 1
        assert outside.sent == []

    @pytest.mark.asyncio
    async def test_slow_member_is_evicted_without_stalling_others(self, registry):
        session_id = uuid.uuid4()
        slow, fast = FakeWebSocket(block=True), FakeWebSocket()
        slow_connection = await registry.connect(slow, uuid.uuid4())
        registry.join(session_id, slow_connection)
        registry.join(session_id, await registry.connect(fast, uuid.uuid4()))

        # One frame is stuck in send_json, two fill the buffer, the fourth overflows
        for i in range(4):
            registry.broadcast_to_session(session_id, {"type": "new_message", "n": i})
            await drain()

        assert [f["n"] for f in fast.sent] == [0, 1, 2, 3]
        assert slow_connection.closed
        assert not registry.is_member(session_id, slow_connection)
        assert slow.close_code == 1013

    @pytest.mark.asyncio
    async def test_failed_send_evicts_connection(self, registry):
        session_id = uuid.uuid4()
        broken = await registry.connect(FakeWebSocket(fail=True), uuid.uuid4())
        registry.join(session_id, broken)

        registry.broadcast_to_session(session_id, {"type": "new_message"})
        await drain()

        assert broken.closed
        assert broken.id not in registry.active_connections
        assert registry.broadcast_to_session(session_id, {"type": "new_message"}) == 0

    @pytest.mark.asyncio
    async def test_close_session_drops_group_but_flushes_queued(self, registry):
        session_id = uuid.uuid4()
        ws = FakeWebSocket()
        connection = await registry.connect(ws, uuid.uuid4())
        registry.join(session_id, connection)

        registry.broadcast_to_session(session_id, {"type": "session_ended"})
        registry.close_session(session_id)
        await drain()

        assert ws.of_type("session_ended")
        assert registry.get_session_members(session_id) == set()
        assert session_id not in connection.sessions

    @pytest.mark.asyncio
    async def test_session_lock_is_stable_until_closed(self, registry):
        session_id = uuid.uuid4()
        lock = registry.session_lock(session_id)

        assert registry.session_lock(session_id) is lock
        registry.close_session(session_id)
        assert registry.session_lock(session_id) is not lock
