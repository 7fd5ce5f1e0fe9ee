"""
tests.test_broadcaster
~~~~~~~~~~~~~~~~~~~~~~

EventBroadcaster 单元测试：受众划分、断线清理、延迟关闭。
"""
from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import pytest

from chatroom.core.errors import RoomFull
from chatroom.schemas.rooms import Member
from chatroom.services.broadcaster import EventBroadcaster, encode_event
from chatroom.services.room_store import RoomStore
from tests.conftest import FakeConnection, StalledConnection


def make_member(name: str) -> Member:
    return Member(user_id=f"u-{name}", display_name=name, location_label="X", connection_id=f"c-{name}")


class TestEncodeEvent:
    """测试事件信封编码。"""

    def test_request_id_only_when_given(self) -> None:
        assert json.loads(encode_event("x", {"a": 1})) == {"event": "x", "data": {"a": 1}}
        assert json.loads(encode_event("x", None, "r1"))["request_id"] == "r1"

    def test_models_are_dumped(self) -> None:
        room = RoomStore().create("Lobby", "public", make_member("a"))

        decoded = json.loads(encode_event("roomUpdated", room.info()))

        assert decoded["data"]["name"] == "Lobby"
        assert "connection_id" not in decoded["data"]["members"][0]


class TestAudiences:
    """测试不同受众的分发范围。"""

    @pytest.mark.asyncio
    async def test_broadcast_room_only_reaches_channel(self) -> None:
        b = EventBroadcaster()
        inside, outside = FakeConnection(), FakeConnection()
        b.register("in", inside)
        b.register("out", outside)
        b.join_channel("_r", "in")

        await b.broadcast_room("_r", "message", {"text": "hi"})

        assert inside.names() == ["message"]
        assert outside.sent == []

    @pytest.mark.asyncio
    async def test_broadcast_all_with_exclude(self) -> None:
        b = EventBroadcaster()
        first, second = FakeConnection(), FakeConnection()
        b.register("1", first)
        b.register("2", second)

        await b.broadcast_all("ping", exclude="1")

        assert first.sent == []
        assert second.names() == ["ping"]

    @pytest.mark.asyncio
    async def test_failed_send_drops_connection(self) -> None:
        """发送失败的连接被移出注册表和所有频道，其余连接不受影响。"""
        b = EventBroadcaster()
        dead, alive = FakeConnection(fail_on_send=True), FakeConnection()
        b.register("dead", dead)
        b.register("alive", alive)
        b.join_channel("_r", "dead")

        await b.broadcast_all("ping")

        assert not b.is_connected("dead")
        assert not b.in_channel("_r", "dead")
        assert alive.names() == ["ping"]

    @pytest.mark.asyncio
    async def test_send_error_uses_error_event(self) -> None:
        b = EventBroadcaster()
        conn = FakeConnection()
        b.register("c", conn)

        await b.send_error("c", RoomFull("_r", 5), request_id="j1")

        sent = conn.events("roomFull")[0]
        assert sent["data"]["room_id"] == "_r"
        assert sent["request_id"] == "j1"

    @pytest.mark.asyncio
    async def test_existing_rooms_are_shuffled(self) -> None:
        """每次请求都调用 random.shuffle 打乱公开房间。"""
        store = RoomStore()
        rooms = [store.create(f"r{i}", "public", make_member(f"m{i}")) for i in range(3)]
        b = EventBroadcaster()
        conn = FakeConnection()
        b.register("c", conn)

        with patch("chatroom.services.broadcaster.random.shuffle", side_effect=lambda seq: seq.reverse()) as shuffle:
            await b.existing_rooms("c", rooms)

        shuffle.assert_called_once()
        assert [r["name"] for r in conn.events("existingRooms")[0]["data"]] == ["r2", "r1", "r0"]
        # 原列表不被修改
        assert [r.name for r in rooms] == ["r0", "r1", "r2"]

    @pytest.mark.asyncio
    async def test_close_later(self) -> None:
        b = EventBroadcaster()
        conn = FakeConnection()
        b.register("c", conn)

        b.close_later("c", 0.01)
        assert conn.closed_with is None
        await asyncio.sleep(0.05)

        assert conn.closed_with == 1008

    def test_unregister_clears_empty_channels(self) -> None:
        b = EventBroadcaster()
        b.register("c", FakeConnection())
        b.join_channel("_r", "c")

        b.unregister("c")

        assert b.channels == {}
        assert b.online_count == 0


class TestStalledConnections:
    """测试发送卡住的连接：不阻塞广播，超时或积压后被移除。"""

    @pytest.mark.asyncio
    async def test_broadcast_does_not_wait_for_stalled_peer(self) -> None:
        b = EventBroadcaster(send_timeout=0.05)
        stalled, alive = StalledConnection(), FakeConnection()
        b.register("stalled", stalled)
        b.register("alive", alive)

        await asyncio.wait_for(b.broadcast_all("ping"), timeout=1)

        assert alive.names() == ["ping"]
        assert b.is_connected("stalled")

        await asyncio.sleep(0.15)
        assert not b.is_connected("stalled")
        b.shutdown()

    @pytest.mark.asyncio
    async def test_backlog_overflow_drops_and_closes(self) -> None:
        b = EventBroadcaster(send_timeout=60, queue_size=2)
        stalled = StalledConnection()
        b.register("stalled", stalled)
        b.join_channel("_r", "stalled")

        # 第一条被写协程取走后卡住，再入队两条占满队列，第四条溢出
        for _ in range(4):
            await b.send_to("stalled", "ping")
        await asyncio.sleep(0.01)

        assert not b.is_connected("stalled")
        assert not b.in_channel("_r", "stalled")
        assert stalled.closed_with == 1008
        b.shutdown()

    @pytest.mark.asyncio
    async def test_events_keep_order_per_connection(self) -> None:
        b = EventBroadcaster()
        conn = FakeConnection()
        b.register("c", conn)

        for i in range(5):
            await b.send_to("c", f"e{i}")

        assert conn.names() == ["e0", "e1", "e2", "e3", "e4"]
        b.shutdown()
