"""
chatroom.services.broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

事件广播器 —— 维护全部在线连接及房间频道，按受众分发出站事件。

受众分三类:
  - 全体连接：房间列表变化、计数变化
  - 单个房间频道：成员加入 / 离开、聊天消息、正在输入
  - 单个连接：一次性回复与错误

每个连接有独立的待发送队列和写协程，广播只负责入队，不等待网络发送；
一个卡住的客户端不会拖慢协调器或其他连接。发送失败、超时或积压过多的连接
视为已断开，直接从注册表移除。
"""
from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Iterable
from typing import Any, Protocol

from pydantic import BaseModel

from chatroom.core.errors import ChatRoomError
from chatroom.core.logging import get_logger
from chatroom.core.settings import settings
from chatroom.schemas.rooms import Member, RoomCounts
from chatroom.services.room_store import Room

logger = get_logger(__name__)


class Connection(Protocol):
    """广播器需要的最小连接接口（FastAPI ``WebSocket`` 满足此协议）。"""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


def encode_event(event: str, data: Any = None, request_id: str | None = None) -> str:
    """把事件编码为 JSON 信封文本。"""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [d.model_dump(mode="json") if isinstance(d, BaseModel) else d for d in data]
    envelope: dict[str, Any] = {"event": event, "data": data}
    if request_id is not None:
        envelope["request_id"] = request_id
    return json.dumps(envelope, ensure_ascii=False)


class EventBroadcaster:
    """连接注册表 + 房间频道 + 事件分发。

    Attributes:
        connections: 连接 ID → 连接对象。
        channels: 房间 ID → 订阅该房间的连接 ID 集合。
        send_timeout: 单条事件发送超时（秒）。
        queue_size: 单连接待发送队列上限。
    """

    def __init__(self, send_timeout: float | None = None, queue_size: int | None = None) -> None:
        self.connections: dict[str, Connection] = {}
        self.channels: dict[str, set[str]] = {}
        self.send_timeout = settings.WS_SEND_TIMEOUT_SECONDS if send_timeout is None else send_timeout
        self.queue_size = settings.WS_SEND_QUEUE_SIZE if queue_size is None else queue_size
        self._outboxes: dict[str, asyncio.Queue[str]] = {}
        self._writers: dict[str, asyncio.Task[None]] = {}
        self._close_tasks: set[asyncio.Task[None]] = set()

    # ── 连接与频道 ────────────────────────────────────────────────────

    def register(self, connection_id: str, connection: Connection) -> None:
        """登记一个已建立的连接。"""
        self._stop_writer(connection_id)
        self.connections[connection_id] = connection

    def unregister(self, connection_id: str) -> None:
        """移除连接、停止其写协程并退订所有频道；尚未发出的事件被丢弃。"""
        self.connections.pop(connection_id, None)
        self._stop_writer(connection_id)
        for room_id in list(self.channels):
            self.leave_channel(room_id, connection_id)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self.connections

    def join_channel(self, room_id: str, connection_id: str) -> None:
        self.channels.setdefault(room_id, set()).add(connection_id)

    def leave_channel(self, room_id: str, connection_id: str) -> None:
        members = self.channels.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.channels[room_id]

    def in_channel(self, room_id: str, connection_id: str) -> bool:
        return connection_id in self.channels.get(room_id, ())

    def drop_channel(self, room_id: str) -> None:
        self.channels.pop(room_id, None)

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self.connections)

    # ── 底层发送 ──────────────────────────────────────────────────────

    async def _deliver(self, connection_ids: Iterable[str], message: str) -> None:
        for cid in list(connection_ids):
            if cid in self.connections:
                self._enqueue(cid, message)
        # 让出一次事件循环，空闲的写协程立即取走刚入队的事件；不等待网络发送完成
        await asyncio.sleep(0)

    def _enqueue(self, connection_id: str, message: str) -> None:
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            outbox = asyncio.Queue(maxsize=self.queue_size)
            self._outboxes[connection_id] = outbox
            self._writers[connection_id] = asyncio.create_task(
                self._write_loop(connection_id, self.connections[connection_id], outbox),
                name=f"ws-writer-{connection_id}",
            )
        try:
            outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("待发送事件积压过多，断开过慢的连接 | conn=%s", connection_id)
            connection = self.connections.get(connection_id)
            self.unregister(connection_id)
            if connection is not None:
                self._spawn_close(connection, 1008)

    async def _write_loop(self, connection_id: str, connection: Connection, outbox: asyncio.Queue[str]) -> None:
        """按入队顺序逐条发送；失败或超时则移除该连接。"""
        while True:
            message = await outbox.get()
            try:
                async with asyncio.timeout(self.send_timeout):
                    await connection.send_text(message)
            except Exception as e:
                logger.warning("发送失败，移除断开的连接 | conn=%s | %r", connection_id, e)
                # 先摘掉自己，unregister 不会取消当前任务
                self._writers.pop(connection_id, None)
                self.unregister(connection_id)
                return

    def _stop_writer(self, connection_id: str) -> None:
        self._outboxes.pop(connection_id, None)
        writer = self._writers.pop(connection_id, None)
        if writer is not None:
            writer.cancel()

    def shutdown(self) -> None:
        """停止所有写协程（应用关闭时调用）。"""
        for connection_id in list(self._writers):
            self._stop_writer(connection_id)

    async def send_to(
        self, connection_id: str, event: str, data: Any = None, request_id: str | None = None,
    ) -> None:
        """只发给单个连接。"""
        await self._deliver([connection_id], encode_event(event, data, request_id))

    async def broadcast_all(self, event: str, data: Any = None, exclude: str | None = None) -> None:
        """发给全部在线连接。"""
        targets = [cid for cid in self.connections if cid != exclude]
        await self._deliver(targets, encode_event(event, data))

    async def broadcast_room(
        self, room_id: str, event: str, data: Any = None, exclude: str | None = None,
    ) -> None:
        """只发给订阅了该房间频道的连接。"""
        targets = [cid for cid in self.channels.get(room_id, ()) if cid != exclude]
        await self._deliver(targets, encode_event(event, data))

    async def send_error(
        self, connection_id: str, error: ChatRoomError, request_id: str | None = None,
    ) -> None:
        """把业务异常回报给发起请求的连接。"""
        await self.send_to(connection_id, error.event, error.to_payload(), request_id)

    def close_later(self, connection_id: str, delay: float, code: int = 1008) -> None:
        """延迟关闭连接，让客户端先处理完刚下发的事件。"""
        self._track(asyncio.create_task(self._close_after(connection_id, delay, code)))

    def _spawn_close(self, connection: Connection, code: int) -> None:
        self._track(asyncio.create_task(self._close_quietly(connection, code)))

    def _track(self, task: asyncio.Task[None]) -> None:
        self._close_tasks.add(task)
        task.add_done_callback(self._close_tasks.discard)

    async def _close_after(self, connection_id: str, delay: float, code: int) -> None:
        await asyncio.sleep(delay)
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        await self._close_quietly(connection, code)

    async def _close_quietly(self, connection: Connection, code: int) -> None:
        try:
            async with asyncio.timeout(self.send_timeout):
                await connection.close(code=code)
        except Exception as e:
            logger.debug("关闭连接失败（可能已断开） | %r", e)

    # ── 房间事件 ──────────────────────────────────────────────────────

    async def room_created(self, room: Room, creator_connection_id: str) -> None:
        """公开房间通知全体；创建者总能收到（私有房间只通知创建者）。"""
        snapshot = room.info()
        if room.is_public:
            await self.broadcast_all("roomCreated", snapshot)
        else:
            await self.send_to(creator_connection_id, "roomCreated", snapshot)

    async def room_updated(self, room: Room) -> None:
        """无条件通知全体（私有房间的成员也靠它刷新成员列表）。"""
        await self.broadcast_all("roomUpdated", room.info())

    async def room_removed(self, room_id: str) -> None:
        await self.broadcast_all("roomRemoved", {"room_id": room_id})

    async def room_joined(self, connection_id: str, room: Room, member: Member, request_id: str | None = None) -> None:
        """加入 / 创建成功的一次性确认，附带完整成员列表。"""
        await self.send_to(
            connection_id,
            "roomJoined",
            {
                "room": room.info().model_dump(mode="json"),
                "user_id": member.user_id,
                "display_name": member.display_name,
                "location_label": member.location_label,
            },
            request_id,
        )

    async def user_joined(self, room_id: str, member: Member, exclude: str | None = None) -> None:
        """通知房间内其他成员（加入者本人已收到 ``roomJoined``）。"""
        await self.broadcast_room(
            room_id,
            "userJoined",
            {"room_id": room_id, **member.model_dump(mode="json")},
            exclude=exclude,
        )

    async def user_left(self, room_id: str, user_id: str) -> None:
        await self.broadcast_room(room_id, "userLeft", {"room_id": room_id, "user_id": user_id})

    async def counts_changed(self, counts: RoomCounts) -> None:
        await self.broadcast_all("countsChanged", counts)

    async def existing_rooms(
        self, connection_id: str, rooms: list[Room], request_id: str | None = None,
    ) -> None:
        """下发公开房间列表，每次请求都重新随机打乱，避免排在前面的房间总被选中。"""
        shuffled = list(rooms)
        random.shuffle(shuffled)
        await self.send_to(
            connection_id, "existingRooms", [room.info() for room in shuffled], request_id,
        )

    async def search_result(
        self, connection_id: str, room: Room | None, request_id: str | None = None,
    ) -> None:
        await self.send_to(
            connection_id, "searchResult", room.info() if room is not None else None, request_id,
        )
