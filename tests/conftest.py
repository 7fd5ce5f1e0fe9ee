"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存中的假连接替代真实 WebSocket，
使协调器、广播器等单元测试无需启动服务即可运行。
"""
from __future__ import annotations

import asyncio
import json
import os
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from chatroom.core.text_filters import ProfanityFilter  # noqa: E402
from chatroom.schemas.events import CreateRoomPayload, JoinRoomPayload  # noqa: E402
from chatroom.services.broadcaster import EventBroadcaster  # noqa: E402
from chatroom.services.coordinator import MembershipCoordinator  # noqa: E402

# 测试用的宽限期，足够短以便真实等待
TEST_DELETION_DELAY: float = 0.05


class FakeConnection:
    """模拟 WebSocket 连接，记录收到的所有事件。"""

    def __init__(self, fail_on_send: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed_with: int | None = None
        self.fail_on_send = fail_on_send

    async def send_text(self, data: str) -> None:
        if self.fail_on_send:
            raise RuntimeError("connection lost")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = code

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        """按事件名过滤收到的信封。"""
        if name is None:
            return list(self.sent)
        return [e for e in self.sent if e["event"] == name]

    def names(self) -> list[str]:
        return [e["event"] for e in self.sent]

    def clear(self) -> None:
        self.sent.clear()


class StalledConnection(FakeConnection):
    """发送永远不会完成的连接，模拟 TCP 发送缓冲区已满的客户端。"""

    async def send_text(self, data: str) -> None:
        await asyncio.Event().wait()


@pytest.fixture()
def profanity() -> ProfanityFilter:
    return ProfanityFilter(["badword", "darn"])


@pytest.fixture()
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture()
def coordinator(broadcaster: EventBroadcaster, profanity: ProfanityFilter) -> MembershipCoordinator:
    return MembershipCoordinator(
        broadcaster=broadcaster,
        profanity=profanity,
        deletion_delay=TEST_DELETION_DELAY,
        ban_duration=30 * 60,
    )


def attach(coordinator: MembershipCoordinator, connection_id: str) -> FakeConnection:
    """登记一个假连接并返回它。"""
    conn = FakeConnection()
    coordinator.attach(connection_id, conn)
    return conn


def create_payload(
    display_name: str = "alice",
    location_label: str = "NYC",
    user_id: str = "u-alice",
    room_name: str = "Lobby",
    visibility: str = "public",
) -> CreateRoomPayload:
    return CreateRoomPayload(
        display_name=display_name,
        location_label=location_label,
        user_id=user_id,
        room_name=room_name,
        visibility=visibility,
    )


def join_payload(
    room_id: str,
    display_name: str = "bob",
    location_label: str = "LA",
    user_id: str = "u-bob",
) -> JoinRoomPayload:
    return JoinRoomPayload(
        room_id=room_id,
        display_name=display_name,
        location_label=location_label,
        user_id=user_id,
    )
