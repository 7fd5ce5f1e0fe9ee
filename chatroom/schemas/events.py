"""
chatroom.schemas.events
~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 事件协议。

入站与出站消息都使用同一个信封结构:

.. code-block:: json

    {"event": "joinRoom", "data": {...}, "request_id": "c-42"}

``request_id`` 可选；服务端对某个请求的一次性回复（``roomJoined``、
``searchResult``、各类错误等）会原样带回，客户端据此关联回复，
无需为每次请求额外注册监听。

字段长度 / 空值 / 敏感词等业务校验由 ``MembershipCoordinator`` 负责，
这里只约束类型和必填项。
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class EventEnvelope(BaseModel):
    """入站 / 出站事件信封。"""

    event: str = Field(..., min_length=1, description="事件名")
    data: Any = Field(default=None, description="事件负载")
    request_id: str | None = Field(default=None, description="请求关联 ID（可选）")


# ── 入站事件负载 ──────────────────────────────────────────────────────

class ConnectPayload(BaseModel):
    """``connect``：登记在线会话。"""

    user_id: str = Field(..., description="客户端持久化的用户标识")


class DisconnectPayload(BaseModel):
    """``disconnect``：客户端主动下线（如关闭页面前）。"""

    user_id: str | None = Field(default=None, description="用户标识（可选）")


class CreateRoomPayload(BaseModel):
    """``createRoom``：创建房间并作为第一位成员加入。"""

    display_name: str = Field(..., description="昵称")
    location_label: str = Field(..., description="所在地")
    user_id: str = Field(..., description="用户标识")
    room_name: str = Field(..., description="房间名")
    visibility: str = Field(..., description="public / private")


class JoinRoomPayload(BaseModel):
    """``joinRoom``：加入已有房间。"""

    room_id: str = Field(..., description="房间 ID")
    display_name: str = Field(..., description="昵称")
    location_label: str = Field(..., description="所在地")
    user_id: str = Field(..., description="用户标识")


class LeaveRoomPayload(BaseModel):
    """``leaveRoom``：离开房间。"""

    room_id: str = Field(..., description="房间 ID")
    user_id: str = Field(..., description="用户标识")


class SearchRoomPayload(BaseModel):
    """``searchRoom``：按 ID 查找单个房间。"""

    room_id: str = Field(..., description="房间 ID")


class ChatTextPayload(BaseModel):
    """``message`` / ``typing``：房间内文本。"""

    room_id: str = Field(..., description="房间 ID")
    user_id: str = Field(..., description="发送者用户标识")
    text: str = Field(default="", description="文本内容")
