"""
chatroom.core.errors
~~~~~~~~~~~~~~~~~~~~

房间协调层的业务异常体系。

所有异常都只回报给发起请求的连接，不会影响共享状态，也不会扩散给其他客户端。
``terminal=True`` 的异常（封禁、重复会话）在回报后会关闭该连接。
"""
from __future__ import annotations

from typing import Any


class ChatRoomError(Exception):
    """业务异常基类。

    Attributes:
        event: 回报给客户端时使用的出站事件名。
        message: 人类可读的错误描述。
        terminal: 回报后是否需要关闭连接。
    """

    event: str = "error"
    terminal: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        """序列化为出站事件的 ``data`` 字段。"""
        return {"message": self.message}


class ValidationError(ChatRoomError):
    """字段缺失 / 超长 / 含敏感词，用户可自行修正。"""

    event = "validationError"


class RoomNotFound(ChatRoomError):
    """目标房间不存在（或已被删除）。"""

    event = "roomNotFound"

    def __init__(self, room_id: str) -> None:
        super().__init__(f"房间不存在: {room_id}")
        self.room_id = room_id

    def to_payload(self) -> dict[str, Any]:
        return {"message": self.message, "room_id": self.room_id}


class RoomFull(ChatRoomError):
    """目标房间已满员。"""

    event = "roomFull"

    def __init__(self, room_id: str, capacity: int) -> None:
        super().__init__(f"房间已满（{capacity} 人）: {room_id}")
        self.room_id = room_id
        self.capacity = capacity

    def to_payload(self) -> dict[str, Any]:
        return {"message": self.message, "room_id": self.room_id, "capacity": self.capacity}


class Banned(ChatRoomError):
    """用户处于封禁期，本次会话终止。"""

    event = "banned"
    terminal = True

    def __init__(self, user_id: str, expires_at: float) -> None:
        super().__init__("由于发送违规内容，你已被暂时封禁")
        self.user_id = user_id
        self.expires_at = expires_at

    def to_payload(self) -> dict[str, Any]:
        # 对外统一使用毫秒时间戳
        return {
            "message": self.message,
            "user_id": self.user_id,
            "expires_at": int(self.expires_at * 1000),
        }


class DuplicateSession(ChatRoomError):
    """同一 user_id 已有一个在线连接，新连接被拒绝。"""

    event = "duplicateSession"
    terminal = True

    def __init__(self, user_id: str) -> None:
        super().__init__("该身份已在另一个窗口中在线")
        self.user_id = user_id

    def to_payload(self) -> dict[str, Any]:
        return {"message": self.message, "user_id": self.user_id}


class RateLimited(ChatRoomError):
    """消息发送过快。"""

    event = "rateLimited"
