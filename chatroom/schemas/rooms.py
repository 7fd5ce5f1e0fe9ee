"""
chatroom.schemas.rooms
~~~~~~~~~~~~~~~~~~~~~~

房间相关的 Pydantic 模型：成员记录、房间快照、计数与 HTTP 响应数据。
"""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Visibility = Literal["public", "private"]
VISIBILITIES: tuple[str, ...] = ("public", "private")


class Member(BaseModel):
    """房间内的一条成员记录，归属于所在房间。

    ``connection_id`` 只在服务端使用，序列化给客户端时排除。
    """

    user_id: str = Field(..., description="客户端提供的不透明用户标识")
    display_name: str = Field(..., description="昵称（已清洗）")
    location_label: str = Field(..., description="所在地（已清洗）")
    connection_id: str = Field(..., exclude=True, description="传输层连接 ID")


class MemberData(BaseModel):
    """房间快照中的成员条目（含展示序号）。"""

    position: int = Field(..., ge=1, description="展示序号，从 1 开始")
    user_id: str = Field(..., description="用户标识")
    display_name: str = Field(..., description="昵称")
    location_label: str = Field(..., description="所在地")


class RoomData(BaseModel):
    """房间快照，广播和查询结果都使用此结构。"""

    id: str = Field(..., description="房间唯一标识")
    name: str = Field(..., description="房间名")
    visibility: Visibility = Field(..., description="public / private")
    capacity: int = Field(..., description="房间容量")
    member_count: int = Field(..., description="当前成员数")
    members: list[MemberData] = Field(default_factory=list, description="按加入顺序排列的成员")


class RoomCounts(BaseModel):
    """全局房间数与房间内用户总数。"""

    room_count: int = Field(..., ge=0, description="当前房间数")
    user_count: int = Field(..., ge=0, description="所有房间成员数之和")


class StatsData(RoomCounts):
    """``GET /api/stats`` 响应数据。"""

    active_users: int = Field(..., ge=0, description="当前在线的用户标识数")


class BanStatusData(BaseModel):
    """``GET /api/bans/{user_id}`` 响应数据。"""

    user_id: str = Field(..., description="用户标识")
    banned: bool = Field(..., description="当前是否处于封禁期")
    expires_at: int | None = Field(default=None, description="封禁到期时间（毫秒时间戳）")
