"""
chatroom.api.rooms
~~~~~~~~~~~~~~~~~~

房间 REST 接口 —— 只读查询，所有成员变更都走 WebSocket。

端点:
  - ``GET /rooms``              → 公开房间列表（每次随机打乱）
  - ``GET /rooms/{room_id}``    → 单个房间详情
  - ``GET /stats``              → 房间数 / 房间内人数 / 在线身份数
  - ``GET /bans/{user_id}``     → 封禁状态查询（被封禁用户查看原因和到期时间）
"""
from __future__ import annotations

import random

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from chatroom.api.deps import get_coordinator
from chatroom.schemas.api_response import ApiResponse
from chatroom.schemas.rooms import BanStatusData, RoomData, StatsData
from chatroom.services.coordinator import MembershipCoordinator

router: APIRouter = APIRouter()


@router.get("/rooms", summary="获取公开房间列表")
async def list_rooms(
    coordinator: MembershipCoordinator = Depends(get_coordinator),
) -> ApiResponse[list[RoomData]]:
    """返回随机打乱后的公开房间列表。"""
    rooms = coordinator.store.list_public()
    random.shuffle(rooms)
    return ApiResponse.ok(data=[room.info() for room in rooms])


@router.get("/rooms/{room_id}", summary="获取房间详情", response_model=None)
async def room_info(
    room_id: str,
    coordinator: MembershipCoordinator = Depends(get_coordinator),
) -> ApiResponse[RoomData] | JSONResponse:
    """返回指定房间的快照；空房间在延迟删除前仍可查到。

    Args:
        room_id: 房间唯一标识。
    """
    room = coordinator.store.get(room_id)
    if room is None:
        response = ApiResponse.fail(msg=f"房间不存在: {room_id}", code=404)
        return JSONResponse(status_code=404, content=response.model_dump())
    return ApiResponse.ok(data=room.info())


@router.get("/stats", summary="获取全局计数")
async def stats(
    coordinator: MembershipCoordinator = Depends(get_coordinator),
) -> ApiResponse[StatsData]:
    """返回房间数、房间内用户总数和在线身份数。"""
    return ApiResponse.ok(data=coordinator.stats())


@router.get("/bans/{user_id}", summary="查询封禁状态")
async def ban_status(
    user_id: str,
    coordinator: MembershipCoordinator = Depends(get_coordinator),
) -> ApiResponse[BanStatusData]:
    """查询用户当前是否被封禁及到期时间（毫秒时间戳）。

    Args:
        user_id: 用户标识。
    """
    expires_at = coordinator.identity.ban_expiry(user_id)
    return ApiResponse.ok(
        data=BanStatusData(
            user_id=user_id,
            banned=expires_at is not None,
            expires_at=int(expires_at * 1000) if expires_at is not None else None,
        ),
    )
