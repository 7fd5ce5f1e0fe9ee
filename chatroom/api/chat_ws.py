"""
chatroom.api.chat_ws
~~~~~~~~~~~~~~~~~~~~

WebSocket 实时交互接口 —— 多房间聊天。

客户端连接 ``/ws/chat`` 后以 JSON 信封发送意图事件，详见 ``chatroom.schemas.events``。

入站事件:
  - ``connect`` / ``disconnect``
  - ``createRoom`` / ``joinRoom`` / ``leaveRoom``
  - ``searchRoom`` / ``listRooms``
  - ``message`` / ``typing``

接收与处理分离：接收协程负责解析和限流，处理协程按到达顺序逐条交给
``MembershipCoordinator``。连接断开时自动执行 ``disconnect`` 清理。
"""
from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from chatroom.core.errors import ChatRoomError, RateLimited, ValidationError
from chatroom.core.logging import get_logger, request_id_ctx_var
from chatroom.core.rate_limit import WebSocketRateLimiter
from chatroom.core.settings import settings
from chatroom.schemas.events import (
    ChatTextPayload,
    ConnectPayload,
    CreateRoomPayload,
    DisconnectPayload,
    EventEnvelope,
    JoinRoomPayload,
    LeaveRoomPayload,
    SearchRoomPayload,
)
from chatroom.services.coordinator import MembershipCoordinator

logger = get_logger(__name__)

router: APIRouter = APIRouter()

Handler = Callable[[MembershipCoordinator, str, Any, "str | None"], Awaitable[Any]]

# 事件名 → (负载模型, 处理函数)
_HANDLERS: dict[str, tuple[type[BaseModel] | None, Handler]] = {
    "connect": (ConnectPayload, lambda c, cid, p, rid: c.connect(cid, p.user_id, rid)),
    "disconnect": (DisconnectPayload, lambda c, cid, p, rid: c.disconnect(cid, p.user_id)),
    "createRoom": (CreateRoomPayload, lambda c, cid, p, rid: c.create_room(cid, p, rid)),
    "joinRoom": (JoinRoomPayload, lambda c, cid, p, rid: c.join_room(cid, p, rid)),
    "leaveRoom": (LeaveRoomPayload, lambda c, cid, p, rid: c.leave_room(cid, p)),
    "searchRoom": (SearchRoomPayload, lambda c, cid, p, rid: c.search_room(cid, p.room_id, rid)),
    "listRooms": (None, lambda c, cid, p, rid: c.list_rooms(cid, rid)),
    "message": (ChatTextPayload, lambda c, cid, p, rid: c.send_message(cid, p)),
    "typing": (ChatTextPayload, lambda c, cid, p, rid: c.send_typing(cid, p)),
}

# 需要限流的事件
_RATE_LIMITED_EVENTS: frozenset[str] = frozenset({"message"})


def parse_envelope(raw: str) -> EventEnvelope:
    """解析入站文本为事件信封。

    Raises:
        ValidationError: 非 JSON、结构不符或事件名未知。
    """
    try:
        envelope = EventEnvelope.model_validate(json.loads(raw))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise ValidationError(f"无法解析的消息: {e.__class__.__name__}") from e
    if envelope.event not in _HANDLERS:
        raise ValidationError(f"未知事件: {envelope.event}")
    return envelope


async def dispatch(
    coordinator: MembershipCoordinator, connection_id: str, envelope: EventEnvelope,
) -> None:
    """把一个事件交给协调器；业务异常只回报给当前连接。"""
    model, handler = _HANDLERS[envelope.event]
    try:
        payload = None
        if model is not None:
            try:
                payload = model.model_validate(envelope.data or {})
            except PydanticValidationError as e:
                fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
                raise ValidationError(f"缺少或无效的字段: {fields}") from e
        await handler(coordinator, connection_id, payload, envelope.request_id)
    except ChatRoomError as e:
        logger.info("请求被拒绝 | event=%s | %s: %s", envelope.event, e.__class__.__name__, e.message)
        await coordinator.broadcaster.send_error(connection_id, e, envelope.request_id)
        if e.terminal:
            coordinator.broadcaster.close_later(connection_id, settings.BAN_DISCONNECT_DELAY_SECONDS)


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket 聊天端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    connection_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(connection_id)

    try:
        coordinator: MembershipCoordinator = websocket.app.state.coordinator
        await websocket.accept()
        coordinator.attach(connection_id, websocket)
        logger.info("连接已建立 | 在线连接: %d", coordinator.broadcaster.online_count)

        ws_limiter = WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL)
        # 用于隔离接收与处理的队列，确保限流按消息实际到达时间判断
        queue: asyncio.Queue[EventEnvelope | None] = asyncio.Queue(maxsize=settings.WS_QUEUE_SIZE)

        async def receive_loop() -> None:
            try:
                while True:
                    raw: str = await websocket.receive_text()
                    try:
                        envelope = parse_envelope(raw)
                    except ValidationError as e:
                        await coordinator.broadcaster.send_error(connection_id, e)
                        continue

                    if envelope.event in _RATE_LIMITED_EVENTS and not ws_limiter.is_allowed(connection_id):
                        await coordinator.broadcaster.send_error(
                            connection_id, RateLimited("发送速度太快了，请慢一点"), envelope.request_id,
                        )
                        continue
                    try:
                        queue.put_nowait(envelope)
                    except asyncio.QueueFull:
                        await coordinator.broadcaster.send_error(
                            connection_id, RateLimited("请求处理不过来了，请稍后重试"), envelope.request_id,
                        )
                        logger.warning("WS 队列已满，丢弃事件 | event=%s", envelope.event)
            except WebSocketDisconnect:
                pass  # 正常断开
            except Exception as e:
                logger.error("WebSocket 接收异常: %s", e, exc_info=True)
            finally:
                await queue.put(None)  # 发送结束信号给处理协程

        async def process_loop() -> None:
            while True:
                envelope = await queue.get()
                if envelope is None:
                    break
                try:
                    await dispatch(coordinator, connection_id, envelope)
                except Exception as e:
                    # 单个事件失败不影响该连接后续事件，也不影响其他连接
                    logger.error("WebSocket 处理异常: %s | event=%s", e, envelope.event, exc_info=True)

        try:
            await asyncio.gather(receive_loop(), process_loop())
        finally:
            ws_limiter.remove_client(connection_id)
            await coordinator.disconnect(connection_id, transport_closed=True)
            logger.info("连接已断开 | 在线连接: %d", coordinator.broadcaster.online_count)

    finally:
        request_id_ctx_var.reset(token)
