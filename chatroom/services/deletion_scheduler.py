"""
chatroom.services.deletion_scheduler
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

空房间延迟删除调度器。

房间变空后不会立即删除，而是等待一个宽限期（默认 10 秒），
容忍刷新页面、短暂断线等情况；宽限期内有人加入则取消删除。

每个房间最多只有一个待执行的删除任务，重复 ``arm`` 会替换旧任务而不是叠加。
到期时调用 ``on_fire(room_id)``，由调用方在自己的锁内复查房间是否仍为空再删除。
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from chatroom.core.logging import get_logger

logger = get_logger(__name__)

ExpireCallback = Callable[[str], Awaitable[None]]


class DeletionScheduler:
    """基于 asyncio 任务的延迟删除调度器。

    Attributes:
        delay: 默认宽限期（秒）。
    """

    def __init__(self, on_fire: ExpireCallback, delay: float = 10.0) -> None:
        self.delay = delay
        self._on_fire = on_fire
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._fire_at: dict[str, float] = {}

    def arm(self, room_id: str, delay: float | None = None) -> None:
        """为房间安排延迟删除；已有任务时替换。"""
        self.cancel(room_id)
        wait = self.delay if delay is None else delay
        task = asyncio.create_task(self._fire_later(room_id, wait), name=f"delete-room-{room_id}")
        self._tasks[room_id] = task
        self._fire_at[room_id] = time.time() + wait
        logger.debug("房间延迟删除已安排 | room=%s | %.1fs 后", room_id, wait)

    def cancel(self, room_id: str) -> bool:
        """取消房间的待执行删除。

        Returns:
            是否确实取消了一个任务。
        """
        task = self._tasks.pop(room_id, None)
        self._fire_at.pop(room_id, None)
        if task is None:
            return False
        task.cancel()
        logger.debug("房间延迟删除已取消 | room=%s", room_id)
        return True

    def is_armed(self, room_id: str) -> bool:
        return room_id in self._tasks

    def fire_at(self, room_id: str) -> float | None:
        """返回待执行删除的触发时间（秒级时间戳）。"""
        return self._fire_at.get(room_id)

    def pending(self) -> list[str]:
        """当前待删除的房间 ID 列表。"""
        return list(self._tasks)

    def shutdown(self) -> None:
        """取消所有待执行任务（应用关闭时调用）。"""
        for room_id in list(self._tasks):
            self.cancel(room_id)

    async def _fire_later(self, room_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._tasks.get(room_id) is asyncio.current_task():
            del self._tasks[room_id]
            self._fire_at.pop(room_id, None)
        try:
            await self._on_fire(room_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("房间延迟删除失败 | room=%s | %s", room_id, e, exc_info=True)
