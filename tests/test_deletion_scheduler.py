"""
tests.test_deletion_scheduler
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

DeletionScheduler 单元测试：到期触发、取消、重复安排时替换而非叠加。
"""
from __future__ import annotations

import asyncio

import pytest

from chatroom.services.deletion_scheduler import DeletionScheduler


class Recorder:
    def __init__(self) -> None:
        self.fired: list[str] = []

    async def __call__(self, room_id: str) -> None:
        self.fired.append(room_id)


class TestDeletionScheduler:
    """测试延迟删除调度。"""

    @pytest.mark.asyncio
    async def test_fires_after_delay(self) -> None:
        recorder = Recorder()
        scheduler = DeletionScheduler(recorder, delay=0.02)

        scheduler.arm("_r1")
        assert scheduler.is_armed("_r1")
        assert recorder.fired == []

        await asyncio.sleep(0.06)

        assert recorder.fired == ["_r1"]
        assert not scheduler.is_armed("_r1")

    @pytest.mark.asyncio
    async def test_does_not_fire_before_delay(self) -> None:
        recorder = Recorder()
        scheduler = DeletionScheduler(recorder, delay=0.2)

        scheduler.arm("_r1")
        await asyncio.sleep(0.02)

        assert recorder.fired == []
        scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_prevents_fire(self) -> None:
        recorder = Recorder()
        scheduler = DeletionScheduler(recorder, delay=0.02)

        scheduler.arm("_r1")
        assert scheduler.cancel("_r1") is True
        await asyncio.sleep(0.05)

        assert recorder.fired == []
        assert scheduler.cancel("_r1") is False

    @pytest.mark.asyncio
    async def test_rearm_replaces_existing_timer(self) -> None:
        """重复安排只保留最新的任务，最终只触发一次。"""
        recorder = Recorder()
        scheduler = DeletionScheduler(recorder, delay=0.1)

        scheduler.arm("_r1")
        await asyncio.sleep(0.06)
        scheduler.arm("_r1")
        await asyncio.sleep(0.06)

        # 第一个任务本应在此时触发，但已被替换
        assert recorder.fired == []
        assert scheduler.pending() == ["_r1"]

        await asyncio.sleep(0.1)
        assert recorder.fired == ["_r1"]

    @pytest.mark.asyncio
    async def test_explicit_delay_overrides_default(self) -> None:
        recorder = Recorder()
        scheduler = DeletionScheduler(recorder, delay=10.0)

        scheduler.arm("_r1", delay=0.01)
        assert scheduler.fire_at("_r1") is not None
        await asyncio.sleep(0.04)

        assert recorder.fired == ["_r1"]

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(self) -> None:
        """回调异常只记录日志，不影响其他房间的任务。"""
        fired: list[str] = []

        async def flaky(room_id: str) -> None:
            if room_id == "_bad":
                raise RuntimeError("boom")
            fired.append(room_id)

        scheduler = DeletionScheduler(flaky, delay=0.01)
        scheduler.arm("_bad")
        scheduler.arm("_good")
        await asyncio.sleep(0.04)

        assert fired == ["_good"]

    @pytest.mark.asyncio
    async def test_fired_task_is_unregistered_before_callback(self) -> None:
        """回调运行时本房间已无待执行任务，回调内的 cancel / arm 不会影响自身。"""
        seen: list[tuple[bool, bool]] = []
        scheduler: DeletionScheduler

        async def on_fire(room_id: str) -> None:
            seen.append((scheduler.is_armed(room_id), scheduler.cancel(room_id)))
            scheduler.arm(room_id, delay=0.5)

        scheduler = DeletionScheduler(on_fire, delay=0.01)
        scheduler.arm("_r1")
        await asyncio.sleep(0.04)

        assert seen == [(False, False)]
        # 回调内重新安排的任务照常生效
        assert scheduler.is_armed("_r1")
        scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self) -> None:
        recorder = Recorder()
        scheduler = DeletionScheduler(recorder, delay=0.02)
        scheduler.arm("_r1")
        scheduler.arm("_r2")

        scheduler.shutdown()
        await asyncio.sleep(0.05)

        assert recorder.fired == []
        assert scheduler.pending() == []
