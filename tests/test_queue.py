"""
ConcurrentTaskQueue 测试 — 覆盖：
  1. 有界并发（并发上限 + 总耗时）
  2. 优先级顺序与同优先级稳定性
  3. 超时：调用方收到 TaskTimeoutError，但底层任务继续运行
  4. pause / resume / drain / clear / add_all

所有测试都使用真实的 asyncio 事件循环与 asyncio.sleep，不依赖外部服务。
"""

from __future__ import annotations

import asyncio
import time

import pytest

from dag.errors import TaskCancelledError, TaskTimeoutError
from dag.queue import ConcurrentTaskQueue


class _Tracker:
    """Tracks how many tracker tasks run at the same time. / 记录同时运行的任务数。"""

    def __init__(self):
        self.running = 0
        self.max_running = 0
        self.started: list[str] = []

    def task(self, name: str, delay: float = 0.05, result=None):
        async def run():
            self.started.append(name)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            try:
                await asyncio.sleep(delay)
                return result if result is not None else name
            finally:
                self.running -= 1
        return run


class TestBoundedConcurrency:

    @pytest.mark.asyncio
    async def test_two_slots_four_tasks(self):
        """4 个各 50ms 的任务、并发上限 2：最大并发 <= 2，总耗时约 2×50ms 而非 4×50ms."""
        queue = ConcurrentTaskQueue(max_concurrent=2)
        tracker = _Tracker()

        started = time.monotonic()
        results = await asyncio.gather(*[queue.add(tracker.task(f"t{i}")) for i in range(4)])
        elapsed = time.monotonic() - started

        assert results == ["t0", "t1", "t2", "t3"]
        assert tracker.max_running <= 2
        assert tracker.max_running == 2, "应当真正并行使用两个槽位"
        assert 0.09 <= elapsed < 0.18, f"耗时 {elapsed:.3f}s 不符合 2 轮执行"

    def test_invalid_max_concurrent(self):
        with pytest.raises(ValueError):
            ConcurrentTaskQueue(max_concurrent=0)

    @pytest.mark.asyncio
    async def test_exception_propagates_to_caller(self):
        queue = ConcurrentTaskQueue(max_concurrent=1)

        async def broken():
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            await queue.add(broken)
        assert queue.running == 0, "失败的任务也必须释放槽位"


class TestPriority:

    @pytest.mark.asyncio
    async def test_higher_priority_dispatched_first(self):
        queue = ConcurrentTaskQueue(max_concurrent=1)
        tracker = _Tracker()

        queue.pause()
        futures = [
            queue.add(tracker.task("low", 0.01), priority=1),
            queue.add(tracker.task("high", 0.01), priority=10),
            queue.add(tracker.task("mid-a", 0.01), priority=5),
            queue.add(tracker.task("mid-b", 0.01), priority=5),
        ]
        queue.resume()
        await asyncio.gather(*futures)

        assert tracker.started == ["high", "mid-a", "mid-b", "low"], "同优先级按到达顺序"


class TestTimeout:

    @pytest.mark.asyncio
    async def test_timeout_rejects_without_cancelling(self):
        queue = ConcurrentTaskQueue(max_concurrent=1)
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.15)
            finished.set()
            return "late"

        with pytest.raises(TaskTimeoutError) as exc_info:
            await queue.add(slow, timeout_ms=30, task_id="slow")
        assert exc_info.value.task_id == "slow"
        assert exc_info.value.timeout_ms == 30
        assert isinstance(exc_info.value, TimeoutError)

        # 调用方已不再等待，但底层工作仍在后台运行
        assert not finished.is_set()
        assert queue.orphaned_count == 1
        assert queue.running == 0, "超时即释放槽位"

        await asyncio.wait_for(finished.wait(), timeout=1)
        await asyncio.sleep(0.01)
        assert queue.orphaned_count == 0

    @pytest.mark.asyncio
    async def test_fast_task_within_timeout(self):
        queue = ConcurrentTaskQueue(max_concurrent=1)
        tracker = _Tracker()
        assert await queue.add(tracker.task("quick", 0.01), timeout_ms=500) == "quick"

    @pytest.mark.asyncio
    async def test_default_timeout(self):
        queue = ConcurrentTaskQueue(max_concurrent=1, default_timeout_ms=20)
        tracker = _Tracker()
        with pytest.raises(TaskTimeoutError):
            await queue.add(tracker.task("slow", 0.1))
        await queue.drain()
        await asyncio.sleep(0.12)
        assert queue.orphaned_count == 0


class TestControl:

    @pytest.mark.asyncio
    async def test_pause_holds_pending_work(self):
        queue = ConcurrentTaskQueue(max_concurrent=1)
        tracker = _Tracker()

        first = queue.add(tracker.task("first", 0.02))
        queue.pause()
        second = queue.add(tracker.task("second", 0.01))
        assert queue.is_paused

        await first
        await asyncio.sleep(0.03)
        assert tracker.started == ["first"], "暂停期间不派发新任务"
        assert queue.status().pending == 1

        queue.resume()
        assert await second == "second"
        assert not queue.is_paused

    @pytest.mark.asyncio
    async def test_drain_waits_for_everything(self):
        queue = ConcurrentTaskQueue(max_concurrent=2)
        tracker = _Tracker()
        futures = [queue.add(tracker.task(f"t{i}", 0.02)) for i in range(5)]

        await asyncio.wait_for(queue.drain(), timeout=1)

        assert all(f.done() for f in futures)
        assert queue.status().running == 0
        assert queue.status().pending == 0

    @pytest.mark.asyncio
    async def test_drain_on_idle_queue_returns_immediately(self):
        await asyncio.wait_for(ConcurrentTaskQueue(max_concurrent=1).drain(), timeout=0.1)

    @pytest.mark.asyncio
    async def test_clear_cancels_pending(self):
        queue = ConcurrentTaskQueue(max_concurrent=1)
        tracker = _Tracker()
        queue.pause()
        futures = [queue.add(tracker.task(f"t{i}")) for i in range(3)]

        assert queue.clear() == 3
        assert all(f.cancelled() for f in futures)
        assert tracker.started == []
        await asyncio.wait_for(queue.drain(), timeout=0.1)

    @pytest.mark.asyncio
    async def test_set_max_concurrent_dispatches_waiting_work(self):
        queue = ConcurrentTaskQueue(max_concurrent=1)
        tracker = _Tracker()
        futures = [queue.add(tracker.task(f"t{i}", 0.03)) for i in range(3)]
        queue.set_max_concurrent(3)
        await asyncio.gather(*futures)
        assert tracker.max_running == 3
        assert queue.status().max_concurrent == 3

    @pytest.mark.asyncio
    async def test_add_all_settles_every_task(self):
        queue = ConcurrentTaskQueue(max_concurrent=2)

        async def ok():
            return 42

        async def fail():
            raise RuntimeError("nope")

        results = await queue.add_all([
            {"id": "ok", "fn": ok, "priority": 1},
            {"id": "fail", "fn": fail},
        ])

        by_id = {r.id: r for r in results}
        assert by_id["ok"].success and by_id["ok"].result == 42
        assert not by_id["fail"].success and by_id["fail"].error == "nope"

    @pytest.mark.asyncio
    async def test_add_all_reuses_generated_ids(self):
        queue = ConcurrentTaskQueue(max_concurrent=1)

        async def ok():
            return "done"

        results = await queue.add_all([{"fn": ok}, {"fn": ok, "id": "named"}])
        assert [r.id for r in results] == ["task-1", "named"], "未命名任务沿用 add 生成的 ID"


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_function_settles_caller(self):
        """函数自身抛出 CancelledError 时，调用方收到 TaskCancelledError 而不是永久等待."""
        queue = ConcurrentTaskQueue(max_concurrent=1)

        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(TaskCancelledError) as exc_info:
            await asyncio.wait_for(queue.add(cancelled, task_id="c1"), timeout=1)
        assert exc_info.value.task_id == "c1"
        assert queue.running == 0, "取消的任务也必须释放槽位"

        tracker = _Tracker()
        assert await asyncio.wait_for(queue.add(tracker.task("next", 0.01)), timeout=1) == "next"

    @pytest.mark.asyncio
    async def test_cancelled_function_with_timeout(self):
        """带超时（shield 路径）的函数被取消时同样结束调用方的 Future."""
        queue = ConcurrentTaskQueue(max_concurrent=1)

        async def cancelled_later():
            await asyncio.sleep(0.01)
            raise asyncio.CancelledError()

        with pytest.raises(TaskCancelledError):
            await asyncio.wait_for(queue.add(cancelled_later, timeout_ms=500), timeout=1)
        await asyncio.wait_for(queue.drain(), timeout=1)
