"""
ConcurrentTaskQueue - Bounded-concurrency, priority-ordered async execution.
并发任务队列 —— 有界并发、按优先级排序的异步执行原语。

A generic primitive, not specific to the scheduler:
  queue.add(fn, priority, timeout_ms) -> Future of fn()'s result

通用原语，与调度器无关：
  queue.add(fn, priority, timeout_ms) -> fn() 结果的 Future

Ordering: descending priority, ties broken by arrival order.
Timeout:  the caller's future fails with TaskTimeoutError, but the underlying
          coroutine is shielded and keeps running to completion in the
          background (an approximation, not true cancellation).

排序：优先级降序，同优先级按到达顺序（稳定）。
超时：调用方的 Future 以 TaskTimeoutError 失败，但底层协程被 shield 保护，
      在后台继续运行直到结束；这是近似实现，并非真正的取消。

All counters are mutated from the event loop only (cooperative scheduling),
so there is no data race without locks.
所有计数器只在事件循环中修改（协作式调度），因此无需加锁也不存在数据竞争。
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import config
from dag.errors import TaskCancelledError, TaskTimeoutError
from schema import QueueStatus, QueueTaskResult

logger = logging.getLogger(__name__)

TaskFunction = Callable[[], Awaitable[Any]]


@dataclass(order=True)
class _QueuedTask:
    """Heap entry. Only (sort_key, seq) take part in ordering. / 堆元素。"""
    sort_key: int                       # -priority，heapq 是最小堆
    seq: int                            # 到达顺序，保证同优先级稳定
    id: str = field(compare=False)
    fn: TaskFunction = field(compare=False)
    timeout_ms: float | None = field(compare=False)
    future: asyncio.Future = field(compare=False)


class ConcurrentTaskQueue:
    """
    Priority queue that runs at most `max_concurrent` functions at a time.
    最多同时运行 `max_concurrent` 个函数的优先级队列。
    """

    def __init__(
        self,
        max_concurrent: int | None = None,
        default_timeout_ms: float | None = None,
    ):
        max_concurrent = max_concurrent if max_concurrent is not None else config.MAX_CONCURRENT_TASKS
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")

        self._max_concurrent = max_concurrent
        self._default_timeout_ms = default_timeout_ms
        self._pending: list[_QueuedTask] = []
        self._running = 0
        self._seq = itertools.count()
        self._paused = False
        self._active: set[asyncio.Task] = set()     # 运行中的派发任务（保持引用）
        self._orphans: set[asyncio.Task] = set()    # 超时后仍在后台运行的底层任务
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Submission
    # 提交
    # ------------------------------------------------------------------

    def add(
        self,
        fn: TaskFunction,
        priority: int = 0,
        timeout_ms: float | None = None,
        task_id: str | None = None,
    ) -> asyncio.Future:
        """
        Enqueue `fn` and return a future of its result. Must be called from
        inside a running event loop.

        将 `fn` 入队并返回其结果的 Future。必须在运行中的事件循环内调用。
        有空闲槽位时立即派发，否则等待运行中的任务释放槽位。
        """
        return self._enqueue(fn, priority, timeout_ms, task_id).future

    def _enqueue(
        self,
        fn: TaskFunction,
        priority: int,
        timeout_ms: float | None,
        task_id: str | None,
    ) -> _QueuedTask:
        loop = asyncio.get_running_loop()
        seq = next(self._seq)
        item = _QueuedTask(
            sort_key=-priority,
            seq=seq,
            id=task_id or f"task-{seq + 1}",
            fn=fn,
            timeout_ms=timeout_ms if timeout_ms is not None else self._default_timeout_ms,
            future=loop.create_future(),
        )
        heapq.heappush(self._pending, item)
        self._idle.clear()
        logger.debug("[Queue] %s added (priority=%d, pending=%d)", item.id, priority, len(self._pending))
        self._dispatch()
        return item

    async def add_all(self, specs: list[dict[str, Any]]) -> list[QueueTaskResult]:
        """
        Enqueue several functions and wait for all of them to settle.
        Each spec is a dict with `fn` and optional `priority`, `timeout_ms`, `id`.

        批量入队并等待全部结束；失败不会抛出，而是记录在结果中。
        """
        started = time.monotonic()
        items = [
            self._enqueue(
                s["fn"],
                priority=s.get("priority", 0),
                timeout_ms=s.get("timeout_ms"),
                task_id=s.get("id"),
            )
            for s in specs
        ]
        settled = await asyncio.gather(*[i.future for i in items], return_exceptions=True)

        results: list[QueueTaskResult] = []
        for item, outcome in zip(items, settled):
            elapsed = (time.monotonic() - started) * 1000
            tid = item.id
            if isinstance(outcome, BaseException):
                results.append(QueueTaskResult(id=tid, success=False, error=str(outcome) or type(outcome).__name__, duration_ms=elapsed))
            else:
                results.append(QueueTaskResult(id=tid, success=True, result=outcome, duration_ms=elapsed))
        return results

    # ------------------------------------------------------------------
    # Dispatch loop
    # 派发循环
    # ------------------------------------------------------------------

    def _dispatch(self) -> None:
        """Start pending work while capacity allows. / 在容量允许时启动等待中的任务。"""
        while not self._paused and self._running < self._max_concurrent and self._pending:
            item = heapq.heappop(self._pending)
            if item.future.done():
                # 调用方已取消（或 clear() 已处理）
                continue
            self._running += 1
            logger.debug("[Queue] %s started (running=%d)", item.id, self._running)
            task = asyncio.ensure_future(self._run(item))
            self._active.add(task)
            task.add_done_callback(self._active.discard)
        self._update_idle()

    async def _run(self, item: _QueuedTask) -> None:
        started = time.monotonic()
        try:
            result = await self._execute_with_timeout(item)
        except Exception as exc:
            logger.debug("[Queue] %s failed after %.0fms: %s", item.id, (time.monotonic() - started) * 1000, exc)
            if not item.future.done():
                item.future.set_exception(exc)
        except asyncio.CancelledError:
            # CancelledError 不是 Exception 的子类，同样要结束调用方的 Future
            logger.warning("[Queue] %s was cancelled", item.id)
            if not item.future.done():
                item.future.set_exception(TaskCancelledError(item.id))
            raise
        else:
            logger.debug("[Queue] %s completed in %.0fms", item.id, (time.monotonic() - started) * 1000)
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._running -= 1
            self._dispatch()

    async def _execute_with_timeout(self, item: _QueuedTask) -> Any:
        if not item.timeout_ms:
            return await item.fn()

        inner = asyncio.ensure_future(item.fn())
        try:
            return await asyncio.wait_for(asyncio.shield(inner), timeout=item.timeout_ms / 1000)
        except asyncio.TimeoutError:
            # 调用方不再等待，但底层任务继续运行
            self._track_orphan(item.id, inner)
            raise TaskTimeoutError(item.id, item.timeout_ms) from None

    def _track_orphan(self, task_id: str, inner: asyncio.Task) -> None:
        logger.warning("[Queue] %s timed out; underlying work continues in background", task_id)
        self._orphans.add(inner)

        def _done(t: asyncio.Task) -> None:
            self._orphans.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning("[Queue] Orphaned %s finished with error: %s", task_id, t.exception())

        inner.add_done_callback(_done)

    def _update_idle(self) -> None:
        if self._running == 0 and not self._pending:
            self._idle.set()
        else:
            self._idle.clear()

    # ------------------------------------------------------------------
    # Control
    # 控制
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """Stop dispatching new work; running work is unaffected. / 暂停派发新任务。"""
        self._paused = True
        logger.info("[Queue] Paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("[Queue] Resumed")
        self._dispatch()

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def drain(self) -> None:
        """
        Wait until nothing is running and nothing is pending.
        等待直到没有运行中和等待中的任务。暂停状态下若仍有等待任务，会一直等到 resume。
        """
        while self._running > 0 or self._pending:
            await self._idle.wait()

    def clear(self) -> int:
        """
        Cancel every pending (not yet started) future. Returns how many were dropped.
        取消所有尚未开始的任务，返回被移除的数量。
        """
        dropped = 0
        while self._pending:
            item = heapq.heappop(self._pending)
            if item.future.cancel():
                dropped += 1
        self._update_idle()
        logger.info("[Queue] Cleared (%d tasks removed)", dropped)
        return dropped

    def set_max_concurrent(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent
        self._dispatch()

    # ------------------------------------------------------------------
    # Introspection
    # 状态查询
    # ------------------------------------------------------------------

    @property
    def running(self) -> int:
        return self._running

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def orphaned_count(self) -> int:
        """Timed-out functions still running in the background. / 超时后仍在后台运行的数量。"""
        return len(self._orphans)

    def status(self) -> QueueStatus:
        return QueueStatus(
            pending=len(self._pending),
            running=self._running,
            max_concurrent=self._max_concurrent,
            is_paused=self._paused,
        )
