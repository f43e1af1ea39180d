"""
ExecutionController - Drives one run: layer rounds, validation and bounded repair.
执行控制器 —— 驱动一次完整运行：按轮次执行、验证结果、有限次修复。

Run-level state machine:
运行级状态机：
    IDLE -> PLANNING -> EXECUTING <-> VALIDATING <-> REPAIRING -> COMPLETED | FAILED

Per-task retry loop (attempt starts at 1):
单任务重试循环（attempt 从 1 开始）：
    a. mark EXECUTING, run the Executor through the queue (exception/timeout -> failed result)
    b. run the Validator (exception -> invalid result)
    c. valid                          -> mark COMPLETED, stop
    d. invalid, attempt <= max_retries -> ask the Repairer
         returns a node -> replace payload, mark RETRYING, attempt += 1, go to a
         returns None   -> unrepairable, stop early (remaining budget unused)
    e. exhausted or unrepairable      -> mark FAILED with the last result

Task-level failures never abort sibling branches. Only a cyclic graph
refuses the run, before any task executes.
任务级失败不会中止其他分支；只有循环依赖会在执行前拒绝整次运行。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Protocol

import config
from dag.errors import ControllerBusyError, CyclicDependencyError
from dag.queue import ConcurrentTaskQueue
from dag.scheduler import Scheduler
from schema import (
    ControllerEvent,
    ControllerStatus,
    ExecutionResult,
    RunSummary,
    TaskNode,
    ValidationResult,
)

logger = logging.getLogger(__name__)

_PHASE_PRECEDENCE = (ControllerStatus.REPAIRING, ControllerStatus.VALIDATING, ControllerStatus.EXECUTING)


# ------------------------------------------------------------------
# Collaborator protocols
# 协作者协议（普通 async 函数或带 __call__ 的 Agent 均可满足）
# ------------------------------------------------------------------

class Executor(Protocol):
    async def __call__(self, node: TaskNode) -> ExecutionResult: ...


class Validator(Protocol):
    async def __call__(self, node: TaskNode, result: ExecutionResult) -> ValidationResult: ...


class Repairer(Protocol):
    async def __call__(self, node: TaskNode, result: ExecutionResult, issues: list[str]) -> TaskNode | None: ...


class ExecutionController:
    """
    Executes a task set with bounded concurrency and a validate/repair loop.
    以有界并发执行任务集合，并对每个任务应用「验证 -> 修复 -> 重试」循环。

    One instance drives at most one run at a time; it owns its Scheduler.
    一个实例同一时间只驱动一次运行，并独占自己的 Scheduler。
    """

    def __init__(
        self,
        executor: Executor,
        validator: Validator,
        repairer: Repairer | None = None,
        max_concurrent: int | None = None,
        max_retries: int | None = None,
        default_timeout_ms: float | None = None,
        scheduler: Scheduler | None = None,
        queue: ConcurrentTaskQueue | None = None,
        on_event: Callable[[str, Any], None] | None = None,
    ):
        max_concurrent = max_concurrent if max_concurrent is not None else config.MAX_CONCURRENT_TASKS
        max_retries = max_retries if max_retries is not None else config.MAX_RETRIES
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        if default_timeout_ms is None and config.TASK_TIMEOUT_MS > 0:
            default_timeout_ms = config.TASK_TIMEOUT_MS
        if default_timeout_ms is not None and default_timeout_ms <= 0:
            raise ValueError(f"default_timeout_ms must be > 0, got {default_timeout_ms}")

        self._executor = executor          # 执行者：真正完成任务的协作者
        self._validator = validator        # 验证者：判定执行结果是否合格
        self._repairer = repairer          # 修复者：可选，返回修改后的任务或 None
        self._max_retries = max_retries
        self._default_timeout_ms = default_timeout_ms
        self._scheduler = scheduler if scheduler is not None else Scheduler()
        self._queue = queue if queue is not None else ConcurrentTaskQueue(max_concurrent=max_concurrent)
        self._emit_cb = on_event or (lambda *_: None)  # 事件回调（用于 UI 实时更新）

        self._status = ControllerStatus.IDLE
        self._events: list[ControllerEvent] = []
        self._results: dict[str, ExecutionResult] = {}
        self._running = False
        self._phases: dict[str, ControllerStatus] = {}  # 每个进行中任务的当前阶段

    # ------------------------------------------------------------------
    # Main entry
    # 主入口
    # ------------------------------------------------------------------

    async def run(self, tasks: list[TaskNode], plan_id: str | None = None) -> RunSummary:
        """
        Execute `tasks` to completion and return a RunSummary.
        执行任务集合直至结束，返回 RunSummary。

        Raises CyclicDependencyError (before any task runs) if the graph is
        cyclic, and ControllerBusyError if this instance is already running.
        图中存在循环时在执行前抛出 CyclicDependencyError；
        实例已在运行时抛出 ControllerBusyError。
        """
        if self._running:
            raise ControllerBusyError("ExecutionController is already running a plan")

        self._running = True
        try:
            return await self._run(tasks, plan_id or f"run_{int(time.time() * 1000)}")
        finally:
            self._running = False

    async def _run(self, tasks: list[TaskNode], plan_id: str) -> RunSummary:
        started_at = time.time()
        self._results = {}
        self._phases.clear()
        self._status = ControllerStatus.PLANNING
        logger.info("[Controller] Starting run %s with %d tasks", plan_id, len(tasks))

        # --- Planning: build graph and check for cycles ---
        # --- 规划阶段：构图并检测循环依赖 ---
        self._scheduler.reset()
        try:
            self._scheduler.add_tasks(tasks)
            self._scheduler.build_graph()
        except Exception:
            self._status = ControllerStatus.FAILED
            raise

        plan = self._scheduler.get_execution_plan()
        if plan.has_cycle:
            self._status = ControllerStatus.FAILED
            self._emit("run_failed", {"plan_id": plan_id, "cycle_nodes": sorted(plan.cycle_nodes)})
            raise CyclicDependencyError(plan.cycle_nodes)

        self._emit("plan_created", {"plan_id": plan_id, "task_count": len(tasks), "layers": plan.layers})

        # --- Execution: one round per planned layer ---
        # 预计算的分层只用于限定轮数；实际派发由实时就绪集合决定
        self._status = ControllerStatus.EXECUTING
        for round_no, _ in enumerate(plan.layers, start=1):
            ready = self._scheduler.get_next_executable_tasks()
            if not ready:
                logger.warning("[Controller] No executable tasks at round %d, stopping early", round_no)
                break

            self._emit("layer_start", {"round": round_no, "task_ids": [n.id for n in ready]})
            logger.info("[Controller] Round %d: executing %d tasks", round_no, len(ready))
            await asyncio.gather(*[self._execute_with_retry(node) for node in ready])

        summary = self._build_summary(plan_id, tasks, started_at)
        self._status = ControllerStatus.COMPLETED
        self._emit("run_complete", {"summary": summary})
        logger.info(
            "[Controller] Run %s finished: %d/%d completed, %d failed, %d blocked",
            plan_id, summary.completed_tasks, summary.total_tasks,
            summary.failed_tasks, len(summary.blocked_task_ids),
        )
        return summary

    # ------------------------------------------------------------------
    # Per-task retry loop
    # 单任务重试循环
    # ------------------------------------------------------------------

    async def _execute_with_retry(self, node: TaskNode) -> ExecutionResult:
        task_id = node.id
        current = node
        attempt = 1
        last_result: ExecutionResult | None = None

        self._emit("task_started", {"task_id": task_id, "node": current})

        while attempt <= self._max_retries + 1:
            self._scheduler.mark_executing(task_id)
            self._phases[task_id] = ControllerStatus.EXECUTING
            result = await self._execute_once(current, attempt)
            last_result = result

            # --- Validate ---
            self._phases[task_id] = ControllerStatus.VALIDATING
            validation = await self._validate(current, result)
            self._emit("validation_complete", {"task_id": task_id, "attempt": attempt, "validation": validation})

            if validation.valid:
                self._phases.pop(task_id, None)
                self._scheduler.mark_completed(task_id)
                self._results[task_id] = result
                self._emit("task_completed", {"task_id": task_id, "result": result})
                return result

            if attempt > self._max_retries:
                logger.warning("[Controller] Task %s exhausted %d retries", task_id, self._max_retries)
                break

            # --- Repair ---
            self._phases[task_id] = ControllerStatus.REPAIRING
            logger.warning(
                "[Controller] Task %s invalid (attempt %d/%d): %s",
                task_id, attempt, self._max_retries + 1, "; ".join(validation.issues) or "no issues reported",
            )
            repaired = await self._repair(current, result, validation.issues)
            if repaired is None:
                logger.warning("[Controller] Task %s is unrepairable, failing early", task_id)
                break

            current = self._scheduler.replace_payload(task_id, repaired.payload)
            self._scheduler.mark_retrying(task_id)
            self._emit("repair_attempt", {"task_id": task_id, "attempt": attempt, "issues": validation.issues})
            attempt += 1

        if last_result is None:
            last_result = ExecutionResult(task_id=task_id, success=False, error="Max retries exceeded", attempts=attempt)

        self._phases.pop(task_id, None)
        self._scheduler.mark_failed(task_id)
        self._results[task_id] = last_result
        self._emit("task_failed", {"task_id": task_id, "result": last_result})
        return last_result

    async def _execute_once(self, node: TaskNode, attempt: int) -> ExecutionResult:
        """
        One executor call through the queue. Never raises: exceptions and
        timeouts become a failed ExecutionResult.
        通过队列调用一次执行者。不会抛出异常：异常与超时都转换为失败结果。
        """
        timeout_ms = node.timeout_ms or self._default_timeout_ms
        started = time.monotonic()
        try:
            future = self._queue.add(
                lambda: self._executor(node),
                priority=node.priority,
                timeout_ms=timeout_ms,
                task_id=node.id,
            )
            result = await future
            if not isinstance(result, ExecutionResult):
                result = ExecutionResult(task_id=node.id, success=True, output=result)
        except Exception as exc:
            logger.warning("[Controller] Executor failed for %s: %s", node.id, exc)
            result = ExecutionResult(task_id=node.id, success=False, error=str(exc) or type(exc).__name__)

        elapsed = (time.monotonic() - started) * 1000
        return result.model_copy(update={
            "task_id": node.id,
            "duration_ms": result.duration_ms or elapsed,
            "attempts": attempt,
        })

    async def _validate(self, node: TaskNode, result: ExecutionResult) -> ValidationResult:
        try:
            verdict = await self._validator(node, result)
            if not isinstance(verdict, ValidationResult):
                # 允许返回同结构的 dict；其他类型按验证者异常处理
                verdict = ValidationResult.model_validate(verdict)
            return verdict
        except Exception as exc:
            logger.error("[Controller] Validator crashed for %s: %s", node.id, exc)
            return ValidationResult(valid=False, issues=[f"Validator error: {exc}"])

    async def _repair(self, node: TaskNode, result: ExecutionResult, issues: list[str]) -> TaskNode | None:
        if self._repairer is None:
            return None
        try:
            repaired = await self._repairer(node, result, issues)
        except Exception as exc:
            # 修复者异常视为「无法修复」
            logger.error("[Controller] Repairer crashed for %s: %s", node.id, exc)
            return None
        if repaired is not None and not isinstance(repaired, TaskNode):
            logger.error(
                "[Controller] Repairer returned %s for %s, expected TaskNode or None; treating as unrepairable",
                type(repaired).__name__, node.id,
            )
            return None
        return repaired

    # ------------------------------------------------------------------
    # Summary, events and introspection
    # 汇总、事件与状态查询
    # ------------------------------------------------------------------

    def _build_summary(self, plan_id: str, tasks: list[TaskNode], started_at: float) -> RunSummary:
        finished_at = time.time()
        failed = self._scheduler.failed_count()
        return RunSummary(
            plan_id=plan_id,
            success=failed == 0,
            total_tasks=len(tasks),
            completed_tasks=self._scheduler.completed_count(),
            failed_tasks=failed,
            blocked_task_ids=self._scheduler.get_blocked_tasks(),
            results=[self._results[n.id] for n in tasks if n.id in self._results],
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=(finished_at - started_at) * 1000,
        )

    def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        self._events.append(ControllerEvent(type=event_type, data=data))
        logger.debug("[Controller] Event: %s", event_type)
        try:
            self._emit_cb(event_type, data)
        except Exception:
            logger.warning("[Controller] on_event callback failed for %s", event_type, exc_info=True)

    @property
    def status(self) -> ControllerStatus:
        """
        Run-level status. While tasks are in flight it is the most advanced
        phase among them: REPAIRING > VALIDATING > EXECUTING.
        运行级状态。有任务进行中时，取所有任务中最靠后的阶段（修复 > 验证 > 执行）。
        """
        active = set(self._phases.values())
        for phase in _PHASE_PRECEDENCE:
            if phase in active:
                return phase
        return self._status

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def queue(self) -> ConcurrentTaskQueue:
        return self._queue

    @property
    def is_running(self) -> bool:
        return self._running

    def get_events(self) -> list[ControllerEvent]:
        return list(self._events)

    def get_progress(self) -> dict[str, int]:
        """{total, completed, failed, percentage} of the current run. / 当前运行进度。"""
        return self._scheduler.progress()

    def reset(self) -> None:
        """
        Clear events, results and scheduler state. Not allowed mid-run.
        清空事件、结果和调度器状态；运行中不允许调用。
        """
        if self._running:
            raise ControllerBusyError("Cannot reset while a run is in progress")
        self._scheduler.reset()
        self._events.clear()
        self._results.clear()
        self._phases.clear()
        self._status = ControllerStatus.IDLE
