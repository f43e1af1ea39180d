"""
Node State Machine - Validates and enforces task lifecycle transitions.
节点状态机 —— 校验并强制执行任务生命周期的合法状态转移。

The transition table is the single source of truth for what state changes
are legal. Any invalid transition raises InvalidTransitionError, preventing
the scheduler from entering an inconsistent state.
转移表是合法状态变化的唯一权威来源。
任何非法转移都会抛出 InvalidTransitionError，防止调度器进入不一致状态。

Transition graph:
转移图：
    PENDING ──> EXECUTING ──> COMPLETED                 (happy path / 正常路径)
                          ──> RETRYING ──> EXECUTING    (repair accepted / 修复后重试)
                          ──> FAILED ──> RETRYING       (external retry / 外部重试)
    PENDING / RETRYING ──> COMPLETED | FAILED           (marked without dispatch / 未派发直接标记)
    Any non-terminal ────────> CANCELLED                (external abort / 外部中止)
"""

from __future__ import annotations

import logging
from typing import Callable

from dag.errors import SchedulerError, UnknownNodeError
from schema import ExecutionState

logger = logging.getLogger(__name__)


class InvalidTransitionError(SchedulerError):
    """
    Raised when an illegal state transition is attempted.
    当尝试非法状态转移时抛出此异常。
    """


VALID_TRANSITIONS: dict[ExecutionState, set[ExecutionState]] = {
    ExecutionState.PENDING: {
        ExecutionState.EXECUTING,
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
    },
    ExecutionState.EXECUTING: {
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.RETRYING,
        ExecutionState.CANCELLED,
    },
    ExecutionState.RETRYING: {
        ExecutionState.EXECUTING,
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
    },
    # FAILED is terminal for a run, but may be re-opened by a retry
    # FAILED 对一次运行而言是终态，但允许通过 retry 重新打开
    ExecutionState.FAILED: {ExecutionState.RETRYING},
    # Terminal states: no further transitions allowed
    # 终态：不允许任何进一步转移
    ExecutionState.COMPLETED: set(),
    ExecutionState.CANCELLED: set(),
}

TERMINAL_STATES = frozenset({ExecutionState.COMPLETED, ExecutionState.CANCELLED})


class NodeStateMachine:
    """
    Holds the current state of every task and applies validated transitions.
    保存每个任务的当前状态，并应用经过校验的状态转移。

    Provides a single `transition()` method that:
      1. Checks the VALID_TRANSITIONS table
      2. Applies the change
      3. Fires an optional callback for UI/logging

    提供唯一的 `transition()` 方法，该方法：
      1. 查询 VALID_TRANSITIONS 表校验合法性
      2. 应用状态变更
      3. 触发可选回调函数（用于 UI 更新或日志）
    """

    def __init__(self, on_transition: Callable[[str, ExecutionState, ExecutionState], None] | None = None):
        """
        Args:
            on_transition: Optional callback(task_id, old_state, new_state).
            on_transition: 可选回调 callback(任务 ID, 旧状态, 新状态)。
        """
        self._on_transition = on_transition
        self._states: dict[str, ExecutionState] = {}

    def register(self, task_id: str) -> None:
        """Start tracking a task in PENDING. / 以 PENDING 状态开始追踪任务。"""
        self._states[task_id] = ExecutionState.PENDING

    def get(self, task_id: str) -> ExecutionState | None:
        return self._states.get(task_id)

    def states(self) -> dict[str, ExecutionState]:
        return dict(self._states)

    def clear(self) -> None:
        self._states.clear()

    def can_transition(self, task_id: str, new_state: ExecutionState) -> bool:
        """
        Check whether moving `task_id` to `new_state` is legal.
        检查将 `task_id` 转移到 `new_state` 是否合法。
        """
        current = self._states.get(task_id)
        if current is None:
            return False
        return new_state in VALID_TRANSITIONS.get(current, set())

    def transition(self, task_id: str, new_state: ExecutionState) -> None:
        """
        Apply a state transition. Raises InvalidTransitionError if illegal.
        应用状态转移。若转移非法则抛出 InvalidTransitionError。
        """
        current = self._states.get(task_id)
        if current is None:
            raise UnknownNodeError(task_id)
        if not self.can_transition(task_id, new_state):
            raise InvalidTransitionError(
                f"Task '{task_id}': cannot transition from {current.value} to {new_state.value}. "
                f"Valid targets: {sorted(s.value for s in VALID_TRANSITIONS.get(current, set()))}"
            )

        self._states[task_id] = new_state
        logger.debug("[SM] %s: %s -> %s", task_id, current.value, new_state.value)

        if self._on_transition:
            try:
                self._on_transition(task_id, current, new_state)
            except Exception:
                # UI 回调异常不能影响调度主流程
                logger.warning("[SM] on_transition callback failed for %s", task_id, exc_info=True)
