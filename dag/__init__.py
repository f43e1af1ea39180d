"""
DAG module - Dependency scheduling core.
DAG 模块 —— 依赖调度核心。

Components (leaves first):
  - graph.py:         DependencyGraph with cycle detection and layered ordering
  - queue.py:         ConcurrentTaskQueue (priority, bounded concurrency, timeouts)
  - state_machine.py: Per-task lifecycle state machine
  - scheduler.py:     Scheduler tracking completed / failed / ready tasks
  - controller.py:    ExecutionController (layer rounds + validate/repair loop)
  - errors.py:        Error taxonomy

模块组成（从底层到上层）：
  - graph.py:         依赖图（循环检测、Kahn 分层拓扑排序、增量移除）
  - queue.py:         并发任务队列（优先级、有界并发、超时）
  - state_machine.py: 任务生命周期状态机（强制合法状态转移）
  - scheduler.py:     调度器（追踪已完成 / 已失败 / 可执行任务）
  - controller.py:    执行控制器（按轮执行 + 验证/修复循环）
  - errors.py:        异常体系

This package never imports the LLM layer; collaborators are injected.
本包不依赖 LLM 层，执行/验证/修复协作者均通过构造函数注入。
"""

from dag.errors import (
    ControllerBusyError,
    CyclicDependencyError,
    CyclicGraphError,
    DuplicateNodeError,
    InvalidEdgeError,
    SchedulerError,
    TaskCancelledError,
    TaskTimeoutError,
    UnknownNodeError,
)
from dag.graph import DependencyGraph                 # 依赖图
from dag.queue import ConcurrentTaskQueue             # 并发任务队列
from dag.state_machine import InvalidTransitionError, NodeStateMachine  # 节点状态机
from dag.scheduler import Scheduler                   # 调度器
from dag.controller import ExecutionController, Executor, Repairer, Validator  # 执行控制器

__all__ = [
    "ConcurrentTaskQueue",
    "ControllerBusyError",
    "CyclicDependencyError",
    "CyclicGraphError",
    "DependencyGraph",
    "DuplicateNodeError",
    "ExecutionController",
    "Executor",
    "InvalidEdgeError",
    "InvalidTransitionError",
    "NodeStateMachine",
    "Repairer",
    "Scheduler",
    "SchedulerError",
    "TaskCancelledError",
    "TaskTimeoutError",
    "UnknownNodeError",
    "Validator",
]
