"""
Error taxonomy for the DAG scheduling layer.
DAG 调度层的异常体系。

Graph-construction errors propagate synchronously to the caller.
Cycle errors abort planning before any task runs.
Per-task execution failures are NOT exceptions: they are recorded as
ExecutionResult(success=False) and surface only in the RunSummary.
构图异常同步抛给调用方；循环依赖在执行前中止整次运行；
单个任务的执行失败不是异常，而是以 ExecutionResult 数据形式记录。
"""

from __future__ import annotations

from typing import Iterable


class SchedulerError(Exception):
    """Base class for all scheduling errors. / 所有调度异常的基类。"""


class DuplicateNodeError(SchedulerError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' already exists")


class UnknownNodeError(SchedulerError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' does not exist")


class InvalidEdgeError(SchedulerError):
    def __init__(self, from_id: str, to_id: str, reason: str = "self-loops are not allowed"):
        self.from_id = from_id
        self.to_id = to_id
        super().__init__(f"Invalid edge {from_id} -> {to_id}: {reason}")


class CyclicGraphError(SchedulerError):
    """
    Raised when an operation requires an acyclic graph.
    当操作要求无环图而图中存在循环时抛出。
    """

    def __init__(self, node_ids: Iterable[str] = ()):
        self.node_ids = sorted(set(node_ids))
        detail = f": {', '.join(self.node_ids)}" if self.node_ids else ""
        super().__init__(f"Circular dependency detected{detail}")


class CyclicDependencyError(CyclicGraphError):
    """
    Raised by the controller when a run is refused because its task set is cyclic.
    任务集合存在循环依赖时，控制器拒绝执行整次运行。
    """


class ControllerBusyError(SchedulerError):
    """A controller instance is already driving a run. / 控制器已在运行中。"""


class TaskTimeoutError(SchedulerError, TimeoutError):
    """
    The caller stopped waiting for a queued function.
    The underlying work is NOT cancelled and keeps running in the background.
    调用方停止等待；底层任务不会被取消，仍在后台运行至结束。
    """

    def __init__(self, task_id: str, timeout_ms: float):
        self.task_id = task_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Task {task_id} timed out after {timeout_ms:g}ms")


class TaskCancelledError(SchedulerError):
    """
    A queued function was cancelled before producing a result.
    队列中的函数在产生结果前被取消。
    """

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} was cancelled")
