"""
Pydantic data models for the task scheduler.
Defines the core data structures shared by the DAG layer, the controller and the agents.
任务调度器的 Pydantic 数据模型。
定义了贯穿 dag、controller、agents 各层的核心数据结构。
"""

from __future__ import annotations

import time
import uuid
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ======================================================================
# Scheduling Models
# 调度模型
# ======================================================================

class ExecutionState(str, Enum):
    """
    Per-task lifecycle states, managed by NodeStateMachine.
    单个任务的生命周期状态，由 NodeStateMachine 强制管理合法转移。

    Transition graph:
    转移图：
        PENDING -> EXECUTING -> COMPLETED
                             -> RETRYING -> EXECUTING ...
                             -> FAILED -> RETRYING
        Any non-terminal     -> CANCELLED（仅外部中止）
    """
    PENDING = "pending"       # 等待依赖完成
    EXECUTING = "executing"   # 已派发给执行者
    COMPLETED = "completed"   # 验证通过（终态）
    FAILED = "failed"         # 重试耗尽或无法修复
    RETRYING = "retrying"     # 修复已接受，等待重新执行
    CANCELLED = "cancelled"   # 外部中止（终态）


class TaskNode(BaseModel):
    """
    A single schedulable unit of work.
    一个可调度的工作单元。

    `payload` is opaque to the scheduler: the Executor/Validator/Repairer
    collaborators interpret it. `priority` and `timeout_ms` are dispatch
    hints forwarded to the ConcurrentTaskQueue.
    """
    id: str = Field(description="Unique ID within one scheduling session")         # 节点唯一 ID
    dependencies: set[str] = Field(default_factory=set, description="IDs this task depends on")  # 前置任务 ID
    payload: Any = None                                                             # 业务负载，调度器不解析
    priority: int = 0                                                               # 队列优先级，越大越先派发
    timeout_ms: float | None = Field(default=None, gt=0)                            # 单次执行超时（毫秒）


class ScheduleResult(BaseModel):
    """
    Layered execution plan produced once per graph build.
    每次构图后生成一次的分层执行计划，创建后不可变。
    """
    model_config = ConfigDict(frozen=True)

    layers: list[list[str]] = Field(default_factory=list)   # 每层内的任务可并行执行
    has_cycle: bool = False
    cycle_nodes: set[str] = Field(default_factory=set)


# ======================================================================
# Execution Results
# 执行结果模型
# ======================================================================

class ExecutionResult(BaseModel):
    """
    Result of executing a single task attempt.
    单次任务执行的结果。执行失败以数据表示，而非异常。
    """
    task_id: str
    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    attempts: int = 1                                      # 到此结果为止的执行次数
    timestamp: float = Field(default_factory=time.time)


class ValidationResult(BaseModel):
    """
    Validator's verdict on one execution result.
    Validator 对单次执行结果的判定。
    """
    valid: bool
    issues: list[str] = Field(default_factory=list)         # 发现的问题，交给 Repairer
    score: float | None = None                              # 质量评分 0~100（可选）
    suggestions: list[str] = Field(default_factory=list)


class RunSummary(BaseModel):
    """
    Aggregate outcome of one controller run.
    一次完整运行的汇总结果，运行结束时创建一次。
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    success: bool
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    blocked_task_ids: list[str] = Field(default_factory=list)  # 因上游失败从未派发的任务
    results: list[ExecutionResult] = Field(default_factory=list)
    started_at: float
    finished_at: float
    duration_ms: float

    def result_for(self, task_id: str) -> ExecutionResult | None:
        for r in self.results:
            if r.task_id == task_id:
                return r
        return None


class ControllerStatus(str, Enum):
    """
    Run-level status of the ExecutionController.
    ExecutionController 的运行级状态。
    """
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    VALIDATING = "validating"
    REPAIRING = "repairing"
    COMPLETED = "completed"
    FAILED = "failed"


class ControllerEvent(BaseModel):
    """A single event recorded by the controller (for UI and debugging)."""
    type: str
    timestamp: float = Field(default_factory=time.time)
    data: dict[str, Any] = Field(default_factory=dict)


# ======================================================================
# Queue Models
# 队列模型
# ======================================================================

class QueueStatus(BaseModel):
    """Snapshot of a ConcurrentTaskQueue."""
    pending: int
    running: int
    max_concurrent: int
    is_paused: bool


class QueueTaskResult(BaseModel):
    """
    Settled outcome of one queued function (used by add_all).
    队列中单个函数的最终结果（add_all 使用）。
    """
    id: str
    success: bool
    result: Any = None
    error: str | None = None
    duration_ms: float = 0.0


# ======================================================================
# Planning Payloads
# 规划负载模型（由参考 Agent 使用）
# ======================================================================

class TaskPriority(IntEnum):
    """Task priority levels; higher is dispatched first."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class Step(BaseModel):
    """
    One concrete step inside a task.
    任务中的一个具体执行步骤。
    """
    id: str
    action: str                                                   # 具体操作
    parameters: dict[str, Any] = Field(default_factory=dict)     # 操作参数
    expected_result: str = ""                                     # 预期结果
    order: int = 1


class Task(BaseModel):
    """
    A decomposed unit of the user's goal, carried as TaskNode.payload.
    用户目标分解后的任务单元，作为 TaskNode.payload 传递。
    """
    id: str
    description: str
    steps: list[Step] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    priority: TaskPriority = TaskPriority.MEDIUM
    metadata: dict[str, Any] = Field(default_factory=dict)

    def ordered_steps(self) -> list[Step]:
        return sorted(self.steps, key=lambda s: s.order)


class TaskPlan(BaseModel):
    """
    The planner's decomposition of a goal.
    Planner 对目标的分解结果。
    """
    id: str = Field(default_factory=lambda: f"plan_{uuid.uuid4().hex[:12]}")
    original_input: str
    summary: str = ""
    tasks: list[Task] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)

    def to_nodes(self, timeout_ms: float | None = None) -> list[TaskNode]:
        """
        Convert tasks into schedulable TaskNodes (task carried as payload).
        将任务转换为可调度的 TaskNode（任务本身作为 payload）。
        """
        return [
            TaskNode(
                id=t.id,
                dependencies=set(t.dependencies),
                payload=t,
                priority=int(t.priority),
                timeout_ms=timeout_ms,
            )
            for t in self.tasks
        ]
