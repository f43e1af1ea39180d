"""
Scheduler - Per-task lifecycle tracking on top of a DependencyGraph.
调度器 —— 在 DependencyGraph 之上追踪每个任务的生命周期。

The scheduler owns one graph plus three collections:
  - completed: ids whose result validated (node removed from the graph)
  - failed:    ids that exhausted retries (node KEPT in the graph)
  - task_map:  id -> current TaskNode (payload may be replaced by a repair)

调度器独占一张图以及三个集合：
  - completed: 已验证通过的任务（其节点已从图中移除）
  - failed:    重试耗尽的任务（其节点保留在图中）
  - task_map:  任务 ID -> 当前 TaskNode（payload 可能被修复替换）

Failure propagation needs no extra bookkeeping: a failed node is never
removed, so its dependents keep in-degree > 0 and are never returned as ready.
失败传播不需要额外记录：失败节点不会被移除，
因此其下游任务入度始终大于 0，永远不会进入就绪集合。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from dag.errors import UnknownNodeError
from dag.graph import DependencyGraph
from dag.state_machine import NodeStateMachine
from schema import ExecutionState, ScheduleResult, TaskNode

logger = logging.getLogger(__name__)

# get_next_executable_tasks() 认可的可派发状态
_DISPATCHABLE = frozenset({ExecutionState.PENDING, ExecutionState.RETRYING})


class Scheduler:
    """
    Dependency-aware scheduler for one run.
    面向单次运行的依赖感知调度器。

    Single writer: only the ExecutionController driving this run mutates it.
    单写者：只有驱动本次运行的 ExecutionController 会修改它。
    """

    def __init__(
        self,
        graph: DependencyGraph | None = None,
        on_transition: Callable[[str, ExecutionState, ExecutionState], None] | None = None,
    ):
        self._graph = graph if graph is not None else DependencyGraph()
        self._sm = NodeStateMachine(on_transition=on_transition)
        self._completed: set[str] = set()
        self._failed: set[str] = set()
        self._task_map: dict[str, TaskNode] = {}

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    # ------------------------------------------------------------------
    # Building
    # 构建
    # ------------------------------------------------------------------

    def add_task(self, node: TaskNode) -> None:
        logger.debug("[Scheduler] Adding task: %s", node.id)
        self._graph.add_node(node)
        self._task_map[node.id] = node
        self._sm.register(node.id)

    def add_tasks(self, nodes: Iterable[TaskNode]) -> None:
        nodes = list(nodes)
        logger.info("[Scheduler] Adding %d tasks", len(nodes))
        for node in nodes:
            self.add_task(node)

    def build_graph(self) -> None:
        """Derive edges from declared dependencies. / 根据声明的依赖构建边。"""
        self._graph.build_from_dependencies()
        logger.info("[Scheduler] %s", self._graph.summary())

    # ------------------------------------------------------------------
    # Planning
    # 规划
    # ------------------------------------------------------------------

    def get_execution_plan(self) -> ScheduleResult:
        """
        Layered plan for the current graph.
        A cycle is reported in the result (empty layers), never raised.

        返回当前图的分层执行计划。
        循环依赖作为可报告的规划失败返回（layers 为空），不会抛出异常。
        """
        cycle_nodes = self._graph.find_cycle_nodes()
        if cycle_nodes:
            logger.error("[Scheduler] Circular dependency detected: %s", sorted(cycle_nodes))
            return ScheduleResult(layers=[], has_cycle=True, cycle_nodes=cycle_nodes)

        layers = self._graph.topological_sort()
        logger.info("[Scheduler] Execution plan: %d layers", len(layers))
        return ScheduleResult(layers=layers, has_cycle=False)

    def get_next_executable_tasks(self) -> list[TaskNode]:
        """
        The live ready set: in-degree zero, neither completed nor failed,
        and in PENDING or RETRYING state. Reflects removals already applied.

        实时就绪集合：入度为 0、未完成也未失败、且状态为 PENDING 或 RETRYING 的任务。
        与预先计算的分层不同，它反映了已经应用的节点移除。
        """
        ready: list[TaskNode] = []
        for node_id in self._graph.get_zero_in_degree_nodes():
            if node_id in self._completed or node_id in self._failed:
                continue
            if self._sm.get(node_id) in _DISPATCHABLE:
                ready.append(self._task_map[node_id])
        logger.debug("[Scheduler] %d executable tasks", len(ready))
        return ready

    # ------------------------------------------------------------------
    # State mutations
    # 状态变更
    # ------------------------------------------------------------------

    def _require(self, task_id: str) -> None:
        if task_id not in self._task_map:
            raise UnknownNodeError(task_id)

    def mark_executing(self, task_id: str) -> None:
        self._require(task_id)
        self._sm.transition(task_id, ExecutionState.EXECUTING)

    def mark_completed(self, task_id: str) -> None:
        """
        Record success and remove the node from the graph, which unblocks
        its successors.
        记录成功并将节点从图中移除，从而解除其后继任务的阻塞。
        """
        self._require(task_id)
        logger.info("[Scheduler] Task %s completed", task_id)
        self._sm.transition(task_id, ExecutionState.COMPLETED)
        self._completed.add(task_id)
        self._graph.remove_node(task_id)

    def mark_failed(self, task_id: str) -> None:
        """
        Record failure. The node stays in the graph so dependents stay blocked.
        记录失败。节点保留在图中，下游任务将一直被阻塞。
        """
        self._require(task_id)
        logger.warning("[Scheduler] Task %s failed", task_id)
        self._sm.transition(task_id, ExecutionState.FAILED)
        self._failed.add(task_id)

    def mark_retrying(self, task_id: str) -> None:
        """
        Re-open a task for another attempt under the same id.
        以相同 ID 重新开放任务，等待下一次执行。
        """
        self._require(task_id)
        logger.info("[Scheduler] Task %s retrying", task_id)
        self._sm.transition(task_id, ExecutionState.RETRYING)
        self._failed.discard(task_id)

    def mark_cancelled(self, task_id: str) -> None:
        """External abort only; the normal flow never cancels. / 仅用于外部中止。"""
        self._require(task_id)
        logger.info("[Scheduler] Task %s cancelled", task_id)
        self._sm.transition(task_id, ExecutionState.CANCELLED)

    def replace_payload(self, task_id: str, payload: Any) -> TaskNode:
        """
        Swap in a repaired payload, keeping id, dependencies and hints.
        替换为修复后的 payload，保留 ID、依赖和调度提示不变。
        """
        self._require(task_id)
        node = self._task_map[task_id].model_copy(update={"payload": payload})
        self._task_map[task_id] = node
        return node

    def reset(self) -> None:
        logger.info("[Scheduler] Resetting")
        self._graph.reset()
        self._sm.clear()
        self._completed.clear()
        self._failed.clear()
        self._task_map.clear()

    # ------------------------------------------------------------------
    # Queries
    # 查询
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskNode | None:
        return self._task_map.get(task_id)

    def get_all_tasks(self) -> list[TaskNode]:
        return list(self._task_map.values())

    def get_task_status(self, task_id: str) -> ExecutionState | None:
        return self._sm.get(task_id)

    def completed_count(self) -> int:
        return len(self._completed)

    def failed_count(self) -> int:
        return len(self._failed)

    def total_count(self) -> int:
        return len(self._task_map)

    def is_all_completed(self) -> bool:
        return len(self._completed) == len(self._task_map)

    def get_blocked_tasks(self) -> list[str]:
        """
        Ids still PENDING whose in-degree never reached zero (a prerequisite failed).
        仍处于 PENDING 且入度未归零的任务（其前置任务已失败）。
        """
        return [
            tid for tid in self._task_map
            if self._sm.get(tid) == ExecutionState.PENDING
            and tid in self._graph
            and self._graph.in_degree(tid) > 0
        ]

    def progress(self) -> dict[str, int]:
        total = self.total_count()
        completed = self.completed_count()
        return {
            "total": total,
            "completed": completed,
            "failed": self.failed_count(),
            "percentage": round(completed * 100 / total) if total else 0,
        }
