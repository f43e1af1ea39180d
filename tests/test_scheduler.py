"""
Scheduler 测试 — 覆盖：
  1. 执行计划（含循环依赖时返回空分层而非抛异常）
  2. 实时就绪集合 get_next_executable_tasks()
  3. 失败传播：依赖失败任务的下游永远不会就绪
  4. 修复后重试与 payload 替换
"""

from __future__ import annotations

import pytest

from dag.errors import DuplicateNodeError, UnknownNodeError
from dag.graph import DependencyGraph
from dag.scheduler import Scheduler
from dag.state_machine import InvalidTransitionError
from schema import ExecutionState, TaskNode


def _scheduler(layout: dict[str, list[str]]) -> Scheduler:
    s = Scheduler()
    s.add_tasks(TaskNode(id=tid, dependencies=set(deps), payload=f"do {tid}") for tid, deps in layout.items())
    s.build_graph()
    return s


DIAMOND = {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]}


def _ready_ids(s: Scheduler) -> list[str]:
    return [n.id for n in s.get_next_executable_tasks()]


class TestExecutionPlan:

    def test_acyclic_plan(self):
        plan = _scheduler(DIAMOND).get_execution_plan()
        assert not plan.has_cycle
        assert plan.layers[0] == ["A"]
        assert set(plan.layers[1]) == {"B", "C"}
        assert plan.layers[2] == ["D"]

    def test_cyclic_plan_is_reported_not_raised(self):
        plan = _scheduler({"X": ["Y"], "Y": ["X"]}).get_execution_plan()
        assert plan.has_cycle
        assert plan.cycle_nodes == {"X", "Y"}
        assert plan.layers == []

    def test_duplicate_task_propagates(self):
        s = _scheduler({"A": []})
        with pytest.raises(DuplicateNodeError):
            s.add_task(TaskNode(id="A"))


class TestReadySet:

    def test_initial_ready_set(self):
        assert _ready_ids(_scheduler(DIAMOND)) == ["A"]

    def test_completion_unblocks_successors(self):
        s = _scheduler(DIAMOND)
        s.mark_executing("A")
        s.mark_completed("A")
        assert _ready_ids(s) == ["B", "C"]
        assert s.get_task_status("A") == ExecutionState.COMPLETED
        assert "A" not in s.graph

    def test_mark_completed_decrements_each_successor_once(self):
        s = _scheduler(DIAMOND)
        for tid in ("A", "B"):
            s.mark_executing(tid)
            s.mark_completed(tid)
        assert s.graph.in_degree("D") == 1
        assert _ready_ids(s) == ["C"]

    def test_executing_task_is_not_ready(self):
        s = _scheduler({"A": [], "B": []})
        s.mark_executing("A")
        assert _ready_ids(s) == ["B"]

    def test_failed_dependency_blocks_forever(self):
        """A 失败后，B/C/D 永远不会进入就绪集合."""
        s = _scheduler(DIAMOND)
        s.mark_executing("A")
        s.mark_failed("A")
        assert _ready_ids(s) == []
        assert "A" in s.graph, "失败节点保留在图中"
        assert sorted(s.get_blocked_tasks()) == ["B", "C", "D"]

    def test_partial_failure_keeps_other_branch(self):
        s = _scheduler({"A": [], "B": ["A"], "X": [], "Y": ["X"]})
        for tid in ("A", "X"):
            s.mark_executing(tid)
        s.mark_failed("A")
        s.mark_completed("X")
        assert _ready_ids(s) == ["Y"]
        assert s.get_blocked_tasks() == ["B"]


class TestRetry:

    def test_retrying_task_is_ready_again(self):
        s = _scheduler({"A": []})
        s.mark_executing("A")
        s.mark_retrying("A")
        assert _ready_ids(s) == ["A"]

    def test_retry_after_failure_clears_failed_set(self):
        s = _scheduler({"A": []})
        s.mark_executing("A")
        s.mark_failed("A")
        assert s.failed_count() == 1
        s.mark_retrying("A")
        assert s.failed_count() == 0
        assert _ready_ids(s) == ["A"]

    def test_replace_payload_keeps_identity(self):
        s = _scheduler({"A": [], "B": ["A"]})
        node = s.replace_payload("B", "fixed")
        assert node.payload == "fixed"
        assert node.dependencies == {"A"}
        assert s.get_task("B").payload == "fixed"

    def test_unknown_task(self):
        s = _scheduler({"A": []})
        with pytest.raises(UnknownNodeError):
            s.mark_completed("ghost")


class TestCountersAndReset:

    def test_progress(self):
        s = _scheduler(DIAMOND)
        s.mark_executing("A")
        s.mark_completed("A")
        s.mark_executing("B")
        s.mark_failed("B")
        assert s.progress() == {"total": 4, "completed": 1, "failed": 1, "percentage": 25}
        assert not s.is_all_completed()

    def test_reset(self):
        s = _scheduler(DIAMOND)
        s.mark_executing("A")
        s.mark_completed("A")
        s.reset()
        assert s.total_count() == 0
        assert s.completed_count() == 0
        assert len(s.graph) == 0
        assert s.get_task_status("A") is None

    def test_injected_graph_is_used(self):
        graph = DependencyGraph()
        s = Scheduler(graph=graph)
        s.add_task(TaskNode(id="A"))
        assert s.graph is graph, "传入的空图不能被替换"
        assert "A" in graph

    def test_mark_cancelled(self):
        s = _scheduler({"A": [], "B": ["A"]})
        s.mark_cancelled("A")
        assert s.get_task_status("A") == ExecutionState.CANCELLED
        assert _ready_ids(s) == [], "已取消的任务不再就绪，下游保持阻塞"
        with pytest.raises(InvalidTransitionError):
            s.mark_executing("A")
