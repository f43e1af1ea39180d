"""
DependencyGraph 测试 — 覆盖：
  1. 构图与依赖推导 (Construction)
  2. 循环检测 (Cycle detection)
  3. Kahn 分层拓扑排序 (Layered topological sort)
  4. 增量移除节点 (Incremental removal)

运行方式:
    python -m pytest tests/test_graph.py -v
"""

from __future__ import annotations

import pytest

from dag.errors import CyclicGraphError, DuplicateNodeError, InvalidEdgeError, UnknownNodeError
from dag.graph import DependencyGraph
from schema import TaskNode


def _graph(layout: dict[str, list[str]]) -> DependencyGraph:
    """Build a graph from {id: [dependency ids]} and derive edges."""
    g = DependencyGraph()
    for node_id, deps in layout.items():
        g.add_node(TaskNode(id=node_id, dependencies=set(deps)))
    g.build_from_dependencies()
    return g


# 菱形依赖：A -> (B, C) -> D
DIAMOND = {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]}


class TestConstruction:

    def test_duplicate_node_rejected(self):
        g = DependencyGraph()
        g.add_node(TaskNode(id="A"))
        with pytest.raises(DuplicateNodeError) as exc_info:
            g.add_node(TaskNode(id="A"))
        assert exc_info.value.node_id == "A"

    def test_edge_to_unknown_node_rejected(self):
        g = DependencyGraph()
        g.add_node(TaskNode(id="A"))
        with pytest.raises(UnknownNodeError) as exc_info:
            g.add_edge("A", "ghost")
        assert exc_info.value.node_id == "ghost"

    def test_self_loop_rejected(self):
        g = DependencyGraph()
        g.add_node(TaskNode(id="A"))
        with pytest.raises(InvalidEdgeError):
            g.add_edge("A", "A")

    def test_add_edge_is_idempotent(self):
        """同一条边添加两次，入度只增加一次."""
        g = DependencyGraph()
        g.add_node(TaskNode(id="A"))
        g.add_node(TaskNode(id="B"))
        g.add_edge("A", "B")
        once = g.in_degree("B")
        g.add_edge("A", "B")
        assert g.in_degree("B") == once == 1
        assert g.edges() == [("A", "B")]

    def test_build_from_dependencies(self):
        g = _graph(DIAMOND)
        assert set(g.edges()) == {("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")}
        assert g.in_degree("D") == 2
        assert g.get_zero_in_degree_nodes() == ["A"]
        assert g.predecessors("D") == {"B", "C"}

    def test_unknown_dependency_is_skipped(self):
        """指向图外节点的依赖被视为已满足."""
        g = _graph({"A": ["not-in-graph"]})
        assert g.in_degree("A") == 0
        assert g.edges() == []

    def test_summary(self):
        assert _graph(DIAMOND).summary() == "Graph[4 nodes, 4 edges, 1 ready]"


class TestCycleDetection:

    def test_acyclic_graph(self):
        g = _graph(DIAMOND)
        assert not g.has_cycle()
        assert g.find_cycle_nodes() == set()

    def test_two_node_cycle(self):
        """X 依赖 Y，Y 依赖 X."""
        g = _graph({"X": ["Y"], "Y": ["X"]})
        assert g.has_cycle()
        assert g.find_cycle_nodes() == {"X", "Y"}

    def test_cycle_in_disconnected_component(self):
        """循环位于与根不连通的分量中也必须被发现."""
        g = _graph({"A": [], "B": ["A"], "P": ["R"], "Q": ["P"], "R": ["Q"]})
        assert g.has_cycle()
        assert g.find_cycle_nodes() == {"P", "Q", "R"}

    def test_cycle_nodes_exclude_tail(self):
        """环外的前置节点不应出现在 cycle_nodes 中."""
        g = _graph({"start": [], "X": ["start", "Y"], "Y": ["X"]})
        assert g.find_cycle_nodes() == {"X", "Y"}


class TestTopologicalSort:

    def test_diamond_layers(self):
        layers = _graph(DIAMOND).topological_sort()
        assert layers[0] == ["A"]
        assert set(layers[1]) == {"B", "C"}
        assert layers[2] == ["D"]

    def test_layering_properties(self):
        """每个节点恰好出现一次，且每条边 (a, b) 中 a 的层号小于 b."""
        g = _graph({
            "fetch": [], "parse": ["fetch"], "lint": [], "index": ["parse", "lint"],
            "report": ["index"], "notify": ["report", "lint"],
        })
        layers = g.topological_sort()
        flat = [nid for layer in layers for nid in layer]
        assert sorted(flat) == sorted(g.nodes)
        assert len(flat) == len(set(flat))

        level = {nid: i for i, layer in enumerate(layers) for nid in layer}
        for a, b in g.edges():
            assert level[a] < level[b], f"{a} 必须排在 {b} 之前"

    def test_layer_order_follows_insertion(self):
        g = _graph({"z": [], "a": [], "m": []})
        assert g.topological_sort() == [["z", "a", "m"]]

    def test_sort_does_not_mutate_graph(self):
        g = _graph(DIAMOND)
        g.topological_sort()
        assert g.in_degree("D") == 2
        assert len(g) == 4

    def test_cyclic_graph_raises(self):
        g = _graph({"X": ["Y"], "Y": ["X"]})
        with pytest.raises(CyclicGraphError) as exc_info:
            g.topological_sort()
        assert exc_info.value.node_ids == ["X", "Y"]


class TestRemoveNode:

    def test_remove_unblocks_successors(self):
        g = _graph(DIAMOND)
        g.remove_node("A")
        assert "A" not in g
        assert g.in_degree("B") == 0
        assert g.in_degree("C") == 0
        assert g.get_zero_in_degree_nodes() == ["B", "C"]

    def test_remove_decrements_by_exactly_one(self):
        g = _graph(DIAMOND)
        g.remove_node("A")
        g.remove_node("B")
        assert g.in_degree("D") == 1, "D 仍在等待 C"

    def test_remove_never_goes_below_zero(self):
        g = _graph({"A": [], "B": ["A"]})
        g._in_degree["B"] = 0  # 人为制造不一致，验证下限保护
        g.remove_node("A")
        assert g.in_degree("B") == 0

    def test_remove_detaches_incoming_edges(self):
        g = _graph(DIAMOND)
        g.remove_node("D")
        assert g.successors("B") == set()
        assert g.successors("C") == set()

    def test_remove_absent_node_is_noop(self):
        g = _graph(DIAMOND)
        g.remove_node("ghost")
        assert len(g) == 4

    def test_reset(self):
        g = _graph(DIAMOND)
        g.reset()
        assert len(g) == 0
        assert g.edges() == []
