"""
DependencyGraph - Directed graph of TaskNodes with cycle detection and layered ordering.
DependencyGraph —— 带循环检测与分层拓扑排序的任务有向图。

The graph holds:
  - nodes:      dict of TaskNode keyed by id
  - adjacency:  id -> set of successor ids (dependency -> dependent)
  - in_degree:  id -> number of unresolved direct dependencies

图包含：
  - nodes:      TaskNode 字典（key 为节点 ID）
  - adjacency:  邻接表，id -> 后继节点集合（依赖方向：被依赖者 -> 依赖者）
  - in_degree:  入度表，id -> 尚未完成的直接依赖数量

Key operations:
  - build_from_dependencies(): derive edges from each node's declared dependencies
  - has_cycle() / find_cycle_nodes(): three-color DFS
  - topological_sort(): Kahn's algorithm producing parallel layers
  - remove_node(): incremental shrink as tasks complete (unblocks successors)

核心操作：
  - build_from_dependencies():  根据节点声明的依赖构建边
  - has_cycle() / find_cycle_nodes(): 三色标记 DFS 检测循环
  - topological_sort():         Kahn 算法生成可并行执行的分层
  - remove_node():              任务完成后增量移除节点，解除后继的阻塞
"""

from __future__ import annotations

import logging
from typing import Iterator

from dag.errors import CyclicGraphError, DuplicateNodeError, InvalidEdgeError, UnknownNodeError
from schema import TaskNode

logger = logging.getLogger(__name__)

# DFS 颜色标记
_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyGraph:
    """
    Mutable dependency graph, owned by one Scheduler for one run.
    可变依赖图，在一次运行中由一个 Scheduler 独占。

    Invariants:
      - edge (a, b) exists only if both a and b are nodes of the graph
      - no self-loops
      - in_degree[b] == number of a with b in adjacency[a]

    不变量：
      - 边 (a, b) 的两个端点都必须存在于图中
      - 不允许自环
      - in_degree[b] 恒等于指向 b 的边数
    """

    def __init__(self) -> None:
        self._nodes: dict[str, TaskNode] = {}
        self._adjacency: dict[str, set[str]] = {}   # 出边邻接表
        self._in_degree: dict[str, int] = {}        # 入度表

    def reset(self) -> None:
        """Drop all nodes and edges. / 清空所有节点和边。"""
        self._nodes = {}
        self._adjacency = {}
        self._in_degree = {}

    # ------------------------------------------------------------------
    # Construction
    # 构图
    # ------------------------------------------------------------------

    def add_node(self, node: TaskNode) -> None:
        """
        Add a node. Raises DuplicateNodeError if the id is already present.
        添加节点；ID 已存在时抛出 DuplicateNodeError。
        """
        if node.id in self._nodes:
            raise DuplicateNodeError(node.id)

        self._nodes[node.id] = node
        self._adjacency[node.id] = set()
        self._in_degree[node.id] = 0
        logger.debug("[DAG] Node added: %s", node.id)

    def add_edge(self, from_id: str, to_id: str) -> None:
        """
        Add an edge from_id -> to_id, meaning `to_id` depends on `from_id`.
        添加边 from_id -> to_id，表示 to_id 依赖 from_id。

        Idempotent: an existing edge is not counted twice in the in-degree.
        幂等：重复添加同一条边不会重复增加入度。
        """
        if from_id not in self._nodes:
            raise UnknownNodeError(from_id)
        if to_id not in self._nodes:
            raise UnknownNodeError(to_id)
        if from_id == to_id:
            raise InvalidEdgeError(from_id, to_id)

        successors = self._adjacency[from_id]
        if to_id in successors:
            logger.debug("[DAG] Edge %s -> %s already exists, skipping", from_id, to_id)
            return

        successors.add(to_id)
        self._in_degree[to_id] += 1
        logger.debug("[DAG] Edge added: %s -> %s", from_id, to_id)

    def build_from_dependencies(self) -> None:
        """
        Add a dependency -> dependent edge for every declared dependency.
        为每个声明的依赖添加「被依赖者 -> 依赖者」方向的边。

        Dependency ids that are not nodes of this graph are skipped: they are
        treated as prerequisites satisfied outside this run.
        不在图中的依赖 ID 会被跳过，视为本次运行之外已满足的前置条件。
        """
        for node_id, node in self._nodes.items():
            for dep_id in sorted(node.dependencies):
                if dep_id not in self._nodes:
                    logger.debug("[DAG] %s depends on unknown node '%s', treating as satisfied", node_id, dep_id)
                    continue
                self.add_edge(dep_id, node_id)

    # ------------------------------------------------------------------
    # Queries
    # 查询
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> TaskNode | None:
        return self._nodes.get(node_id)

    @property
    def nodes(self) -> dict[str, TaskNode]:
        """Read-only copy of the node map. / 节点表的副本。"""
        return dict(self._nodes)

    def node_count(self) -> int:
        return len(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def edges(self) -> list[tuple[str, str]]:
        """All (from, to) edges. / 返回所有边。"""
        return [(src, dst) for src, dsts in self._adjacency.items() for dst in dsts]

    def successors(self, node_id: str) -> set[str]:
        if node_id not in self._nodes:
            raise UnknownNodeError(node_id)
        return set(self._adjacency[node_id])

    def predecessors(self, node_id: str) -> set[str]:
        if node_id not in self._nodes:
            raise UnknownNodeError(node_id)
        return {src for src, dsts in self._adjacency.items() if node_id in dsts}

    def in_degree(self, node_id: str) -> int:
        if node_id not in self._nodes:
            raise UnknownNodeError(node_id)
        return self._in_degree[node_id]

    def get_zero_in_degree_nodes(self) -> list[str]:
        """
        Ids with no unresolved dependency, in insertion order.
        返回入度为 0 的节点 ID（按插入顺序），即当前可立即执行的任务。
        """
        return [nid for nid, deg in self._in_degree.items() if deg == 0]

    # ------------------------------------------------------------------
    # Graph algorithms
    # 图算法
    # ------------------------------------------------------------------

    def _find_cycle(self) -> list[str] | None:
        """
        Three-color DFS over every component. Returns the node ids of the
        first cycle found (path slice from the repeated ancestor), or None.

        对所有连通分量做三色标记 DFS。
        找到回边时，从 DFS 路径中第一个重复祖先处切片得到环上的节点。
        使用显式栈，避免深图触发递归上限。
        """
        color = {nid: _WHITE for nid in self._nodes}
        for root in self._nodes:
            if color[root] != _WHITE:
                continue
            color[root] = _GRAY
            path = [root]
            stack: list[Iterator[str]] = [iter(self._adjacency[root])]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    color[path.pop()] = _BLACK
                    continue
                if color[nxt] == _GRAY:
                    # 回边：指向当前递归栈中的祖先
                    return path[path.index(nxt):]
                if color[nxt] == _WHITE:
                    color[nxt] = _GRAY
                    path.append(nxt)
                    stack.append(iter(self._adjacency[nxt]))
        return None

    def has_cycle(self) -> bool:
        """True if any back-edge into the active DFS path exists."""
        return self._find_cycle() is not None

    def find_cycle_nodes(self) -> set[str]:
        """
        Ids forming at least one cycle; empty set for an acyclic graph.
        返回构成（至少一个）环的节点 ID 集合；无环时返回空集合。
        """
        cycle = self._find_cycle()
        return set(cycle) if cycle else set()

    def topological_sort(self) -> list[list[str]]:
        """
        Kahn's algorithm producing layers.
        Kahn 算法：生成分层执行顺序，同一层内的节点没有依赖关系，可并行执行。

        Works on a copy of the in-degree table; the graph itself is not
        modified. Raises CyclicGraphError if the graph has a cycle.
        在入度表副本上计算，不修改图本身；若存在循环则抛出 CyclicGraphError。
        """
        cycle = self._find_cycle()
        if cycle is not None:
            logger.error("[DAG] Cannot sort a cyclic graph: %s", cycle)
            raise CyclicGraphError(cycle)

        in_degree = dict(self._in_degree)
        layers: list[list[str]] = []

        while in_degree:
            layer = [nid for nid, deg in in_degree.items() if deg == 0]
            if not layer:
                raise CyclicGraphError(in_degree.keys())

            for nid in layer:
                del in_degree[nid]
                # 更新后继节点的入度
                for succ in self._adjacency[nid]:
                    if succ in in_degree:
                        in_degree[succ] -= 1
            layers.append(layer)

        logger.debug("[DAG] Topological sort produced %d layers", len(layers))
        return layers

    # ------------------------------------------------------------------
    # Incremental mutation
    # 增量变更
    # ------------------------------------------------------------------

    def remove_node(self, node_id: str) -> None:
        """
        Remove a node, decrementing the in-degree of each successor (never
        below zero) and detaching it from every adjacency set. No-op if absent.

        移除节点：后继节点入度各减 1（不低于 0），并从所有邻接表中摘除。
        节点不存在时不做任何操作。任务完成时调用，无需重新拓扑排序。
        """
        if node_id not in self._nodes:
            return

        for succ in self._adjacency[node_id]:
            if self._in_degree.get(succ, 0) > 0:
                self._in_degree[succ] -= 1

        for dsts in self._adjacency.values():
            dsts.discard(node_id)

        del self._nodes[node_id]
        del self._adjacency[node_id]
        del self._in_degree[node_id]
        logger.debug("[DAG] Node removed: %s", node_id)

    # ------------------------------------------------------------------
    # Display helpers
    # 展示辅助方法
    # ------------------------------------------------------------------

    def summary(self) -> str:
        """
        One-line summary for logging, e.g. Graph[4 nodes, 4 edges, 1 ready]
        生成单行摘要，用于日志输出。
        """
        edge_count = sum(len(d) for d in self._adjacency.values())
        ready = len(self.get_zero_in_degree_nodes())
        return f"Graph[{len(self._nodes)} nodes, {edge_count} edges, {ready} ready]"
