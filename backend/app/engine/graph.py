"""
Graph traversal primitives.

Pure functions over one run's node / edge set.  The graph is loaded once
per coordinator drain and treated as immutable while the drain runs.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from app.core.constants import DEFAULT_PORT


@dataclass(frozen=True)
class Node:
    id: str
    kind: str
    name: str | None = None
    config: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class Edge:
    source_node_id: str
    target_node_id: str
    source_port: str = DEFAULT_PORT
    target_port: str | None = None


@dataclass
class Step:
    """One unit of work on a document's inner queue."""

    node_id: str
    metadata: dict[str, Any]
    target_port: str | None = None


class WorkflowGraph:
    """Node index plus adjacency keyed by source node id."""

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> None:
        self.nodes: dict[str, Node] = {node.id: node for node in nodes}
        self.edges: list[Edge] = list(edges)
        self.adjacency: dict[str, list[Edge]] = build_adjacency(self.edges)

    def get(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        return self.adjacency.get(node_id, [])

    def successors(self, node_id: str, port: str) -> list[Edge]:
        return successors(self.adjacency, node_id, port)

    def entry_nodes(self) -> list[Node]:
        return entry_nodes(self.nodes.values(), self.edges)

    def initial_steps(self, metadata: dict[str, Any], start_node_id: str | None = None) -> list[Step]:
        return initial_steps(self, metadata, start_node_id)

    def topological_order(self) -> list[str]:
        return topological_order(self.nodes.values(), self.edges)


def build_adjacency(edges: Iterable[Edge]) -> dict[str, list[Edge]]:
    adjacency: dict[str, list[Edge]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source_node_id, []).append(edge)
    return adjacency


def entry_nodes(nodes: Iterable[Node], edges: Iterable[Edge]) -> list[Node]:
    """Nodes with no incoming edge, in declaration order."""
    has_incoming = {edge.target_node_id for edge in edges}
    return [node for node in nodes if node.id not in has_incoming]


def successors(adjacency: dict[str, list[Edge]], node_id: str, port: str) -> list[Edge]:
    """Edges to follow for ``port``; the default port follows every edge."""
    edges = adjacency.get(node_id, [])
    if port == DEFAULT_PORT:
        return list(edges)
    return [edge for edge in edges if edge.source_port == port]


def initial_steps(
    graph: WorkflowGraph,
    metadata: dict[str, Any],
    start_node_id: str | None = None,
) -> list[Step]:
    """Seed queue for a new execution: its start override, else every entry node."""
    if start_node_id:
        return [Step(node_id=start_node_id, metadata=dict(metadata))]
    return [Step(node_id=node.id, metadata=dict(metadata)) for node in graph.entry_nodes()]


def steps_for(edges: Iterable[Edge], metadata: dict[str, Any]) -> list[Step]:
    return [
        Step(node_id=edge.target_node_id, metadata=dict(metadata), target_port=edge.target_port)
        for edge in edges
    ]


def topological_order(nodes: Iterable[Node], edges: Iterable[Edge]) -> list[str]:
    """Kahn's algorithm; nodes in cycles or unreachable are appended in declaration order."""
    nodes = list(nodes)
    in_degree = {node.id: 0 for node in nodes}
    adjacency: dict[str, list[str]] = {node.id: [] for node in nodes}

    for edge in edges:
        if edge.source_node_id in adjacency:
            adjacency[edge.source_node_id].append(edge.target_node_id)
        in_degree[edge.target_node_id] = in_degree.get(edge.target_node_id, 0) + 1

    queue = deque(node.id for node in nodes if in_degree[node.id] == 0)
    order: list[str] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for neighbour in adjacency.get(node_id, []):
            in_degree[neighbour] -= 1
            if in_degree[neighbour] == 0 and neighbour in adjacency:
                queue.append(neighbour)

    seen = set(order)
    order.extend(node.id for node in nodes if node.id not in seen)
    return order
