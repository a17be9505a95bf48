"""Workflow graph model and deterministic ordering.

A workflow arrives as ``{"nodes": [...], "connections": [...]}`` where each
connection is ``{"from": {"nodeId", "portId"}, "to": {"nodeId", "portId"}}``.
``topological_order`` linearises it with Kahn's algorithm; ties resolve in
the nodes' original array order.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any

from flowsched.errors import CyclicGraphError, ValidationError


@dataclass(frozen=True)
class GraphNode:
    node_id: str
    node_type: str
    data: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class GraphEdge:
    from_node: str
    from_port: str
    to_node: str
    to_port: str

    def to_dict(self) -> dict[str, dict[str, str]]:
        return {
            "from": {"nodeId": self.from_node, "portId": self.from_port},
            "to": {"nodeId": self.to_node, "portId": self.to_port},
        }


@dataclass
class WorkflowGraph:
    nodes: list[GraphNode]
    edges: list[GraphEdge]

    def node_ids(self) -> list[str]:
        return [n.node_id for n in self.nodes]

    def get(self, node_id: str) -> GraphNode | None:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def incoming(self, node_id: str) -> list[GraphEdge]:
        return [e for e in self.edges if e.to_node == node_id]

    def entry_nodes(self) -> list[GraphNode]:
        """Nodes with no incoming edge, in input order."""
        targets = {e.to_node for e in self.edges}
        return [n for n in self.nodes if n.node_id not in targets]


def _endpoint(raw: Any, label: str) -> tuple[str, str]:
    if not isinstance(raw, dict):
        raise ValidationError(f"Connection '{label}' endpoint must be an object")
    node_id = raw.get("nodeId", raw.get("node"))
    if not node_id:
        raise ValidationError(f"Connection '{label}' endpoint is missing nodeId")
    port = raw.get("portId", raw.get("port")) or ""
    return str(node_id), str(port)


def parse_graph(raw: dict[str, Any]) -> WorkflowGraph:
    """Build a ``WorkflowGraph`` from its JSON form.

    Raises ``ValidationError`` for structurally malformed input.  Semantic
    checks (unknown node types, dangling edges) live in ``validator``.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Workflow graph must be an object")
    raw_nodes = raw.get("nodes")
    if not isinstance(raw_nodes, list) or not raw_nodes:
        raise ValidationError("Workflow graph has no nodes")

    nodes: list[GraphNode] = []
    for idx, item in enumerate(raw_nodes):
        if not isinstance(item, dict) or not item.get("id") or not item.get("type"):
            raise ValidationError(f"Node #{idx} must have an 'id' and a 'type'")
        data = item.get("data") or {}
        if not isinstance(data, dict):
            raise ValidationError(f"Node '{item['id']}' data must be an object")
        nodes.append(GraphNode(node_id=str(item["id"]), node_type=str(item["type"]), data=data))

    raw_edges = raw.get("connections", raw.get("edges")) or []
    if not isinstance(raw_edges, list):
        raise ValidationError("Workflow connections must be a list")

    edges: list[GraphEdge] = []
    for item in raw_edges:
        if not isinstance(item, dict):
            raise ValidationError("Each connection must be an object")
        from_node, from_port = _endpoint(item.get("from"), "from")
        to_node, to_port = _endpoint(item.get("to"), "to")
        edges.append(GraphEdge(from_node, from_port, to_node, to_port))

    return WorkflowGraph(nodes=nodes, edges=edges)


def topological_order(graph: WorkflowGraph) -> list[GraphNode]:
    """Return the nodes in a valid execution order.

    Kahn's algorithm: seed the ready queue with zero in-degree nodes in input
    order, pop, emit, and release successors as their in-degree hits zero.
    Raises ``CyclicGraphError`` naming the nodes that could not be ordered.
    """
    in_degree: dict[str, int] = {n.node_id: 0 for n in graph.nodes}
    successors: dict[str, list[str]] = {n.node_id: [] for n in graph.nodes}
    for edge in graph.edges:
        if edge.from_node not in in_degree or edge.to_node not in in_degree:
            continue
        successors[edge.from_node].append(edge.to_node)
        in_degree[edge.to_node] += 1

    by_id = {n.node_id: n for n in graph.nodes}
    ready = deque(n.node_id for n in graph.nodes if in_degree[n.node_id] == 0)
    ordered: list[GraphNode] = []

    while ready:
        node_id = ready.popleft()
        ordered.append(by_id[node_id])
        for succ in successors[node_id]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                ready.append(succ)

    if len(ordered) != len(graph.nodes):
        emitted = {n.node_id for n in ordered}
        raise CyclicGraphError([n.node_id for n in graph.nodes if n.node_id not in emitted])
    return ordered
