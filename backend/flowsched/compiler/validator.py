"""Static checks on a parsed workflow graph before any row is created."""

from __future__ import annotations

from flowsched.compiler.graph import WorkflowGraph
from flowsched.errors import UnknownNodeTypeError, ValidationError
from flowsched.registry import SchedulerConfig


def validate_graph(graph: WorkflowGraph, config: SchedulerConfig) -> list[str]:
    """Return a list of error strings. Empty list means valid."""
    errors: list[str] = []

    seen: set[str] = set()
    for node in graph.nodes:
        if node.node_id in seen:
            errors.append(f"Duplicate node id '{node.node_id}'.")
        seen.add(node.node_id)
        try:
            config.node_type(node.node_type)
        except UnknownNodeTypeError as exc:
            errors.append(f"Node '{node.node_id}': {exc.message}.")

    for edge in graph.edges:
        if edge.from_node not in seen:
            errors.append(f"Connection from unknown node '{edge.from_node}'.")
        if edge.to_node not in seen:
            errors.append(f"Connection to unknown node '{edge.to_node}'.")

    return errors


def ensure_valid(graph: WorkflowGraph, config: SchedulerConfig) -> None:
    errors = validate_graph(graph, config)
    if errors:
        raise ValidationError("Workflow graph is invalid", errors=errors)
