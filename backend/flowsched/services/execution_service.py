"""Execution orchestrator - turns a start request into Execution rows.

A start request names a saved workflow or carries an inline graph.  The graph
is validated and ordered once; the total cost for every iteration is checked
against the caller's balance before anything is written.  All ``R``
iterations are created up front under one ``batch_id``; only the first is
started.  Later iterations are started one by one as their predecessor
finishes (see ``Dispatcher.on_execution_finished``).
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.compiler.graph import GraphNode, WorkflowGraph, parse_graph, topological_order
from flowsched.compiler.validator import ensure_valid
from flowsched.db.models import Execution, FlowExecution, NodeTask, Workflow
from flowsched.errors import InsufficientCredits, NotFoundError, ValidationError
from flowsched.registry import SchedulerConfig
from flowsched.runtime.scheduler import Scheduler
from flowsched.runtime.states import EXEC_PENDING, TASK_PENDING
from flowsched.services import credit_service
from flowsched.utils.metrics import record_execution_started

logger = logging.getLogger("flowsched.orchestrator")

FLOW_ENTRY_TYPE = "start-flow"


# ── Workflows ───────────────────────────────────────────────────


async def save_workflow(db: AsyncSession, user_id: str, name: str, graph: dict[str, Any]) -> Workflow:
    parse_graph(graph)
    workflow = Workflow(user_id=user_id, name=name, graph_json=json.dumps(graph))
    db.add(workflow)
    await db.flush()
    return workflow


async def get_workflow(db: AsyncSession, workflow_id: str, user_id: str | None = None) -> Workflow:
    workflow = await db.get(Workflow, workflow_id)
    if workflow is None or (user_id is not None and workflow.user_id != user_id):
        raise NotFoundError(f"Workflow {workflow_id} not found")
    return workflow


# ── Helpers ─────────────────────────────────────────────────────


def resolve_repeat_count(graph: WorkflowGraph, requested: int, config: SchedulerConfig) -> int:
    """The first trigger node, in input order, decides the repeat count.

    Its setting wins over *requested* when repeat is enabled on it; later
    triggers are never consulted.  The result is clamped to the max.
    """
    count = requested
    for node in graph.nodes:
        if not config.node_type(node.node_type).is_trigger:
            continue
        if node.data.get("enableRepeat"):
            try:
                trigger_count = int(node.data.get("repeatCount", 1))
            except (TypeError, ValueError):
                trigger_count = 1
            if trigger_count > 1:
                count = trigger_count
        break
    return max(1, min(int(count), config.max_repeat_count))


def total_cost(ordered: list[GraphNode], config: SchedulerConfig) -> float:
    """Cost of one iteration of the graph."""
    return sum(config.unit_cost(node.node_type) for node in ordered)


def _merge_inputs(node: GraphNode, overrides: dict[str, Any] | None) -> dict[str, Any]:
    data = dict(node.data)
    extra = (overrides or {}).get(node.node_id)
    if isinstance(extra, dict):
        data.update(extra)
    return data


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _flow_entry(graph: WorkflowGraph) -> GraphNode | None:
    for node in graph.nodes:
        if node.node_type == FLOW_ENTRY_TYPE:
            return node
    entries = graph.entry_nodes()
    return entries[0] if entries else None


def _create_tasks(
    scheduler: Scheduler,
    execution: Execution,
    ordered: list[GraphNode],
    overrides: dict[str, Any] | None,
) -> list[NodeTask]:
    tasks = []
    for position, node in enumerate(ordered):
        data, ciphertext, digest = scheduler.credentials.extract_inline(_merge_inputs(node, overrides))
        tasks.append(NodeTask(
            execution_id=execution.execution_id,
            node_id=node.node_id,
            node_type=node.node_type,
            position=position,
            status=TASK_PENDING,
            input_json=json.dumps(data, default=str),
            credential_ciphertext=ciphertext,
            credential_hash=digest,
            cost=scheduler.config.unit_cost(node.node_type),
            charged=False,
        ))
    return tasks


# ── Start ───────────────────────────────────────────────────────


async def start_execution(
    db: AsyncSession,
    scheduler: Scheduler,
    *,
    user_id: str,
    graph: dict[str, Any] | None = None,
    workflow_id: str | None = None,
    repeat_count: int = 1,
    inputs: dict[str, Any] | None = None,
    flow_id: str | None = None,
) -> dict[str, Any]:
    """Create and start a (possibly repeated) run of a workflow graph."""
    config = scheduler.config
    if graph is None:
        if not workflow_id:
            raise ValidationError("Either a workflow id or an inline graph is required")
        workflow = await get_workflow(db, workflow_id, user_id)
        graph = json.loads(workflow.graph_json)
    if repeat_count is None or int(repeat_count) < 1:
        raise ValidationError("repeatCount must be at least 1")

    parsed = parse_graph(graph)
    ensure_valid(parsed, config)
    ordered = topological_order(parsed)

    iterations = resolve_repeat_count(parsed, repeat_count, config)
    cost = total_cost(ordered, config)
    if cost > 0:
        required = cost * iterations
        available = await credit_service.available_balance(db, user_id)
        if available < required:
            raise InsufficientCredits(required=required, available=available, iterations=iterations)

    batch_id = str(uuid.uuid4())
    edges_json = json.dumps([e.to_dict() for e in parsed.edges])
    input_json = json.dumps(inputs or {}, default=str)
    executions: list[Execution] = []
    for iteration in range(1, iterations + 1):
        execution = Execution(
            user_id=user_id,
            workflow_id=workflow_id,
            batch_id=batch_id,
            status=EXEC_PENDING,
            iteration=iteration,
            total_iterations=iterations,
            edges_json=edges_json,
            input_json=input_json,
        )
        db.add(execution)
        await db.flush()
        db.add_all(_create_tasks(scheduler, execution, ordered, inputs))
        executions.append(execution)

    entry = _flow_entry(parsed) if flow_id else None
    if flow_id:
        priority = _as_int(entry.data.get("priority") if entry else None)
        for execution in executions:
            db.add(FlowExecution(
                execution_id=execution.execution_id,
                flow_id=flow_id,
                flow_name=(entry.data.get("flowName") if entry else None) or flow_id,
                entry_node_id=entry.node_id if entry else None,
                priority=priority,
                status=EXEC_PENDING,
            ))
    await db.flush()

    first = executions[0]
    await scheduler.dispatcher.start_execution(db, first)
    record_execution_started()
    logger.info(
        "Started execution %s (%d node(s), %d iteration(s), batch %s, cost %.2f/iteration)",
        first.execution_id, len(ordered), iterations, batch_id, cost,
    )
    return {
        "executionId": first.execution_id,
        "executionIds": [e.execution_id for e in executions],
        "batchId": batch_id,
        "status": first.status,
        "nodeCount": len(ordered),
        "totalIterations": iterations,
    }
