"""Read-only status view of an execution and its repeat batch."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.db.models import AdmissionQueueItem, Execution, FlowExecution, NodeTask
from flowsched.errors import NotFoundError
from flowsched.runtime.states import EXEC_PENDING, TASK_QUEUED, TASK_TERMINAL
from flowsched.services.admission_service import QUEUE_PENDING, QUEUE_PROCESSING


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def progress(iteration: int, total_iterations: int, done: int, total: int) -> float:
    """Overall batch progress in [0, 1] for one iteration's task counts."""
    if total_iterations <= 0:
        return 0.0
    fraction = done / total if total else 1.0
    return round(((iteration - 1) + fraction) / total_iterations, 4)


async def get_status(db: AsyncSession, execution_id: str, user_id: str | None = None) -> dict[str, Any]:
    execution = await db.get(Execution, execution_id)
    if execution is None or (user_id is not None and execution.user_id != user_id):
        raise NotFoundError(f"Execution {execution_id} not found")

    tasks = list((await db.execute(
        select(NodeTask).where(NodeTask.execution_id == execution_id).order_by(NodeTask.position)
    )).scalars().all())
    waiting = set((await db.execute(
        select(AdmissionQueueItem.task_id).where(
            AdmissionQueueItem.execution_id == execution_id,
            AdmissionQueueItem.status.in_([QUEUE_PENDING, QUEUE_PROCESSING]),
        )
    )).scalars().all())
    flows = list((await db.execute(
        select(FlowExecution).where(FlowExecution.execution_id == execution_id)
    )).scalars().all())
    batch = list((await db.execute(
        select(Execution).where(Execution.batch_id == execution.batch_id).order_by(Execution.iteration)
    )).scalars().all())

    done = sum(1 for t in tasks if t.status in TASK_TERMINAL)
    queued_siblings = [
        e.execution_id for e in batch
        if e.execution_id != execution_id and e.status == EXEC_PENDING and e.started_at is None
    ]

    return {
        "executionId": execution.execution_id,
        "workflowId": execution.workflow_id,
        "batchId": execution.batch_id,
        "status": execution.status,
        "iteration": execution.iteration,
        "totalIterations": execution.total_iterations,
        "progress": progress(execution.iteration, execution.total_iterations, done, len(tasks)),
        "completedNodes": done,
        "totalNodes": len(tasks),
        "resultUrl": execution.result_url,
        "error": execution.error_message,
        "outputs": json.loads(execution.output_json) if execution.output_json else None,
        "nodes": [
            {
                "taskId": t.task_id,
                "nodeId": t.node_id,
                "nodeType": t.node_type,
                "status": t.status,
                "queuedForAdmission": t.status == TASK_QUEUED and t.task_id in waiting,
                "resultUrl": t.result_url,
                "output": json.loads(t.output_json) if t.output_json else None,
                "error": t.error_message,
                "startedAt": _iso(t.started_at),
                "completedAt": _iso(t.completed_at),
            }
            for t in tasks
        ],
        "flows": [
            {
                "flowId": f.flow_id,
                "flowName": f.flow_name,
                "priority": f.priority,
                "status": f.status,
                "completedAt": _iso(f.completed_at),
            }
            for f in flows
        ],
        "iterations": [
            {
                "executionId": e.execution_id,
                "iteration": e.iteration,
                "status": e.status,
                "resultUrl": e.result_url,
                "error": e.error_message,
            }
            for e in batch
        ],
        "queuedExecutions": queued_siblings,
        "queuedCount": len(queued_siblings),
        "createdAt": _iso(execution.created_at),
        "startedAt": _iso(execution.started_at),
        "completedAt": _iso(execution.completed_at),
    }
