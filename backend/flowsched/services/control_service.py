"""Manual control surface - cancel a run, retry or stop a single node.

Cancellation is cooperative: it rewrites durable state and drops work that
has not reached a provider yet.  A call already in flight keeps its
admission slot until the provider's callback (or the slot TTL) frees it.

*user_id* scopes every operation to the caller's own runs; None is used by
internal callers that act on any run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.db.models import Execution, FlowExecution, NodeTask
from flowsched.errors import InvalidStateError, NotFoundError
from flowsched.runtime.scheduler import Scheduler
from flowsched.runtime.states import (
    CANCELLED_BY_USER,
    STOPPED_BY_USER,
    EXEC_CANCELLED,
    EXEC_FAILED,
    EXEC_PENDING,
    EXEC_RUNNING,
    EXEC_TERMINAL,
    TASK_FAILED,
    TASK_PENDING,
    TASK_PROCESSING,
    TASK_TERMINAL,
)
from flowsched.services import credit_service
from flowsched.utils.metrics import record_execution_finished
from flowsched.worker.enqueue import cancel_items, enqueue_node_execution

logger = logging.getLogger("flowsched.control")

STOPPABLE = frozenset({TASK_PENDING, TASK_PROCESSING})


async def _execution(db: AsyncSession, execution_id: str, user_id: str | None) -> Execution:
    """Load an execution; another user's run answers as not found."""
    execution = await db.get(Execution, execution_id)
    if execution is None or (user_id is not None and execution.user_id != user_id):
        raise NotFoundError(f"Execution {execution_id} not found")
    return execution


async def _task(db: AsyncSession, execution_id: str, task_id: str) -> NodeTask:
    task = await db.get(NodeTask, task_id)
    if task is None or task.execution_id != execution_id:
        raise NotFoundError(f"Task {task_id} not found in execution {execution_id}")
    return task


async def _cancel_one(db: AsyncSession, scheduler: Scheduler, execution: Execution, now: datetime) -> int:
    """Cancel *execution*; returns how many tasks were failed."""
    result = await db.execute(select(NodeTask).where(NodeTask.execution_id == execution.execution_id))
    failed = 0
    for task in result.scalars().all():
        if task.status in TASK_TERMINAL:
            continue
        # Never issued to a provider: give the credits back.
        if task.charged and not task.external_task_id:
            await credit_service.refund(
                db,
                execution.user_id,
                task.cost,
                reference_id=f"task_{task.task_id}",
                description=f"Refund for cancelled node {task.node_id}",
            )
            task.charged = False
        task.status = TASK_FAILED
        task.error_message = CANCELLED_BY_USER
        task.completed_at = now
        failed += 1

    await scheduler.admission.remove_queue_items(db, execution_id=execution.execution_id)
    await cancel_items(db, execution_id=execution.execution_id)
    await db.execute(
        update(FlowExecution)
        .where(FlowExecution.execution_id == execution.execution_id)
        .values(status=EXEC_CANCELLED, completed_at=now)
    )
    execution.status = EXEC_CANCELLED
    execution.error_message = CANCELLED_BY_USER
    execution.completed_at = now
    await db.flush()
    record_execution_finished(EXEC_CANCELLED)
    return failed


async def cancel_execution(
    db: AsyncSession,
    scheduler: Scheduler,
    execution_id: str,
    cascade_queued: bool = False,
    *,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Cancel a run and, with *cascade_queued*, its not-yet-started siblings.

    Without the cascade the remaining iterations stay pending; with iteration
    chaining on, the next one is started as if this one had finished.
    """
    execution = await _execution(db, execution_id, user_id)
    if execution.status in EXEC_TERMINAL:
        raise InvalidStateError(f"Execution is already {execution.status}")

    now = datetime.now(timezone.utc)
    cancelled = [execution.execution_id]
    tasks_failed = await _cancel_one(db, scheduler, execution, now)

    if cascade_queued:
        siblings = await db.execute(
            select(Execution).where(
                Execution.batch_id == execution.batch_id,
                Execution.execution_id != execution.execution_id,
                Execution.status == EXEC_PENDING,
                Execution.started_at.is_(None),
            )
        )
        for sibling in siblings.scalars().all():
            tasks_failed += await _cancel_one(db, scheduler, sibling, now)
            cancelled.append(sibling.execution_id)
    else:
        await scheduler.dispatcher.on_execution_finished(db, execution)

    logger.info(
        "Cancelled %d execution(s) of batch %s (%d task(s) failed)",
        len(cancelled), execution.batch_id, tasks_failed,
    )
    return {"success": True, "status": EXEC_CANCELLED, "cancelledExecutions": cancelled}


async def retry_node(
    db: AsyncSession,
    scheduler: Scheduler,
    execution_id: str,
    task_id: str,
    *,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Reset a failed task to pending and submit it again."""
    execution = await _execution(db, execution_id, user_id)
    task = await _task(db, execution_id, task_id)
    if task.status != TASK_FAILED:
        raise InvalidStateError(f"Only failed nodes can be retried (node is {task.status})")
    if execution.status == EXEC_CANCELLED:
        raise InvalidStateError("Execution was cancelled")

    await scheduler.admission.remove_queue_items(db, task_id=task.task_id)
    await cancel_items(db, task_id=task.task_id)
    task.status = TASK_PENDING
    task.external_task_id = None
    task.result_url = None
    task.output_json = None
    task.error_message = None
    task.started_at = None
    task.completed_at = None

    if execution.status == EXEC_FAILED:
        execution.status = EXEC_RUNNING
        execution.error_message = None
        execution.completed_at = None
        await db.execute(
            update(FlowExecution)
            .where(FlowExecution.execution_id == execution_id)
            .values(status=EXEC_RUNNING, completed_at=None)
        )
    await db.flush()
    await enqueue_node_execution(db, task.task_id, execution_id)
    logger.info("Retrying node %s of execution %s", task.node_id, execution_id)
    return {"success": True, "taskId": task.task_id, "status": task.status, "executionStatus": execution.status}


async def stop_node(
    db: AsyncSession,
    scheduler: Scheduler,
    execution_id: str,
    task_id: str,
    *,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Force a pending or processing task to failed.  Does not advance."""
    await _execution(db, execution_id, user_id)
    task = await _task(db, execution_id, task_id)
    if task.status not in STOPPABLE:
        raise InvalidStateError(f"Only pending or processing nodes can be stopped (node is {task.status})")

    await cancel_items(db, task_id=task.task_id)
    await scheduler.admission.remove_queue_items(db, task_id=task.task_id)
    task.status = TASK_FAILED
    task.error_message = STOPPED_BY_USER
    task.completed_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Stopped node %s of execution %s", task.node_id, execution_id)
    return {"success": True, "taskId": task.task_id, "status": task.status}
