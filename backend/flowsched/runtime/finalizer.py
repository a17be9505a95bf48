"""Execution finalizer - aggregates task outputs into the Execution row."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.db.models import Execution, FlowExecution, NodeTask
from flowsched.runtime.states import (
    EXEC_COMPLETED,
    EXEC_FAILED,
    EXEC_TERMINAL,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_TERMINAL,
)
from flowsched.utils.metrics import record_execution_finished

logger = logging.getLogger("flowsched.runtime.finalizer")


def _loads(raw: str | None) -> Any:
    return json.loads(raw) if raw else None


def aggregate_outputs(tasks: list[NodeTask]) -> tuple[dict[str, Any], str | None]:
    """Return ``(output_map, last_result_url)`` for *tasks* in graph order."""
    outputs: dict[str, Any] = {}
    all_results: list[dict[str, Any]] = []
    last_result: str | None = None
    for task in tasks:
        output = _loads(task.output_json) or {}
        outputs[task.node_id] = {
            "node_type": task.node_type,
            "status": task.status,
            "result_url": task.result_url,
            "output": output,
        }
        if task.result_url:
            last_result = task.result_url
            all_results.append({"node_id": task.node_id, "result_url": task.result_url})
    return {"outputs": outputs, "all_results": all_results}, last_result


class Finalizer:
    async def _tasks(self, db: AsyncSession, execution_id: str) -> list[NodeTask]:
        result = await db.execute(
            select(NodeTask).where(NodeTask.execution_id == execution_id).order_by(NodeTask.position)
        )
        return list(result.scalars().all())

    async def _close_flows(self, db: AsyncSession, execution_id: str, status: str, now: datetime) -> None:
        await db.execute(
            update(FlowExecution)
            .where(FlowExecution.execution_id == execution_id)
            .values(status=status, completed_at=now)
        )

    async def finalize(self, db: AsyncSession, execution: Execution) -> str | None:
        """Close *execution* if every task is terminal.

        Completed only when every task completed; otherwise failed, keeping the
        last non-null result as partial output.  Returns the new status, or
        None when tasks are still outstanding or the execution is already
        closed.
        """
        if execution.status in EXEC_TERMINAL:
            return None
        tasks = await self._tasks(db, execution.execution_id)
        if any(t.status not in TASK_TERMINAL for t in tasks):
            return None

        now = datetime.now(timezone.utc)
        output, last_result = aggregate_outputs(tasks)
        all_completed = all(t.status == TASK_COMPLETED for t in tasks)

        execution.status = EXEC_COMPLETED if all_completed else EXEC_FAILED
        execution.output_json = json.dumps(output, default=str)
        execution.result_url = last_result
        execution.completed_at = now
        if not all_completed and not execution.error_message:
            failed = next((t for t in tasks if t.status == TASK_FAILED), None)
            execution.error_message = failed.error_message if failed else "One or more nodes failed"
        await self._close_flows(db, execution.execution_id, execution.status, now)
        await db.flush()

        record_execution_finished(execution.status)
        logger.info(
            "Execution %s finalized as %s (%d task(s), result=%s)",
            execution.execution_id, execution.status, len(tasks), last_result,
        )
        return execution.status

    async def fail(self, db: AsyncSession, execution: Execution, error: str | None) -> bool:
        """Mark *execution* failed with *error*, keeping outputs gathered so far.

        Returns False when the execution was already closed.
        """
        if execution.status in EXEC_TERMINAL:
            return False
        now = datetime.now(timezone.utc)
        tasks = await self._tasks(db, execution.execution_id)
        output, last_result = aggregate_outputs(tasks)
        execution.status = EXEC_FAILED
        execution.error_message = error
        execution.output_json = json.dumps(output, default=str)
        execution.result_url = last_result
        execution.completed_at = now
        await self._close_flows(db, execution.execution_id, EXEC_FAILED, now)
        await db.flush()
        record_execution_finished(EXEC_FAILED)
        logger.warning("Execution %s failed: %s", execution.execution_id, error)
        return True
