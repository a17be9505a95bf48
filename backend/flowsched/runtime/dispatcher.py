"""Task dispatcher - moves an execution forward one task at a time.

``advance`` is the producer side: it picks the first pending task (graph
order), flips it to ``queued`` and puts a ``node_execution`` work item on the
durable queue.  ``run_task`` is the consumer side, called by the worker for
that item: it wires upstream outputs into the task's input, debits the node
cost, runs the node executor and records the outcome.  ``drain_scope`` turns
a freed admission slot into a work item for the next queued call.

``advance`` and ``run_task`` are idempotent.  ``advance`` never dispatches
while another task of the same execution is queued or processing, and the
pending→queued flip is a guarded UPDATE, so redundant calls (duplicate
callbacks, a poll racing a webhook) cannot double-dispatch.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.db.models import AdmissionQueueItem, Execution, FlowExecution, NodeTask, as_utc
from flowsched.errors import InsufficientCredits, NotFoundError, ProviderError, SchedulerError
from flowsched.registry import Provider, SchedulerConfig
from flowsched.runtime.finalizer import Finalizer
from flowsched.runtime.node_executor import NodeExecutor, NodeOutcome, NodeResult
from flowsched.runtime.states import (
    EXEC_PENDING,
    EXEC_RUNNING,
    EXEC_TERMINAL,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_IN_FLIGHT,
    TASK_PENDING,
    TASK_PROCESSING,
    TASK_QUEUED,
    TASK_TERMINAL,
)
from flowsched.services import credit_service
from flowsched.utils.logger import bind_execution_context
from flowsched.utils.metrics import record_task_dispatched
from flowsched.worker.enqueue import enqueue_node_execution, enqueue_status_poll

logger = logging.getLogger("flowsched.runtime.dispatcher")

# advance() outcomes
DISPATCHED = "dispatched"
IN_FLIGHT = "in_flight"
BLOCKED = "blocked"
FINALIZED = "finalized"
IDLE = "idle"


class Dispatcher:
    def __init__(self, config: SchedulerConfig, executor: NodeExecutor, finalizer: Finalizer):
        self.config = config
        self.executor = executor
        self.finalizer = finalizer

    async def _tasks(self, db: AsyncSession, execution_id: str) -> list[NodeTask]:
        result = await db.execute(
            select(NodeTask)
            .where(NodeTask.execution_id == execution_id)
            .order_by(NodeTask.position, NodeTask.created_at)
        )
        return list(result.scalars().all())

    # ── Producer side ───────────────────────────────────────────

    async def advance(self, db: AsyncSession, execution_id: str) -> str:
        """Dispatch the next pending task of *execution_id*, or finalize it."""
        execution = await db.get(Execution, execution_id)
        if execution is None or execution.status in EXEC_TERMINAL:
            return IDLE

        tasks = await self._tasks(db, execution_id)
        if any(t.status in TASK_IN_FLIGHT for t in tasks):
            return IN_FLIGHT

        pending = [t for t in tasks if t.status == TASK_PENDING]
        if not pending:
            status = await self.finalizer.finalize(db, execution)
            if status is not None:
                await self.on_execution_finished(db, execution)
            return FINALIZED

        if any(t.status == TASK_FAILED for t in tasks):
            # A failed upstream node must be retried or the run cancelled.
            return BLOCKED

        task = pending[0]
        claimed = await db.execute(
            update(NodeTask)
            .where(NodeTask.task_id == task.task_id, NodeTask.status == TASK_PENDING)
            .values(status=TASK_QUEUED)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return IN_FLIGHT
        task.status = TASK_QUEUED
        await enqueue_node_execution(db, task.task_id, execution_id)
        record_task_dispatched(task.node_type)
        logger.info(
            "Dispatched node %s (%s) of execution %s",
            task.node_id, task.node_type, execution_id,
        )
        return DISPATCHED

    async def start_execution(self, db: AsyncSession, execution: Execution) -> str:
        """Mark a not-yet-started execution running and dispatch its first task."""
        execution.status = EXEC_RUNNING
        execution.started_at = datetime.now(timezone.utc)
        await db.execute(
            update(FlowExecution)
            .where(FlowExecution.execution_id == execution.execution_id)
            .values(status=EXEC_RUNNING)
        )
        await db.flush()
        return await self.advance(db, execution.execution_id)

    async def start_next_iteration(self, db: AsyncSession, execution: Execution) -> Execution | None:
        """Start the next never-started iteration of *execution*'s batch."""
        result = await db.execute(
            select(Execution)
            .where(
                Execution.batch_id == execution.batch_id,
                Execution.status == EXEC_PENDING,
                Execution.started_at.is_(None),
            )
            .order_by(Execution.iteration)
            .limit(1)
        )
        nxt = result.scalars().first()
        if nxt is None:
            return None
        logger.info(
            "Starting iteration %d/%d of batch %s (execution %s)",
            nxt.iteration, nxt.total_iterations, nxt.batch_id, nxt.execution_id,
        )
        await self.start_execution(db, nxt)
        return nxt

    async def on_execution_finished(self, db: AsyncSession, execution: Execution) -> None:
        if self.config.chain_repeat_iterations:
            await self.start_next_iteration(db, execution)

    # ── Failure path (shared with completion ingest) ────────────

    async def fail_task(
        self,
        db: AsyncSession,
        execution: Execution,
        task: NodeTask,
        error: str,
        *,
        refund: bool = True,
    ) -> None:
        """Fail *task* and its execution; refund the node cost if charged."""
        task.status = TASK_FAILED
        task.error_message = error
        task.completed_at = datetime.now(timezone.utc)
        if refund and task.charged and task.cost > 0:
            await credit_service.refund(
                db,
                execution.user_id,
                task.cost,
                reference_id=f"task_{task.task_id}",
                description=f"Refund for failed node {task.node_id}",
            )
            task.charged = False
        await db.flush()
        if await self.finalizer.fail(db, execution, error):
            await self.on_execution_finished(db, execution)

    # ── Consumer side ───────────────────────────────────────────

    async def gather_inputs(self, db: AsyncSession, execution: Execution, task: NodeTask) -> dict[str, Any]:
        """The task's own data overlaid with outputs of completed upstream nodes.

        Each incoming edge maps to the target port: the upstream result URL
        when it has one, else the upstream output at the source port.
        """
        inputs: dict[str, Any] = json.loads(task.input_json) if task.input_json else {}
        edges = json.loads(execution.edges_json) if execution.edges_json else []
        incoming = [e for e in edges if e["to"]["nodeId"] == task.node_id]
        if not incoming:
            return inputs

        upstream = {
            t.node_id: t
            for t in await self._tasks(db, execution.execution_id)
            if t.status == TASK_COMPLETED
        }
        for edge in incoming:
            source = upstream.get(edge["from"]["nodeId"])
            if source is None:
                continue
            output = json.loads(source.output_json) if source.output_json else {}
            value = source.result_url or output.get(edge["from"]["portId"])
            if value is not None:
                inputs[edge["to"]["portId"]] = value
        return inputs

    async def _priority(self, db: AsyncSession, execution_id: str) -> int:
        """Admission queue priority: the highest priority of the execution's flows."""
        result = await db.execute(
            select(func.max(FlowExecution.priority)).where(FlowExecution.execution_id == execution_id)
        )
        return int(result.scalar_one_or_none() or 0)

    def _is_fresh_processing(self, task: NodeTask) -> bool:
        started = as_utc(task.started_at)
        if task.status != TASK_PROCESSING or started is None:
            return False
        age = datetime.now(timezone.utc) - started
        return age < timedelta(seconds=self.config.stale_processing_seconds)

    async def run_task(self, db: AsyncSession, task_id: str, *, queue_id: str | None = None) -> NodeResult | None:
        """Execute the task behind a ``node_execution`` work item.

        *queue_id* marks a call promoted off the admission queue.  The work is
        split over three commits: claim the task and its slot, make the call
        with no transaction open, then record the outcome.  Returns None when
        the item is stale (execution closed, task already terminal, accepted
        by a provider, or freshly processing elsewhere) or when the task was
        stopped while its call was in flight.  Retryable provider errors
        propagate so the worker can back off.
        """
        admission = self.executor.admission
        task = await db.get(NodeTask, task_id)
        if task is None:
            if queue_id is not None:
                await admission.mark_queue_failed(db, queue_id, "Task is no longer waiting")
                return None
            raise NotFoundError(f"Node task {task_id} not found")
        execution = await db.get(Execution, task.execution_id)

        with bind_execution_context(execution_id=task.execution_id, task_id=task.task_id):
            if execution is None or execution.status in EXEC_TERMINAL:
                logger.info("Skipping task %s: execution is closed", task_id)
                if queue_id is not None:
                    await admission.mark_queue_failed(db, queue_id, "Task is no longer waiting")
                return None
            if queue_id is not None and task.status != TASK_QUEUED:
                await admission.mark_queue_failed(db, queue_id, "Task is no longer waiting")
                return None
            if task.external_task_id or task.status in TASK_TERMINAL or self._is_fresh_processing(task):
                logger.info("Skipping task %s: already handled (status=%s)", task_id, task.status)
                return None

            task.status = TASK_PROCESSING
            task.started_at = datetime.now(timezone.utc)
            await db.flush()

            inputs = await self.gather_inputs(db, execution, task)
            try:
                if not task.charged and task.cost > 0:
                    await credit_service.debit(
                        db,
                        execution.user_id,
                        task.cost,
                        reference_id=f"task_{task.task_id}",
                        description=f"Node {task.node_id} ({task.node_type})",
                    )
                    task.charged = True
                priority = await self._priority(db, execution.execution_id)
                admitted = await self.executor.admit(db, task, inputs, promoted_queue_id=queue_id, priority=priority)
            except SchedulerError as exc:
                if not isinstance(exc, InsufficientCredits) and queue_id is None:
                    raise
                admitted = NodeResult(NodeOutcome.FAILED, error=exc.message)

            if isinstance(admitted, NodeResult):
                if queue_id is not None and admitted.outcome is NodeOutcome.FAILED:
                    await admission.mark_queue_failed(db, queue_id, admitted.error or "Execution failed")
                await self.apply_result(db, execution, task, admitted)
                return admitted

            # The processing flip, the debit and the slot are durable before
            # the call goes out; nothing is held open while it runs.
            await db.commit()
            error: ProviderError | None = None
            try:
                result = await self.executor.issue(admitted)
            except ProviderError as exc:
                error, result = exc, None

            freed = await self.executor.settle(db, admitted, result)
            await db.refresh(task)
            await db.refresh(execution)
            if freed is not None:
                await self.drain_scope(db, admitted.spec.provider, freed)

            if error is not None:
                if error.retryable and task.status == TASK_PROCESSING:
                    task.status = TASK_QUEUED
                    task.started_at = None
                    await db.commit()
                    raise error
                result = NodeResult(NodeOutcome.FAILED, error=error.message)
                if queue_id is not None:
                    await admission.mark_queue_failed(db, queue_id, error.message)

            if task.status != TASK_PROCESSING or execution.status in EXEC_TERMINAL:
                logger.info(
                    "Task %s changed to %s while its call was in flight; outcome %s not applied",
                    task_id, task.status, result.outcome.value,
                )
                return None
            await self.apply_result(db, execution, task, result)
            return result

    async def drain_scope(
        self,
        db: AsyncSession,
        provider: Provider,
        credential_hash: str | None,
    ) -> AdmissionQueueItem | None:
        """Promote the next queued call of a freed scope onto the work queue.

        The promoted call runs later in a worker like any other task, so the
        caller (a webhook, an admin release, housekeeping) never waits on it.
        """
        if credential_hash is None:
            return None
        admission = self.executor.admission
        item = await admission.process_queue(db, provider, credential_hash)
        if item is None:
            return None
        if item.task_id is None or item.execution_id is None:
            await admission.mark_queue_failed(db, item.queue_id, "Task is no longer waiting")
            return None
        work = await enqueue_node_execution(db, item.task_id, item.execution_id, queue_id=item.queue_id)
        if work is None:
            # The task already has a run pending; it re-queues itself if denied.
            await admission.mark_queue_failed(db, item.queue_id, "Superseded by a pending run")
            return None
        return item

    async def apply_result(
        self,
        db: AsyncSession,
        execution: Execution,
        task: NodeTask,
        result: NodeResult,
    ) -> None:
        """Persist a node outcome and take the follow-up step it calls for."""
        now = datetime.now(timezone.utc)
        if result.outcome is NodeOutcome.FAILED:
            await self.fail_task(db, execution, task, result.error or "Node execution failed")
            return

        if result.outcome is NodeOutcome.QUEUED:
            task.status = TASK_QUEUED
            task.started_at = None
            task.output_json = json.dumps({**result.output, "queue_id": result.queue_id})
            await db.flush()
            return

        task.output_json = json.dumps(result.output, default=str)
        task.external_task_id = result.external_task_id

        if result.outcome is NodeOutcome.SUBMITTED:
            task.status = TASK_PROCESSING
            await db.flush()
            await self._schedule_poll(db, task)
            return

        task.status = TASK_COMPLETED
        task.result_url = result.result_url
        task.completed_at = now
        await db.flush()
        await self.advance(db, execution.execution_id)

    async def _schedule_poll(self, db: AsyncSession, task: NodeTask) -> None:
        spec = self.config.node_type(task.node_type)
        if not self.config.poll_enabled or spec.provider is None:
            return
        if not self.config.provider(spec.provider).supports_polling:
            return
        await enqueue_status_poll(
            db,
            task.task_id,
            task.execution_id,
            provider=spec.provider.value,
            external_task_id=task.external_task_id,
            poll_count=0,
            max_polls=self.config.poll_max_attempts,
            delay_seconds=self.config.poll_interval_seconds,
        )
