"""Completion ingest - applies provider completions to tasks.

Two entry points feed one path:

* ``ingest_webhook`` - an inbound provider callback.  The raw body is logged
  to ``webhook_logs`` and committed before anything is interpreted; every
  failure after that is logged and acknowledged, never raised.
* ``poll_task`` - a ``poll_provider_status`` work item asking the provider
  for a task's status.

Both end in ``apply_completion``, which is idempotent: a second terminal event
for the same external id finds the task already terminal and the slot already
gone, so nothing is released, promoted or advanced twice.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.connectors.callbacks import COMPLETED, FAILED, PROCESSING, CompletionEvent, normalize_callback
from flowsched.db.models import Execution, NodeTask, WebhookLog
from flowsched.errors import UnknownNodeTypeError, UnknownProviderError
from flowsched.registry import Provider
from flowsched.runtime.scheduler import Scheduler
from flowsched.runtime.states import ITEM_POLL_STATUS, TASK_COMPLETED, TASK_PROCESSING, TASK_TERMINAL
from flowsched.utils.logger import bind_execution_context
from flowsched.utils.metrics import record_webhook
from flowsched.utils.redaction import sanitize_error_message
from flowsched.worker.enqueue import cancel_items, enqueue_status_poll

logger = logging.getLogger("flowsched.completion")

# apply_completion() outcomes
APPLIED = "applied"
DUPLICATE = "duplicate"
STILL_PROCESSING = "processing"
UNKNOWN_TASK = "unknown_task"
NO_TASK_ID = "no_task_id"

POLL_TIMEOUT_MESSAGE = "Timed out waiting for the provider to finish"


def _provider_of(scheduler: Scheduler, task: NodeTask) -> Provider | None:
    try:
        return scheduler.config.node_type(task.node_type).provider
    except UnknownNodeTypeError:
        return None


async def find_task_by_external_id(
    db: AsyncSession,
    scheduler: Scheduler,
    provider: Provider,
    external_task_id: str,
) -> NodeTask | None:
    result = await db.execute(
        select(NodeTask)
        .where(NodeTask.external_task_id == external_task_id)
        .order_by(NodeTask.created_at.desc())
    )
    tasks = list(result.scalars().all())
    for task in tasks:
        if _provider_of(scheduler, task) is provider:
            return task
    return tasks[0] if tasks else None


async def apply_completion(
    db: AsyncSession,
    scheduler: Scheduler,
    provider: Provider,
    event: CompletionEvent,
) -> str:
    """Apply a normalised completion *event* and return what happened."""
    if not event.external_task_id:
        logger.info("%s event carries no task id; nothing to apply", provider.value)
        return NO_TASK_ID

    external_id = event.external_task_id
    task = await find_task_by_external_id(db, scheduler, provider, external_id)

    result_url = event.result_uri
    if (
        event.status == COMPLETED
        and result_url
        and scheduler.storage.enabled
        and task is not None
        and task.status not in TASK_TERMINAL
    ):
        # Download before the first write so the transaction is not held across it.
        result_url = await scheduler.storage.store(task.execution_id, task.node_id, result_url)

    credential_hash = None
    if event.is_terminal:
        # The slot goes whether or not a task still waits on it.
        credential_hash = await scheduler.admission.release_slot(db, provider, external_id)

    if task is None:
        logger.warning("No task for %s external id %s; acknowledging", provider.value, external_id)
        await scheduler.dispatcher.drain_scope(db, provider, credential_hash)
        return UNKNOWN_TASK

    with bind_execution_context(execution_id=task.execution_id, task_id=task.task_id, provider=provider.value):
        if task.status in TASK_TERMINAL:
            logger.info("Task %s already %s; ignoring %s event", task.task_id, task.status, event.status)
            await scheduler.dispatcher.drain_scope(db, provider, credential_hash)
            return DUPLICATE

        if event.status == PROCESSING:
            return STILL_PROCESSING

        execution = await db.get(Execution, task.execution_id)
        await cancel_items(db, task_id=task.task_id, item_type=ITEM_POLL_STATUS)

        if event.status == COMPLETED:
            output = json.loads(task.output_json) if task.output_json else {}
            output["resultUrl"] = result_url
            task.status = TASK_COMPLETED
            task.result_url = result_url
            task.output_json = json.dumps(output, default=str)
            task.error_message = None
            task.completed_at = datetime.now(timezone.utc)
            await db.flush()
            logger.info("Task %s completed (result=%s)", task.task_id, result_url)
        else:
            await scheduler.dispatcher.fail_task(
                db, execution, task, event.error or "Provider reported failure"
            )

        await scheduler.dispatcher.drain_scope(db, provider, credential_hash)

        if event.status == COMPLETED:
            await scheduler.dispatcher.advance(db, task.execution_id)
        return APPLIED


# ── Webhook ─────────────────────────────────────────────────────


async def ingest_webhook(
    db: AsyncSession,
    scheduler: Scheduler,
    source: str | None,
    raw_body: bytes,
    query: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Record and apply one provider callback.  Never raises."""
    text = raw_body.decode("utf-8", errors="replace")
    log = WebhookLog(source=source or "", payload=text, processed=False)
    db.add(log)
    await db.commit()
    log_id = log.id

    outcome, external_id = await _process_webhook(db, scheduler, source, text, query)

    await db.execute(
        update(WebhookLog)
        .where(WebhookLog.id == log_id)
        .values(
            external_id=external_id,
            outcome=outcome,
            processed=outcome not in ("error", "invalid_json", "unknown_source"),
        )
    )
    await db.commit()
    record_webhook(source or "unknown", outcome)
    return {"success": True, "outcome": outcome}


async def _process_webhook(
    db: AsyncSession,
    scheduler: Scheduler,
    source: str | None,
    text: str,
    query: Mapping[str, str] | None,
) -> tuple[str, str | None]:
    try:
        provider = Provider.from_source(source or "")
    except UnknownProviderError:
        logger.warning("Webhook from unknown source %r", source)
        return "unknown_source", None

    try:
        payload = json.loads(text) if text.strip() else {}
    except ValueError:
        logger.warning("Invalid JSON in %s webhook", provider.value)
        return "invalid_json", None
    if not isinstance(payload, dict):
        return "invalid_json", None

    external_id = None
    try:
        event = normalize_callback(provider, payload, query)
        external_id = event.external_task_id
        outcome = await apply_completion(db, scheduler, provider, event)
        await db.commit()
        return outcome, external_id
    except Exception:
        logger.exception("Failed to process %s webhook", provider.value)
        await db.rollback()
        return "error", external_id


# ── Pull path ───────────────────────────────────────────────────


async def poll_task(db: AsyncSession, scheduler: Scheduler, task_id: str, payload: dict[str, Any]) -> str:
    """Query the provider for a submitted task and apply the answer.

    Retryable ``ProviderError`` propagates so the worker backs off; a task
    still processing gets the next poll scheduled until ``max_polls``.
    """
    task = await db.get(NodeTask, task_id)
    external_id = payload.get("external_task_id")
    if task is None or task.status in TASK_TERMINAL or task.external_task_id != external_id:
        return DUPLICATE
    provider = Provider(payload["provider"])
    poll_count = int(payload.get("poll_count", 0)) + 1
    max_polls = int(payload.get("max_polls", scheduler.config.poll_max_attempts))

    with bind_execution_context(execution_id=task.execution_id, task_id=task.task_id, provider=provider.value):
        credential = scheduler.credentials.resolve(provider, task)
        if credential is None:
            event = CompletionEvent(external_id, FAILED, error="No API key available to query task status")
            return await apply_completion(db, scheduler, provider, event)

        status = await scheduler.client.query_status(provider, external_id, credential)
        if status.status == PROCESSING:
            if poll_count >= max_polls:
                logger.warning("Task %s still processing after %d polls", task.task_id, poll_count)
                event = CompletionEvent(external_id, FAILED, error=POLL_TIMEOUT_MESSAGE)
                return await apply_completion(db, scheduler, provider, event)
            if task.status != TASK_PROCESSING:
                return DUPLICATE
            await enqueue_status_poll(
                db,
                task.task_id,
                task.execution_id,
                provider=provider.value,
                external_task_id=external_id,
                poll_count=poll_count,
                max_polls=max_polls,
                delay_seconds=scheduler.config.poll_interval_seconds,
            )
            return STILL_PROCESSING

        error = sanitize_error_message(status.error) if status.status == FAILED else None
        event = CompletionEvent(external_id, status.status, result_uri=status.result_url, error=error)
        return await apply_completion(db, scheduler, provider, event)
