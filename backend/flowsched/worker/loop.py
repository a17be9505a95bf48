"""Work item poll-and-execute loop.

Architecture
------------
The loop polls ``work_items`` for eligible items, claims them atomically,
then executes each in a sibling asyncio.Task with its own session.  A
provider call commits before the request goes out, so no transaction is
held open across the network round trip.

Claiming strategy (dialect-aware):
  PostgreSQL - ``SELECT … FOR UPDATE SKIP LOCKED`` in a single transaction.
  SQLite     - Optimistic UPDATE with a status guard (``WHERE status IN
               ('queued','retrying') AND item_id = ?``).

Item lifecycle:
  queued / retrying
    ↓   poll_and_claim()
  running
    ↓   execute_item()
  done      (handler returned)
  retrying  (handler raised, attempts < max_attempts; linear backoff)
  failed    (attempts exhausted; the task and its execution are failed)
  cancelled (by the control surface while still open)

Stalled items (``running`` with an expired lock) are reset by
``reclaim_stalled_items()`` at the start of every poll cycle.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowsched.config import settings
from flowsched.connectors.callbacks import FAILED, CompletionEvent
from flowsched.db.engine import async_session
from flowsched.db.models import Execution, NodeTask, WorkItem
from flowsched.registry import Provider
from flowsched.runtime.scheduler import Scheduler
from flowsched.runtime.states import (
    ITEM_CANCELLED,
    ITEM_DONE,
    ITEM_FAILED,
    ITEM_NODE_EXECUTION,
    ITEM_POLL_STATUS,
    ITEM_QUEUED,
    ITEM_RETRYING,
    ITEM_RUNNING,
    TASK_TERMINAL,
)
from flowsched.services import completion_service
from flowsched.utils.logger import bind_execution_context
from flowsched.utils.redaction import sanitize_error_message

logger = logging.getLogger("flowsched.worker.loop")

SessionFactory = async_sessionmaker[AsyncSession]

_CLAIMABLE = (ITEM_QUEUED, ITEM_RETRYING)


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


# ── Claim helpers ───────────────────────────────────────────────


async def _claim_items_postgres(session_factory: SessionFactory, worker_id: str, slots: int) -> list[WorkItem]:
    """Claim up to *slots* items using FOR UPDATE SKIP LOCKED (PostgreSQL)."""
    now = datetime.now(timezone.utc)
    locked_until = now + timedelta(seconds=settings.WORKER_LOCK_DURATION_SECONDS)

    async with session_factory() as db:
        async with db.begin():
            result = await db.execute(
                text(
                    """
                    SELECT item_id FROM work_items
                    WHERE status IN ('queued', 'retrying')
                      AND available_at <= :now
                    ORDER BY priority DESC, available_at ASC
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                    """
                ),
                {"now": now, "limit": slots},
            )
            item_ids = [row[0] for row in result.fetchall()]
            if not item_ids:
                return []

            await db.execute(
                update(WorkItem)
                .where(WorkItem.item_id.in_(item_ids))
                .values(
                    status=ITEM_RUNNING,
                    locked_by=worker_id,
                    locked_until=locked_until,
                    attempts=WorkItem.attempts + 1,
                    updated_at=now,
                )
            )

        result2 = await db.execute(select(WorkItem).where(WorkItem.item_id.in_(item_ids)))
        return list(result2.scalars().all())


async def _claim_items_sqlite(session_factory: SessionFactory, worker_id: str, slots: int) -> list[WorkItem]:
    """Claim up to *slots* items using optimistic locking (SQLite / dev)."""
    now = datetime.now(timezone.utc)
    locked_until = now + timedelta(seconds=settings.WORKER_LOCK_DURATION_SECONDS)
    claimed: list[WorkItem] = []

    async with session_factory() as db:
        result = await db.execute(
            select(WorkItem)
            .where(WorkItem.status.in_(_CLAIMABLE), WorkItem.available_at <= now)
            .order_by(WorkItem.priority.desc(), WorkItem.available_at.asc())
            .limit(slots)
        )
        for item in list(result.scalars().all()):
            update_result = await db.execute(
                update(WorkItem)
                .where(WorkItem.item_id == item.item_id, WorkItem.status.in_(_CLAIMABLE))
                .values(
                    status=ITEM_RUNNING,
                    locked_by=worker_id,
                    locked_until=locked_until,
                    attempts=WorkItem.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if update_result.rowcount == 1:
                item.status = ITEM_RUNNING
                item.locked_by = worker_id
                item.locked_until = locked_until
                item.attempts = (item.attempts or 0) + 1
                claimed.append(item)

        await db.commit()

    return claimed


async def poll_and_claim(
    worker_id: str,
    slots: int,
    session_factory: SessionFactory | None = None,
) -> list[WorkItem]:
    """Return up to *slots* claimed work items ready for execution."""
    if slots <= 0:
        return []
    factory = session_factory or async_session
    if settings.is_postgres:
        return await _claim_items_postgres(factory, worker_id, slots)
    return await _claim_items_sqlite(factory, worker_id, slots)


# ── Stalled-item recovery ───────────────────────────────────────


async def reclaim_stalled_items(session_factory: SessionFactory | None = None) -> int:
    """Reset items whose lock expired while running.  Returns how many."""
    now = datetime.now(timezone.utc)
    reclaimed = 0

    async with (session_factory or async_session)() as db:
        result = await db.execute(
            select(WorkItem).where(WorkItem.status == ITEM_RUNNING, WorkItem.locked_until < now)
        )
        for item in result.scalars().all():
            if (item.attempts or 0) >= (item.max_attempts or settings.WORKER_MAX_ATTEMPTS):
                item.status = ITEM_FAILED
                item.error_message = "Exceeded max_attempts; last lock expired without completion"
                logger.warning("Work item %s (task %s) permanently failed: lock expired", item.item_id, item.task_id)
            else:
                retry_delay = settings.WORKER_RETRY_DELAY_SECONDS * (item.attempts or 1)
                item.status = ITEM_RETRYING
                item.available_at = now + timedelta(seconds=retry_delay)
                logger.info(
                    "Reclaimed stalled item %s (task %s, attempt %d); retry in %.0fs",
                    item.item_id, item.task_id, item.attempts, retry_delay,
                )
            item.locked_by = None
            item.locked_until = None
            item.updated_at = now
            reclaimed += 1

        if reclaimed:
            await db.commit()

    return reclaimed


# ── Item execution ──────────────────────────────────────────────


async def run_item(db: AsyncSession, scheduler: Scheduler, item: WorkItem) -> None:
    """Dispatch *item* to its handler inside the caller's transaction."""
    payload = json.loads(item.payload_json) if item.payload_json else {}
    if item.item_type == ITEM_NODE_EXECUTION:
        await scheduler.dispatcher.run_task(db, item.task_id, queue_id=payload.get("queue_id"))
    elif item.item_type == ITEM_POLL_STATUS:
        await completion_service.poll_task(db, scheduler, item.task_id, payload)
    else:
        raise ValueError(f"Unknown work item type '{item.item_type}'")


async def _give_up(db: AsyncSession, scheduler: Scheduler, item: WorkItem, error: str) -> None:
    """Fail the task behind an item whose attempts are exhausted."""
    payload = json.loads(item.payload_json) if item.payload_json else {}
    message = sanitize_error_message(error)
    if payload.get("queue_id"):
        await scheduler.admission.mark_queue_failed(db, payload["queue_id"], message)
    task = await db.get(NodeTask, item.task_id)
    if task is None or task.status in TASK_TERMINAL:
        return
    if item.item_type == ITEM_POLL_STATUS and task.external_task_id:
        event = CompletionEvent(task.external_task_id, FAILED, error=message)
        await completion_service.apply_completion(db, scheduler, Provider(payload["provider"]), event)
        return
    execution = await db.get(Execution, task.execution_id)
    if execution is not None:
        await scheduler.dispatcher.fail_task(db, execution, task, message)


async def _set_item_status(db: AsyncSession, item: WorkItem, **values) -> None:
    await db.execute(
        update(WorkItem)
        .where(WorkItem.item_id == item.item_id, WorkItem.status != ITEM_CANCELLED)
        .values(locked_by=None, locked_until=None, updated_at=datetime.now(timezone.utc), **values)
    )


async def execute_item(
    item: WorkItem,
    scheduler: Scheduler,
    worker_id: str,
    session_factory: SessionFactory | None = None,
) -> None:
    """Execute one claimed work item and record its outcome."""
    factory = session_factory or async_session
    with bind_execution_context(execution_id=item.execution_id, task_id=item.task_id):
        try:
            logger.info(
                "Worker %s executing %s item %s (attempt %d/%d)",
                worker_id, item.item_type, item.item_id,
                item.attempts, item.max_attempts or settings.WORKER_MAX_ATTEMPTS,
            )
            async with factory() as db:
                try:
                    await run_item(db, scheduler, item)
                    await _set_item_status(db, item, status=ITEM_DONE)
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise
            item.status = ITEM_DONE

        except Exception as exc:
            item.error_message = str(exc)[:2000]
            try:
                await _record_failure(factory, scheduler, item, exc)
            except Exception:
                # Left ``running``; reclaim_stalled_items retries it once the lock expires.
                logger.exception("Could not record failure of item %s", item.item_id)


async def _record_failure(factory: SessionFactory, scheduler: Scheduler, item: WorkItem, exc: Exception) -> None:
    """Schedule a retry for a failed item, or give up once attempts run out."""
    now = datetime.now(timezone.utc)
    attempts = item.attempts or 0
    max_att = item.max_attempts or settings.WORKER_MAX_ATTEMPTS
    async with factory() as db:
        try:
            if attempts < max_att:
                retry_delay = settings.WORKER_RETRY_DELAY_SECONDS * attempts
                logger.warning(
                    "Item %s failed (attempt %d/%d); retrying in %.0fs: %s",
                    item.item_id, attempts, max_att, retry_delay, exc,
                )
                await _set_item_status(
                    db, item,
                    status=ITEM_RETRYING,
                    available_at=now + timedelta(seconds=retry_delay),
                    error_message=item.error_message,
                )
                status = ITEM_RETRYING
            else:
                logger.error("Item %s permanently failed after %d attempts: %s", item.item_id, attempts, exc)
                await _set_item_status(db, item, status=ITEM_FAILED, error_message=item.error_message)
                await _give_up(db, scheduler, item, str(exc))
                status = ITEM_FAILED
            await db.commit()
        except BaseException:
            await db.rollback()
            raise
    item.status = status


# ── Main worker loop ────────────────────────────────────────────


async def worker_loop(
    scheduler: Scheduler,
    worker_id: str | None = None,
    concurrency: int | None = None,
    poll_interval: float | None = None,
    session_factory: SessionFactory | None = None,
) -> None:
    """Continuously poll for work items and execute up to *concurrency* at once.

    Runs until cancelled (server shutdown or worker signal).
    """
    _worker_id = worker_id or _default_worker_id()
    _concurrency = concurrency if concurrency is not None else settings.WORKER_CONCURRENCY
    _poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL

    logger.info(
        "Worker %s started (concurrency=%d, poll_interval=%.1fs, dialect=%s)",
        _worker_id, _concurrency, _poll_interval, settings.FLOW_DB_DIALECT,
    )

    active_tasks: set[asyncio.Task] = set()

    while True:
        try:
            done = {t for t in active_tasks if t.done()}
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error("Work item task %s crashed", task.get_name(), exc_info=task.exception())
            active_tasks -= done

            try:
                await reclaim_stalled_items(session_factory)
            except Exception:
                logger.exception("Error in stalled-item reclaim")

            available_slots = _concurrency - len(active_tasks)
            if available_slots > 0:
                try:
                    items = await poll_and_claim(_worker_id, available_slots, session_factory)
                    for item in items:
                        active_tasks.add(asyncio.create_task(
                            execute_item(item, scheduler, _worker_id, session_factory),
                            name=f"item-{item.item_id}",
                        ))
                except Exception:
                    logger.exception("Error claiming work items")

            await asyncio.sleep(_poll_interval)

        except asyncio.CancelledError:
            logger.info("Worker %s shutting down (%d active items)…", _worker_id, len(active_tasks))
            for task in active_tasks:
                task.cancel()
            if active_tasks:
                await asyncio.gather(*active_tasks, return_exceptions=True)
            raise

        except Exception:
            logger.exception("Unexpected error in worker loop; will retry")
            await asyncio.sleep(_poll_interval)
