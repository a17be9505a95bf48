"""Helpers for adding work items to the durable queue.

Items are added to the caller's session and are NOT committed here, so the
state change that motivates an item (a task marked ``queued``, a task accepted
by a provider) and the item itself land in one transaction.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.config import settings
from flowsched.db.models import WorkItem
from flowsched.runtime.states import (
    ITEM_CANCELLED,
    ITEM_NODE_EXECUTION,
    ITEM_OPEN,
    ITEM_POLL_STATUS,
    ITEM_QUEUED,
)


async def open_item_for_task(db: AsyncSession, task_id: str, item_type: str) -> WorkItem | None:
    result = await db.execute(
        select(WorkItem).where(
            WorkItem.task_id == task_id,
            WorkItem.item_type == item_type,
            WorkItem.status.in_(ITEM_OPEN),
        )
    )
    return result.scalars().first()


def _add_item(
    db: AsyncSession,
    item_type: str,
    task_id: str,
    execution_id: str,
    *,
    payload: dict[str, Any] | None = None,
    priority: int = 0,
    delay_seconds: float = 0.0,
    max_attempts: int | None = None,
) -> WorkItem:
    now = datetime.now(timezone.utc)
    item = WorkItem(
        item_type=item_type,
        task_id=task_id,
        execution_id=execution_id,
        payload_json=json.dumps(payload) if payload else None,
        status=ITEM_QUEUED,
        priority=priority,
        attempts=0,
        max_attempts=max_attempts if max_attempts is not None else settings.WORKER_MAX_ATTEMPTS,
        available_at=now + timedelta(seconds=delay_seconds),
        created_at=now,
        updated_at=now,
    )
    db.add(item)
    return item


async def enqueue_node_execution(
    db: AsyncSession,
    task_id: str,
    execution_id: str,
    *,
    priority: int = 1,
    queue_id: str | None = None,
) -> WorkItem | None:
    """Queue a ``node_execution`` item unless one is already open for the task.

    *queue_id* marks the run of a call promoted off the admission queue.
    """
    if await open_item_for_task(db, task_id, ITEM_NODE_EXECUTION) is not None:
        return None
    payload = {"queue_id": queue_id} if queue_id else None
    item = _add_item(db, ITEM_NODE_EXECUTION, task_id, execution_id, payload=payload, priority=priority)
    await db.flush()
    return item


async def enqueue_status_poll(
    db: AsyncSession,
    task_id: str,
    execution_id: str,
    *,
    provider: str,
    external_task_id: str,
    poll_count: int,
    max_polls: int,
    delay_seconds: float,
) -> WorkItem:
    """Schedule the next status query for a provider task."""
    item = _add_item(
        db,
        ITEM_POLL_STATUS,
        task_id,
        execution_id,
        payload={
            "provider": provider,
            "external_task_id": external_task_id,
            "poll_count": poll_count,
            "max_polls": max_polls,
        },
        priority=5,
        delay_seconds=delay_seconds,
    )
    await db.flush()
    return item


async def cancel_items(
    db: AsyncSession,
    *,
    task_id: str | None = None,
    execution_id: str | None = None,
    item_type: str | None = None,
) -> int:
    """Cancel open items for a task or an execution.  Returns rows changed."""
    stmt = update(WorkItem).where(WorkItem.status.in_(ITEM_OPEN))
    if task_id is not None:
        stmt = stmt.where(WorkItem.task_id == task_id)
    if execution_id is not None:
        stmt = stmt.where(WorkItem.execution_id == execution_id)
    if item_type is not None:
        stmt = stmt.where(WorkItem.item_type == item_type)
    result = await db.execute(
        stmt.values(status=ITEM_CANCELLED, locked_by=None, updated_at=datetime.now(timezone.utc))
    )
    return result.rowcount or 0
