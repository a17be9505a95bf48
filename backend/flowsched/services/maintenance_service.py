"""Housekeeping run periodically by the API process.

Purges abandoned admission slots, expires and prunes admission queue items,
re-drains scopes that hold pending items but no in-flight call (nothing would
ever release a slot for them), and deletes old terminal executions and
webhook logs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.config import Settings
from flowsched.db.models import (
    AdmissionQueueItem,
    Execution,
    FlowExecution,
    NodeTask,
    WebhookLog,
    WorkItem,
)
from flowsched.registry import Provider
from flowsched.runtime.scheduler import Scheduler
from flowsched.runtime.states import EXEC_TERMINAL
from flowsched.services.admission_service import QUEUE_PENDING

logger = logging.getLogger("flowsched.maintenance")


async def drain_stranded_queues(db: AsyncSession, scheduler: Scheduler) -> int:
    """Promote pending queue items in every scope that has capacity."""
    result = await db.execute(
        select(AdmissionQueueItem.provider, AdmissionQueueItem.credential_hash)
        .where(AdmissionQueueItem.status == QUEUE_PENDING)
        .distinct()
    )
    promoted = 0
    for provider_name, credential_hash in result.all():
        provider = Provider(provider_name)
        while await scheduler.dispatcher.drain_scope(db, provider, credential_hash) is not None:
            promoted += 1
    return promoted


async def purge_old_executions(db: AsyncSession, retention_days: int) -> int:
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    result = await db.execute(
        select(Execution.execution_id).where(
            Execution.status.in_(EXEC_TERMINAL),
            Execution.completed_at < cutoff,
        )
    )
    ids = list(result.scalars().all())
    if not ids:
        return 0
    await db.execute(delete(WorkItem).where(WorkItem.execution_id.in_(ids)))
    await db.execute(delete(FlowExecution).where(FlowExecution.execution_id.in_(ids)))
    await db.execute(delete(NodeTask).where(NodeTask.execution_id.in_(ids)))
    await db.execute(delete(Execution).where(Execution.execution_id.in_(ids)))
    return len(ids)


async def purge_webhook_logs(db: AsyncSession, retention_days: int) -> int:
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    result = await db.execute(delete(WebhookLog).where(WebhookLog.created_at < cutoff))
    return result.rowcount or 0


async def run_maintenance(db: AsyncSession, scheduler: Scheduler, settings: Settings) -> dict[str, Any]:
    report: dict[str, Any] = await scheduler.admission.global_cleanup(
        db,
        queue_expiry_hours=settings.QUEUE_ITEM_EXPIRY_HOURS,
        queue_retention_days=settings.QUEUE_ITEM_RETENTION_DAYS,
    )
    report["promoted"] = await drain_stranded_queues(db, scheduler)
    report["purged_executions"] = 0
    if settings.EXECUTION_RETENTION_DAYS > 0:
        report["purged_executions"] = await purge_old_executions(db, settings.EXECUTION_RETENTION_DAYS)
    report["purged_webhook_logs"] = 0
    if settings.WEBHOOK_LOG_RETENTION_DAYS > 0:
        report["purged_webhook_logs"] = await purge_webhook_logs(db, settings.WEBHOOK_LOG_RETENTION_DAYS)
    if any(report.values()):
        logger.info("Maintenance: %s", report)
    return report
