"""Admission controller - per-(provider, credential) concurrency ceilings.

State lives entirely in two tables:
  admission_slots  - one row per in-flight provider call
  admission_queue  - calls denied immediate admission, drained on release

Scopes are keyed by ``(provider, sha256(credential))``; the raw credential
never reaches this module.  Every acquire is a single conditional INSERT
(``INSERT … SELECT … WHERE live_count < ceiling``) and every release is a
DELETE guarded by rowcount, so two concurrent callbacks cannot both release
the same slot and two concurrent admits cannot both take the last one.  On
PostgreSQL the admit additionally takes a transaction-scoped advisory lock
on the scope, since READ COMMITTED lets concurrent INSERT … SELECT
statements see the same count.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import DateTime, String, and_, delete, func, insert, literal, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.db.models import AdmissionQueueItem, AdmissionSlot
from flowsched.registry import Provider, SchedulerConfig
from flowsched.utils.metrics import record_admission
from flowsched.utils.redaction import redact_sensitive_data

logger = logging.getLogger("flowsched.admission")

QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"
QUEUE_EXPIRED = "expired"


def _short(credential_hash: str) -> str:
    return credential_hash[:12]


class AdmissionController:
    def __init__(self, config: SchedulerConfig):
        self.config = config

    # ── Slots ───────────────────────────────────────────────────

    async def cleanup_expired(self, db: AsyncSession) -> int:
        """Delete slots past their safety timeout.  Returns rows removed."""
        now = datetime.now(timezone.utc)
        result = await db.execute(delete(AdmissionSlot).where(AdmissionSlot.expires_at <= now))
        if result.rowcount:
            logger.warning("Purged %d abandoned admission slot(s)", result.rowcount)
        return result.rowcount or 0

    async def active_count(self, db: AsyncSession, provider: Provider, credential_hash: str) -> int:
        await self.cleanup_expired(db)
        now = datetime.now(timezone.utc)
        result = await db.execute(
            select(func.count())
            .select_from(AdmissionSlot)
            .where(
                AdmissionSlot.provider == provider.value,
                AdmissionSlot.credential_hash == credential_hash,
                AdmissionSlot.expires_at > now,
            )
        )
        return int(result.scalar_one())

    async def can_proceed(self, db: AsyncSession, provider: Provider, credential_hash: str) -> bool:
        """True when a call in this scope would be admitted right now."""
        limit = self.config.ceiling(provider)
        if limit <= 0:
            return True
        return await self.active_count(db, provider, credential_hash) < limit

    async def _lock_scope(self, db: AsyncSession, provider: Provider, credential_hash: str) -> None:
        if db.get_bind().dialect.name == "postgresql":
            await db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:scope))"),
                {"scope": f"{provider.value}:{credential_hash}"},
            )

    async def acquire_slot(
        self,
        db: AsyncSession,
        provider: Provider,
        credential_hash: str,
        external_id: str,
        execution_id: str | None = None,
        node_id: str | None = None,
    ) -> bool:
        """Atomically take a slot unless the scope is at its ceiling."""
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.config.slot_ttl_seconds)
        limit = self.config.ceiling(provider)

        await self._lock_scope(db, provider, credential_hash)

        values = select(
            literal(str(uuid.uuid4()), String()),
            literal(provider.value, String()),
            literal(credential_hash, String()),
            literal(external_id, String()),
            literal(execution_id, String()),
            literal(node_id, String()),
            literal(now, DateTime(timezone=True)),
            literal(expires_at, DateTime(timezone=True)),
        )
        if limit > 0:
            live = (
                select(func.count())
                .select_from(AdmissionSlot)
                .where(
                    AdmissionSlot.provider == provider.value,
                    AdmissionSlot.credential_hash == credential_hash,
                    AdmissionSlot.expires_at > now,
                )
                .scalar_subquery()
            )
            values = values.where(live < limit)

        result = await db.execute(
            insert(AdmissionSlot).from_select(
                [
                    "slot_id",
                    "provider",
                    "credential_hash",
                    "external_id",
                    "execution_id",
                    "node_id",
                    "acquired_at",
                    "expires_at",
                ],
                values,
            )
        )
        granted = result.rowcount == 1
        logger.debug(
            "Slot %s for %s/%s (external_id=%s, ceiling=%d)",
            "granted" if granted else "denied",
            provider.value, _short(credential_hash), external_id, limit,
        )
        return granted

    async def rekey_slot(
        self,
        db: AsyncSession,
        provider: Provider,
        old_external_id: str,
        new_external_id: str,
    ) -> bool:
        """Swap a temporary slot token for the provider's real task id."""
        result = await db.execute(
            update(AdmissionSlot)
            .where(
                AdmissionSlot.provider == provider.value,
                AdmissionSlot.external_id == old_external_id,
            )
            .values(external_id=new_external_id)
        )
        return result.rowcount == 1

    async def release_slot(self, db: AsyncSession, provider: Provider, external_id: str) -> str | None:
        """Delete the slot keyed by *external_id* and return its credential hash.

        Returns None when no slot exists (already released, expired, or never
        taken) so callers do not drain the queue twice for one completion.
        """
        found = await db.execute(
            select(AdmissionSlot.slot_id, AdmissionSlot.credential_hash).where(
                AdmissionSlot.provider == provider.value,
                AdmissionSlot.external_id == external_id,
            )
        )
        row = found.first()
        if row is None:
            return None
        result = await db.execute(delete(AdmissionSlot).where(AdmissionSlot.slot_id == row.slot_id))
        if result.rowcount != 1:
            return None
        logger.debug("Released slot %s/%s for %s", provider.value, _short(row.credential_hash), external_id)
        return row.credential_hash

    async def release_slot_by_id(self, db: AsyncSession, slot_id: str) -> AdmissionSlot | None:
        slot = await db.get(AdmissionSlot, slot_id)
        if slot is None:
            return None
        result = await db.execute(delete(AdmissionSlot).where(AdmissionSlot.slot_id == slot_id))
        return slot if result.rowcount == 1 else None

    async def list_slots(self, db: AsyncSession, provider: Provider | None = None) -> list[AdmissionSlot]:
        stmt = select(AdmissionSlot).order_by(AdmissionSlot.acquired_at.asc())
        if provider is not None:
            stmt = stmt.where(AdmissionSlot.provider == provider.value)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    # ── Queue ───────────────────────────────────────────────────

    async def enqueue(
        self,
        db: AsyncSession,
        provider: Provider,
        credential_hash: str,
        *,
        node_type: str,
        node_id: str = "",
        execution_id: str | None = None,
        task_id: str | None = None,
        input_data: dict[str, Any] | None = None,
        priority: int = 0,
    ) -> AdmissionQueueItem:
        item = AdmissionQueueItem(
            provider=provider.value,
            credential_hash=credential_hash,
            execution_id=execution_id,
            task_id=task_id,
            node_id=node_id,
            node_type=node_type,
            input_json=json.dumps(redact_sensitive_data(input_data or {}), default=str),
            priority=priority,
            status=QUEUE_PENDING,
        )
        db.add(item)
        await db.flush()
        await db.refresh(item)
        record_admission(provider.value, "queued")
        logger.info(
            "Queued %s call for node %s (scope %s/%s, queue_id=%s)",
            node_type, node_id, provider.value, _short(credential_hash), item.queue_id,
        )
        return item

    async def _room_for_promotion(self, db: AsyncSession, provider: Provider, credential_hash: str) -> bool:
        limit = self.config.ceiling(provider)
        if limit <= 0:
            return True
        promoted = await db.execute(
            select(func.count())
            .select_from(AdmissionQueueItem)
            .where(
                AdmissionQueueItem.provider == provider.value,
                AdmissionQueueItem.credential_hash == credential_hash,
                AdmissionQueueItem.status == QUEUE_PROCESSING,
            )
        )
        in_use = await self.active_count(db, provider, credential_hash) + int(promoted.scalar_one())
        return in_use < limit

    async def process_queue(
        self,
        db: AsyncSession,
        provider: Provider,
        credential_hash: str,
    ) -> AdmissionQueueItem | None:
        """Pop the next pending item for the scope if capacity allows.

        Order: highest priority first, then oldest.  The item is marked
        ``processing`` with an optimistic status guard, so concurrent drains
        never hand out the same item twice.  Items promoted but not yet
        admitted count against the ceiling, so a drain never promotes more
        calls than there are free slots.
        """
        if not await self._room_for_promotion(db, provider, credential_hash):
            return None

        candidates = await db.execute(
            select(AdmissionQueueItem)
            .where(
                AdmissionQueueItem.provider == provider.value,
                AdmissionQueueItem.credential_hash == credential_hash,
                AdmissionQueueItem.status == QUEUE_PENDING,
            )
            .order_by(AdmissionQueueItem.priority.desc(), AdmissionQueueItem.created_at.asc())
            .limit(5)
        )
        now = datetime.now(timezone.utc)
        for item in candidates.scalars().all():
            claimed = await db.execute(
                update(AdmissionQueueItem)
                .where(
                    AdmissionQueueItem.queue_id == item.queue_id,
                    AdmissionQueueItem.status == QUEUE_PENDING,
                )
                .values(status=QUEUE_PROCESSING, processed_at=now)
            )
            if claimed.rowcount == 1:
                await db.refresh(item)
                record_admission(provider.value, "promoted")
                logger.info("Promoted queued call %s (node %s)", item.queue_id, item.node_id)
                return item
        return None

    async def return_to_queue(self, db: AsyncSession, queue_id: str) -> None:
        """Put a promoted item back when its slot was taken in the meantime."""
        await db.execute(
            update(AdmissionQueueItem)
            .where(AdmissionQueueItem.queue_id == queue_id)
            .values(status=QUEUE_PENDING, processed_at=None)
        )

    async def mark_queue_completed(self, db: AsyncSession, queue_id: str) -> None:
        await db.execute(
            update(AdmissionQueueItem)
            .where(AdmissionQueueItem.queue_id == queue_id)
            .values(status=QUEUE_COMPLETED, completed_at=datetime.now(timezone.utc))
        )

    async def mark_queue_failed(self, db: AsyncSession, queue_id: str, error: str) -> None:
        await db.execute(
            update(AdmissionQueueItem)
            .where(AdmissionQueueItem.queue_id == queue_id)
            .values(
                status=QUEUE_FAILED,
                error_message=error[:2000],
                completed_at=datetime.now(timezone.utc),
            )
        )

    async def pending_item_for_task(self, db: AsyncSession, task_id: str) -> AdmissionQueueItem | None:
        result = await db.execute(
            select(AdmissionQueueItem).where(
                AdmissionQueueItem.task_id == task_id,
                AdmissionQueueItem.status == QUEUE_PENDING,
            )
        )
        return result.scalars().first()

    async def remove_queue_items(
        self,
        db: AsyncSession,
        *,
        execution_id: str | None = None,
        task_id: str | None = None,
    ) -> int:
        """Delete not-yet-issued queue items for an execution or a task."""
        stmt = delete(AdmissionQueueItem).where(
            AdmissionQueueItem.status.in_([QUEUE_PENDING, QUEUE_PROCESSING])
        )
        if execution_id is not None:
            stmt = stmt.where(AdmissionQueueItem.execution_id == execution_id)
        if task_id is not None:
            stmt = stmt.where(AdmissionQueueItem.task_id == task_id)
        result = await db.execute(stmt)
        return result.rowcount or 0

    # ── Housekeeping / reporting ────────────────────────────────

    async def global_cleanup(
        self,
        db: AsyncSession,
        *,
        queue_expiry_hours: int,
        queue_retention_days: int,
    ) -> dict[str, int]:
        """Purge expired slots, expire stale waiting items, drop old finished ones."""
        now = datetime.now(timezone.utc)
        slots = await self.cleanup_expired(db)

        cutoff = now - timedelta(hours=queue_expiry_hours)
        expired = await db.execute(
            update(AdmissionQueueItem)
            .where(
                or_(
                    and_(AdmissionQueueItem.status == QUEUE_PENDING, AdmissionQueueItem.created_at < cutoff),
                    # promoted but never admitted; would hold capacity forever
                    and_(AdmissionQueueItem.status == QUEUE_PROCESSING, AdmissionQueueItem.processed_at < cutoff),
                )
            )
            .values(status=QUEUE_EXPIRED, completed_at=now)
        )
        purged = await db.execute(
            delete(AdmissionQueueItem).where(
                AdmissionQueueItem.status.in_([QUEUE_COMPLETED, QUEUE_FAILED, QUEUE_EXPIRED]),
                AdmissionQueueItem.created_at < now - timedelta(days=queue_retention_days),
            )
        )
        return {
            "expired_slots": slots,
            "expired_queue_items": expired.rowcount or 0,
            "purged_queue_items": purged.rowcount or 0,
        }

    async def stats(self, db: AsyncSession) -> list[dict[str, Any]]:
        """Per-provider active slots, ceiling and queue depth by status."""
        await self.cleanup_expired(db)
        slot_rows = await db.execute(
            select(AdmissionSlot.provider, func.count()).group_by(AdmissionSlot.provider)
        )
        active = {provider: count for provider, count in slot_rows.all()}

        queue_rows = await db.execute(
            select(AdmissionQueueItem.provider, AdmissionQueueItem.status, func.count()).group_by(
                AdmissionQueueItem.provider, AdmissionQueueItem.status
            )
        )
        queued: dict[str, dict[str, int]] = {}
        for provider, status, count in queue_rows.all():
            queued.setdefault(provider, {})[status] = count

        report = []
        for provider in self.config.providers:
            counts = queued.get(provider.value, {})
            report.append({
                "provider": provider.value,
                "max_concurrent": self.config.ceiling(provider),
                "active_slots": active.get(provider.value, 0),
                "queue_pending": counts.get(QUEUE_PENDING, 0),
                "queue_processing": counts.get(QUEUE_PROCESSING, 0),
                "queue_completed": counts.get(QUEUE_COMPLETED, 0),
                "queue_failed": counts.get(QUEUE_FAILED, 0),
                "queue_expired": counts.get(QUEUE_EXPIRED, 0),
            })
        return report
