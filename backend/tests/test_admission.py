"""Tests for the admission controller (slots, ceilings and the waiting queue)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from conftest import make_config
from flowsched.db.models import AdmissionQueueItem, AdmissionSlot
from flowsched.registry import Provider
from flowsched.services.admission_service import (
    QUEUE_COMPLETED,
    QUEUE_EXPIRED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    AdmissionController,
)
from flowsched.services.credentials import hash_credential

SCOPE = hash_credential("key-one")
OTHER = hash_credential("key-two")


def _controller(**overrides) -> AdmissionController:
    return AdmissionController(make_config(**overrides))


class TestSlots:
    @pytest.mark.asyncio
    async def test_acquire_up_to_ceiling(self, db):
        ctl = _controller(max_concurrent={Provider.KIE: 2})
        assert await ctl.acquire_slot(db, Provider.KIE, SCOPE, "t1")
        assert await ctl.acquire_slot(db, Provider.KIE, SCOPE, "t2")
        assert not await ctl.acquire_slot(db, Provider.KIE, SCOPE, "t3")
        assert await ctl.active_count(db, Provider.KIE, SCOPE) == 2
        assert not await ctl.can_proceed(db, Provider.KIE, SCOPE)

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, db):
        ctl = _controller()
        assert await ctl.acquire_slot(db, Provider.KIE, SCOPE, "t1")
        assert await ctl.acquire_slot(db, Provider.KIE, OTHER, "t2")
        assert await ctl.can_proceed(db, Provider.RUNNINGHUB, SCOPE)

    @pytest.mark.asyncio
    async def test_zero_ceiling_means_unlimited(self, db):
        ctl = _controller(max_concurrent={Provider.KIE: 0})
        for i in range(20):
            assert await ctl.acquire_slot(db, Provider.KIE, SCOPE, f"t{i}")
        assert await ctl.can_proceed(db, Provider.KIE, SCOPE)

    @pytest.mark.asyncio
    async def test_release_returns_hash_once(self, db):
        ctl = _controller()
        await ctl.acquire_slot(db, Provider.KIE, SCOPE, "ext-9")
        assert await ctl.release_slot(db, Provider.KIE, "ext-9") == SCOPE
        assert await ctl.release_slot(db, Provider.KIE, "ext-9") is None
        assert await ctl.can_proceed(db, Provider.KIE, SCOPE)

    @pytest.mark.asyncio
    async def test_release_unknown_slot(self, db):
        assert await _controller().release_slot(db, Provider.KIE, "never-taken") is None

    @pytest.mark.asyncio
    async def test_rekey_moves_slot_to_real_id(self, db):
        ctl = _controller()
        await ctl.acquire_slot(db, Provider.KIE, SCOPE, "pending_abc")
        assert await ctl.rekey_slot(db, Provider.KIE, "pending_abc", "ext-1")
        assert await ctl.release_slot(db, Provider.KIE, "pending_abc") is None
        assert await ctl.release_slot(db, Provider.KIE, "ext-1") == SCOPE

    @pytest.mark.asyncio
    async def test_expired_slots_do_not_count(self, db):
        ctl = _controller()
        await ctl.acquire_slot(db, Provider.KIE, SCOPE, "stale")
        await db.execute(
            update(AdmissionSlot).values(expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        assert await ctl.can_proceed(db, Provider.KIE, SCOPE)
        remaining = (await db.execute(select(AdmissionSlot))).scalars().all()
        assert remaining == []

    @pytest.mark.asyncio
    async def test_release_by_id_and_listing(self, db):
        ctl = _controller()
        await ctl.acquire_slot(db, Provider.KIE, SCOPE, "a", execution_id="e1", node_id="n1")
        slots = await ctl.list_slots(db, Provider.KIE)
        assert [s.external_id for s in slots] == ["a"]
        assert await ctl.list_slots(db, Provider.RUNNINGHUB) == []

        released = await ctl.release_slot_by_id(db, slots[0].slot_id)
        assert released is not None and released.credential_hash == SCOPE
        assert await ctl.release_slot_by_id(db, slots[0].slot_id) is None


class TestQueue:
    async def _enqueue(self, ctl, db, node_id, priority=0, scope=SCOPE):
        return await ctl.enqueue(
            db, Provider.KIE, scope,
            node_type="i2v-kapi", node_id=node_id, execution_id="e1", task_id=f"task-{node_id}",
            input_data={"prompt": "x", "apiKey": "sk-live-123"}, priority=priority,
        )

    @pytest.mark.asyncio
    async def test_enqueue_redacts_stored_input(self, db):
        item = await self._enqueue(_controller(), db, "n1")
        assert item.status == QUEUE_PENDING
        assert "sk-live-123" not in item.input_json

    @pytest.mark.asyncio
    async def test_process_queue_needs_capacity(self, db):
        ctl = _controller()
        await ctl.acquire_slot(db, Provider.KIE, SCOPE, "busy")
        await self._enqueue(ctl, db, "n1")
        assert await ctl.process_queue(db, Provider.KIE, SCOPE) is None

        await ctl.release_slot(db, Provider.KIE, "busy")
        item = await ctl.process_queue(db, Provider.KIE, SCOPE)
        assert item is not None and item.node_id == "n1"
        assert item.status == QUEUE_PROCESSING

    @pytest.mark.asyncio
    async def test_higher_priority_first_then_oldest(self, db):
        ctl = _controller(max_concurrent={Provider.KIE: 0})
        await self._enqueue(ctl, db, "old-low")
        await self._enqueue(ctl, db, "high", priority=5)
        await self._enqueue(ctl, db, "new-low")

        popped = []
        for _ in range(4):
            item = await ctl.process_queue(db, Provider.KIE, SCOPE)
            if item is None:
                break
            popped.append(item.node_id)
        assert popped == ["high", "old-low", "new-low"]

    @pytest.mark.asyncio
    async def test_queue_is_scoped_by_credential(self, db):
        ctl = _controller()
        await self._enqueue(ctl, db, "n1", scope=OTHER)
        assert await ctl.process_queue(db, Provider.KIE, SCOPE) is None

    @pytest.mark.asyncio
    async def test_return_to_queue_and_terminal_marks(self, db):
        ctl = _controller()
        await self._enqueue(ctl, db, "n1")
        item = await ctl.process_queue(db, Provider.KIE, SCOPE)
        await ctl.return_to_queue(db, item.queue_id)
        assert (await ctl.pending_item_for_task(db, "task-n1")).queue_id == item.queue_id

        again = await ctl.process_queue(db, Provider.KIE, SCOPE)
        await ctl.mark_queue_completed(db, again.queue_id)
        await db.refresh(again)
        assert again.status == QUEUE_COMPLETED
        assert await ctl.pending_item_for_task(db, "task-n1") is None

    @pytest.mark.asyncio
    async def test_remove_queue_items_for_task(self, db):
        ctl = _controller()
        await self._enqueue(ctl, db, "n1")
        await self._enqueue(ctl, db, "n2")
        assert await ctl.remove_queue_items(db, task_id="task-n1") == 1
        rows = (await db.execute(select(AdmissionQueueItem.node_id))).scalars().all()
        assert rows == ["n2"]


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_global_cleanup_expires_and_purges(self, db):
        ctl = _controller()
        item = await ctl.enqueue(db, Provider.KIE, SCOPE, node_type="i2v-kapi", node_id="old")
        old = datetime.now(timezone.utc) - timedelta(days=2)
        await db.execute(
            update(AdmissionQueueItem).where(AdmissionQueueItem.queue_id == item.queue_id).values(created_at=old)
        )

        report = await ctl.global_cleanup(db, queue_expiry_hours=24, queue_retention_days=7)
        assert report["expired_queue_items"] == 1
        await db.refresh(item)
        assert item.status == QUEUE_EXPIRED

        report = await ctl.global_cleanup(db, queue_expiry_hours=24, queue_retention_days=1)
        assert report["purged_queue_items"] == 1

    @pytest.mark.asyncio
    async def test_stats_per_provider(self, db):
        ctl = _controller(max_concurrent={Provider.KIE: 3})
        await ctl.acquire_slot(db, Provider.KIE, SCOPE, "a")
        await ctl.enqueue(db, Provider.KIE, SCOPE, node_type="i2v-kapi", node_id="n")
        stats = {row["provider"]: row for row in await ctl.stats(db)}
        assert stats["kie"]["active_slots"] == 1
        assert stats["kie"]["max_concurrent"] == 3
        assert stats["kie"]["queue_pending"] == 1
        assert stats["runninghub"]["active_slots"] == 0
