"""Tests for the durable work queue: enqueue, claim, retry and reclaim."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import event, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conftest import ProviderStub, make_config, make_scheduler, node, run_worker
from flowsched.config import settings
from flowsched.db.models import AdmissionQueueItem, AdmissionSlot, Base, Execution, NodeTask, WorkItem
from flowsched.registry import Provider
from flowsched.runtime.scheduler import build_scheduler
from flowsched.services import execution_service
from flowsched.worker import enqueue
from flowsched.worker.loop import execute_item, poll_and_claim, reclaim_stalled_items, worker_loop

USER = "user-1"

KIE_GRAPH = {"nodes": [node("v", "i2v-kapi", prompt="p")]}


async def _start(factory, scheduler, graph) -> str:
    async with factory() as db:
        result = await execution_service.start_execution(db, scheduler, user_id=USER, graph=graph)
        await db.commit()
    return result["executionId"]


@pytest.fixture
async def file_db_factory(tmp_path):
    """A file-backed WAL database, so concurrent sessions use separate connections."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'flows.db'}")

    @event.listens_for(eng.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _conn_rec):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=500")
        cursor.close()

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    await eng.dispose()


async def _slot_count(factory) -> int:
    async with factory() as db:
        return (await db.execute(select(func.count()).select_from(AdmissionSlot))).scalar_one()


async def _items(factory) -> list[WorkItem]:
    async with factory() as db:
        return list((await db.execute(select(WorkItem).order_by(WorkItem.created_at))).scalars().all())


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_one_open_node_execution_per_task(self, db):
        first = await enqueue.enqueue_node_execution(db, "t1", "e1")
        assert first is not None
        assert await enqueue.enqueue_node_execution(db, "t1", "e1") is None
        assert await enqueue.enqueue_node_execution(db, "t2", "e1") is not None

    @pytest.mark.asyncio
    async def test_cancel_items_by_type(self, db):
        await enqueue.enqueue_node_execution(db, "t1", "e1")
        await enqueue.enqueue_status_poll(
            db, "t1", "e1", provider="runninghub", external_task_id="x",
            poll_count=0, max_polls=5, delay_seconds=0,
        )
        assert await enqueue.cancel_items(db, task_id="t1", item_type="poll_provider_status") == 1
        statuses = sorted(
            (i.item_type, i.status) for i in (await db.execute(select(WorkItem))).scalars().all()
        )
        assert statuses == [("node_execution", "queued"), ("poll_provider_status", "cancelled")]


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_marks_running_and_counts_attempt(self, db_factory):
        async with db_factory() as db:
            await enqueue.enqueue_node_execution(db, "t1", "e1")
            await db.commit()

        [item] = await poll_and_claim("w1", 5, db_factory)
        assert item.status == "running"
        assert item.locked_by == "w1"
        assert item.attempts == 1
        assert await poll_and_claim("w2", 5, db_factory) == []

    @pytest.mark.asyncio
    async def test_future_items_not_claimed(self, db_factory):
        async with db_factory() as db:
            await enqueue.enqueue_status_poll(
                db, "t1", "e1", provider="runninghub", external_task_id="x",
                poll_count=0, max_polls=5, delay_seconds=60,
            )
            await db.commit()
        assert await poll_and_claim("w1", 5, db_factory) == []

    @pytest.mark.asyncio
    async def test_higher_priority_claimed_first(self, db_factory):
        async with db_factory() as db:
            await enqueue.enqueue_node_execution(db, "t1", "e1")
            await enqueue.enqueue_status_poll(
                db, "t2", "e1", provider="runninghub", external_task_id="x",
                poll_count=0, max_polls=5, delay_seconds=0,
            )
            await db.commit()
        [item] = await poll_and_claim("w1", 1, db_factory)
        assert item.item_type == "poll_provider_status"

    @pytest.mark.asyncio
    async def test_zero_slots(self, db_factory):
        assert await poll_and_claim("w1", 0, db_factory) == []

    @pytest.mark.asyncio
    async def test_stalled_item_reclaimed(self, db_factory):
        async with db_factory() as db:
            await enqueue.enqueue_node_execution(db, "t1", "e1")
            await db.commit()
        await poll_and_claim("w1", 1, db_factory)
        async with db_factory() as db:
            await db.execute(
                update(WorkItem).values(locked_until=datetime.now(timezone.utc) - timedelta(seconds=1))
            )
            await db.commit()

        assert await reclaim_stalled_items(db_factory) == 1
        [item] = await _items(db_factory)
        assert item.status == "retrying"
        assert item.locked_by is None


class TestExecuteItem:
    @pytest.mark.asyncio
    async def test_retryable_error_backs_off(self, db_factory):
        stub = ProviderStub(lambda request: httpx.Response(502, text="bad gateway"))
        scheduler = make_scheduler(make_config(), stub)
        try:
            execution_id = await _start(db_factory, scheduler, {"nodes": [node("v", "i2v-kapi", prompt="p")]})
            await run_worker(db_factory, scheduler)
        finally:
            await scheduler.close()

        [item] = await _items(db_factory)
        assert item.status == "retrying"
        assert item.attempts == 1
        assert len(stub.requests) == 1
        assert "HTTP 502" in item.error_message
        async with db_factory() as db:
            task = (await db.execute(select(NodeTask))).scalar_one()
            execution = await db.get(Execution, execution_id)
        # The task is handed back to queued and its slot freed for the retry.
        assert task.status == "queued"
        assert execution.status == "running"
        assert await _slot_count(db_factory) == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_task(self, db_factory, monkeypatch):
        monkeypatch.setattr(settings, "WORKER_RETRY_DELAY_SECONDS", 0)
        stub = ProviderStub(lambda request: httpx.Response(500, text="boom"))
        scheduler = make_scheduler(make_config(), stub)
        try:
            execution_id = await _start(db_factory, scheduler, {"nodes": [node("v", "i2v-kapi", prompt="p")]})
            await run_worker(db_factory, scheduler)
        finally:
            await scheduler.close()

        assert len(stub.requests) == settings.WORKER_MAX_ATTEMPTS
        [item] = await _items(db_factory)
        assert item.status == "failed"
        assert item.attempts == settings.WORKER_MAX_ATTEMPTS
        async with db_factory() as db:
            task = (await db.execute(select(NodeTask))).scalar_one()
            execution = await db.get(Execution, execution_id)
        assert task.status == "failed"
        assert task.error_message == "Generation failed. Please try again later."
        assert execution.status == "failed"

    @pytest.mark.asyncio
    async def test_cancelled_item_stays_cancelled(self, db_factory, scheduler):
        await _start(db_factory, scheduler, {"nodes": [node("t", "text-input", text="x")]})
        [item] = await poll_and_claim("w1", 1, db_factory)
        async with db_factory() as db:
            await enqueue.cancel_items(db, task_id=item.task_id)
            await db.commit()

        await execute_item(item, scheduler, "w1", db_factory)
        [row] = await _items(db_factory)
        assert row.status == "cancelled"


    @pytest.mark.asyncio
    async def test_unrecordable_failure_leaves_item_for_reclaim(self, db_factory, monkeypatch):
        async def _locked(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr("flowsched.worker.loop._record_failure", _locked)
        stub = ProviderStub(lambda request: httpx.Response(502, text="bad gateway"))
        scheduler = make_scheduler(make_config(), stub)
        try:
            await _start(db_factory, scheduler, KIE_GRAPH)
            [item] = await poll_and_claim("w1", 1, db_factory)
            await execute_item(item, scheduler, "w1", db_factory)
        finally:
            await scheduler.close()

        [row] = await _items(db_factory)
        assert row.status == "running"
        assert "HTTP 502" in item.error_message
        async with db_factory() as db:
            task = (await db.execute(select(NodeTask))).scalar_one()
        assert task.status == "queued"
        assert await _slot_count(db_factory) == 0


class TestConcurrentCalls:
    @pytest.mark.asyncio
    async def test_provider_call_holds_no_transaction(self, file_db_factory):
        calls: list[httpx.Request] = []
        seen_after_first: list[int] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            n = len(calls)
            if n == 1:
                # Longer than busy_timeout: a writer held open here would lock out the second call.
                await asyncio.sleep(1.5)
                seen_after_first.append(len(calls))
            return httpx.Response(200, json={"code": 200, "data": {"taskId": f"ext-{n}"}})

        scheduler = build_scheduler(
            make_config(max_concurrent={Provider.KIE: 10}), transport=httpx.MockTransport(handler)
        )
        try:
            first = await _start(file_db_factory, scheduler, KIE_GRAPH)
            second = await _start(file_db_factory, scheduler, KIE_GRAPH)
            items = await poll_and_claim("w1", 10, file_db_factory)
            assert len(items) == 2
            await asyncio.gather(*(execute_item(i, scheduler, "w1", file_db_factory) for i in items))
        finally:
            await scheduler.close()

        assert [i.status for i in items] == ["done", "done"]
        assert seen_after_first == [2]
        async with file_db_factory() as db:
            tasks = (await db.execute(select(NodeTask))).scalars().all()
        assert {t.execution_id for t in tasks} == {first, second}
        assert all(t.status == "processing" for t in tasks)
        assert sorted(t.external_task_id for t in tasks) == ["ext-1", "ext-2"]
        assert await _slot_count(file_db_factory) == 2

    @pytest.mark.asyncio
    async def test_rejected_call_promotes_the_waiting_one(self, file_db_factory):
        gate = asyncio.Event()
        calls: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                await gate.wait()
                return httpx.Response(422, json={"msg": "bad image"})
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "ext-2"}})

        scheduler = build_scheduler(make_config(), transport=httpx.MockTransport(handler))
        try:
            first = await _start(file_db_factory, scheduler, KIE_GRAPH)
            second = await _start(file_db_factory, scheduler, KIE_GRAPH)
            items = {i.execution_id: i for i in await poll_and_claim("w1", 10, file_db_factory)}

            in_flight = asyncio.create_task(execute_item(items[first], scheduler, "w1", file_db_factory))
            for _ in range(200):
                if calls:
                    break
                await asyncio.sleep(0.01)
            # Ceiling of one: the second call waits on the admission queue.
            await execute_item(items[second], scheduler, "w1", file_db_factory)
            gate.set()
            await in_flight

            async with file_db_factory() as db:
                queued = (await db.execute(select(AdmissionQueueItem))).scalar_one()
                promoted = (
                    await db.execute(select(WorkItem).where(WorkItem.status == "queued"))
                ).scalar_one()
            assert queued.status == "processing"
            assert promoted.execution_id == second
            assert json.loads(promoted.payload_json) == {"queue_id": queued.queue_id}

            await run_worker(file_db_factory, scheduler)
        finally:
            await scheduler.close()

        async with file_db_factory() as db:
            first_exec = await db.get(Execution, first)
            task = (
                await db.execute(select(NodeTask).where(NodeTask.execution_id == second))
            ).scalar_one()
            queued = await db.get(AdmissionQueueItem, queued.queue_id)
        assert first_exec.status == "failed"
        assert task.status == "processing"
        assert task.external_task_id == "ext-2"
        assert queued.status == "completed"
        assert len(calls) == 2


class TestWorkerLoop:
    @pytest.mark.asyncio
    async def test_loop_runs_items_until_cancelled(self, db_factory, scheduler):
        execution_id = await _start(db_factory, scheduler, {"nodes": [node("t", "text-input", text="x")]})
        loop_task = asyncio.create_task(
            worker_loop(scheduler, worker_id="w1", concurrency=2, poll_interval=0.01, session_factory=db_factory)
        )
        try:
            for _ in range(200):
                async with db_factory() as db:
                    status = (await db.get(Execution, execution_id)).status
                if status == "completed":
                    break
                await asyncio.sleep(0.01)
        finally:
            loop_task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await loop_task
        assert status == "completed"
