"""Tests for the manual control surface: cancel, retry-node and stop-node."""

from __future__ import annotations

import pytest
from sqlalchemy import select

from conftest import edge, grant_credits, kie_callback, make_config, make_scheduler, node, run_worker
from flowsched.db.models import AdmissionQueueItem, AdmissionSlot, Execution, NodeTask, WorkItem
from flowsched.errors import InvalidStateError, NotFoundError
from flowsched.runtime.states import CANCELLED_BY_USER, STOPPED_BY_USER
from flowsched.services import completion_service, control_service, credit_service, execution_service

USER = "user-1"


def _two_step_graph() -> dict:
    return {
        "nodes": [
            node("prompt", "text-input", text="sunset"),
            node("video", "i2v-kapi", image="https://img/1.png"),
        ],
        "connections": [edge("prompt", "video", "text", "prompt")],
    }


async def _start(factory, scheduler, graph=None, repeat_count=1) -> dict:
    async with factory() as db:
        result = await execution_service.start_execution(
            db, scheduler, user_id=USER, graph=graph or _two_step_graph(), repeat_count=repeat_count
        )
        await db.commit()
    return result


async def _tasks(factory, execution_id: str) -> dict[str, NodeTask]:
    async with factory() as db:
        rows = (await db.execute(select(NodeTask).where(NodeTask.execution_id == execution_id))).scalars().all()
    return {t.node_id: t for t in rows}


async def _status(factory, execution_id: str) -> str:
    async with factory() as db:
        return (await db.get(Execution, execution_id)).status


async def _webhook(factory, scheduler, body: bytes) -> dict:
    async with factory() as db:
        return await completion_service.ingest_webhook(db, scheduler, "kie", body, {"source": "kie"})


async def _control(factory, fn, *args, **kwargs):
    async with factory() as db:
        result = await fn(db, *args, **kwargs)
        await db.commit()
    return result


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_keeps_completed_and_fails_the_rest(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        await run_worker(db_factory, scheduler)

        reply = await _control(db_factory, control_service.cancel_execution, scheduler, result["executionId"])
        assert reply == {"success": True, "status": "cancelled", "cancelledExecutions": [result["executionId"]]}

        tasks = await _tasks(db_factory, result["executionId"])
        assert tasks["prompt"].status == "completed"
        assert tasks["video"].status == "failed"
        assert tasks["video"].error_message == CANCELLED_BY_USER
        assert await _status(db_factory, result["executionId"]) == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_terminal_execution_is_rejected(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        await _control(db_factory, control_service.cancel_execution, scheduler, result["executionId"])
        with pytest.raises(InvalidStateError):
            await _control(db_factory, control_service.cancel_execution, scheduler, result["executionId"])

    @pytest.mark.asyncio
    async def test_cancel_unknown_execution(self, db_factory, scheduler):
        with pytest.raises(NotFoundError):
            await _control(db_factory, control_service.cancel_execution, scheduler, "nope")

    @pytest.mark.asyncio
    async def test_other_users_execution_is_not_found(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        execution_id = result["executionId"]
        task_id = (await _tasks(db_factory, execution_id))["video"].task_id

        with pytest.raises(NotFoundError):
            await _control(db_factory, control_service.cancel_execution, scheduler, execution_id, user_id="user-2")
        with pytest.raises(NotFoundError):
            await _control(db_factory, control_service.stop_node, scheduler, execution_id, task_id, user_id="user-2")
        with pytest.raises(NotFoundError):
            await _control(db_factory, control_service.retry_node, scheduler, execution_id, task_id, user_id="user-2")

        async with db_factory() as db:
            assert (await db.get(Execution, execution_id)).status == "running"
        assert (await _tasks(db_factory, execution_id))["video"].status != "failed"

        cancelled = await _control(
            db_factory, control_service.cancel_execution, scheduler, execution_id, user_id=USER
        )
        assert cancelled["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_drops_open_work_and_queue_items(self, db_factory, scheduler):
        first = await _start(db_factory, scheduler)
        second = await _start(db_factory, scheduler)
        await run_worker(db_factory, scheduler)
        async with db_factory() as db:
            assert (await db.execute(select(AdmissionQueueItem))).scalars().one().execution_id == second["executionId"]

        await _control(db_factory, control_service.cancel_execution, scheduler, second["executionId"])
        async with db_factory() as db:
            assert (await db.execute(select(AdmissionQueueItem))).scalars().all() == []

        # The first run is untouched and still completes.
        await _webhook(db_factory, scheduler, kie_callback("ext-1"))
        assert await _status(db_factory, first["executionId"]) == "completed"

    @pytest.mark.asyncio
    async def test_cancel_keeps_the_issued_calls_slot(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        await run_worker(db_factory, scheduler)

        await _control(db_factory, control_service.cancel_execution, scheduler, result["executionId"])
        async with db_factory() as db:
            [slot] = (await db.execute(select(AdmissionSlot))).scalars().all()
        assert slot.external_id == "ext-1"

        # Only the provider's terminal callback frees it.
        await _webhook(db_factory, scheduler, kie_callback("ext-1"))
        async with db_factory() as db:
            assert (await db.execute(select(AdmissionSlot))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_cancel_without_cascade_starts_next_iteration(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler, repeat_count=3)
        await _control(db_factory, control_service.cancel_execution, scheduler, result["executionId"])
        statuses = [await _status(db_factory, eid) for eid in result["executionIds"]]
        assert statuses == ["cancelled", "running", "pending"]

    @pytest.mark.asyncio
    async def test_cancel_with_cascade_cancels_unstarted_siblings(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler, repeat_count=3)
        reply = await _control(
            db_factory, control_service.cancel_execution, scheduler, result["executionId"], cascade_queued=True
        )
        assert sorted(reply["cancelledExecutions"]) == sorted(result["executionIds"])
        statuses = [await _status(db_factory, eid) for eid in result["executionIds"]]
        assert statuses == ["cancelled", "cancelled", "cancelled"]
        async with db_factory() as db:
            open_items = (await db.execute(
                select(WorkItem).where(WorkItem.status.in_(["queued", "retrying", "running"]))
            )).scalars().all()
        assert open_items == []

    @pytest.mark.asyncio
    async def test_cancel_refunds_charged_unissued_task(self, db_factory):
        scheduler = make_scheduler(make_config(node_costs={"delay": 3}))
        graph = {"nodes": [node("wait", "delay", duration=0)]}
        await grant_credits(db_factory, USER, 5)
        try:
            result = await _start(db_factory, scheduler, graph=graph)
            async with db_factory() as db:
                task = (await db.execute(select(NodeTask))).scalar_one()
                task.charged = True
                await credit_service.debit(db, USER, 3, reference_id=f"task_{task.task_id}")
                await db.commit()
            await _control(db_factory, control_service.cancel_execution, scheduler, result["executionId"])
        finally:
            await scheduler.close()
        async with db_factory() as db:
            assert await credit_service.available_balance(db, USER) == 5


class TestRetryNode:
    async def _failed_run(self, factory, scheduler) -> tuple[dict, dict[str, NodeTask]]:
        result = await _start(factory, scheduler)
        await run_worker(factory, scheduler)
        await _webhook(factory, scheduler, kie_callback("ext-1", success=False))
        return result, await _tasks(factory, result["executionId"])

    @pytest.mark.asyncio
    async def test_retry_resubmits_failed_node(self, db_factory, scheduler, provider_stub):
        result, tasks = await self._failed_run(db_factory, scheduler)
        assert await _status(db_factory, result["executionId"]) == "failed"

        reply = await _control(
            db_factory, control_service.retry_node, scheduler, result["executionId"], tasks["video"].task_id
        )
        assert reply["status"] == "pending"
        assert reply["executionStatus"] == "running"

        await run_worker(db_factory, scheduler)
        assert len(provider_stub.requests) == 2
        retried = (await _tasks(db_factory, result["executionId"]))["video"]
        assert retried.status == "processing"
        assert retried.external_task_id == "ext-2"
        assert retried.error_message is None

        await _webhook(db_factory, scheduler, kie_callback("ext-2"))
        assert await _status(db_factory, result["executionId"]) == "completed"

    @pytest.mark.asyncio
    async def test_only_failed_nodes_can_be_retried(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        tasks = await _tasks(db_factory, result["executionId"])
        with pytest.raises(InvalidStateError):
            await _control(
                db_factory, control_service.retry_node, scheduler, result["executionId"], tasks["video"].task_id
            )

    @pytest.mark.asyncio
    async def test_retry_rejected_for_cancelled_execution(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        await _control(db_factory, control_service.cancel_execution, scheduler, result["executionId"])
        tasks = await _tasks(db_factory, result["executionId"])
        with pytest.raises(InvalidStateError):
            await _control(
                db_factory, control_service.retry_node, scheduler, result["executionId"], tasks["video"].task_id
            )

    @pytest.mark.asyncio
    async def test_task_must_belong_to_execution(self, db_factory, scheduler):
        result, tasks = await self._failed_run(db_factory, scheduler)
        other = await _start(db_factory, scheduler)
        with pytest.raises(NotFoundError):
            await _control(
                db_factory, control_service.retry_node, scheduler, other["executionId"], tasks["video"].task_id
            )


class TestStopNode:
    @pytest.mark.asyncio
    async def test_stop_processing_node(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        await run_worker(db_factory, scheduler)
        tasks = await _tasks(db_factory, result["executionId"])
        assert tasks["video"].status == "processing"

        reply = await _control(
            db_factory, control_service.stop_node, scheduler, result["executionId"], tasks["video"].task_id
        )
        assert reply["status"] == "failed"
        stopped = (await _tasks(db_factory, result["executionId"]))["video"]
        assert stopped.error_message == STOPPED_BY_USER
        # Stopping does not advance or close the execution.
        assert await _status(db_factory, result["executionId"]) == "running"

    @pytest.mark.asyncio
    async def test_stop_pending_node(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        tasks = await _tasks(db_factory, result["executionId"])
        assert tasks["video"].status == "pending"
        await _control(db_factory, control_service.stop_node, scheduler, result["executionId"], tasks["video"].task_id)
        assert (await _tasks(db_factory, result["executionId"]))["video"].status == "failed"

    @pytest.mark.asyncio
    async def test_completed_node_cannot_be_stopped(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        await run_worker(db_factory, scheduler)
        tasks = await _tasks(db_factory, result["executionId"])
        with pytest.raises(InvalidStateError):
            await _control(
                db_factory, control_service.stop_node, scheduler, result["executionId"], tasks["prompt"].task_id
            )

    @pytest.mark.asyncio
    async def test_late_callback_after_stop_only_frees_slot(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        await run_worker(db_factory, scheduler)
        tasks = await _tasks(db_factory, result["executionId"])
        await _control(db_factory, control_service.stop_node, scheduler, result["executionId"], tasks["video"].task_id)

        reply = await _webhook(db_factory, scheduler, kie_callback("ext-1"))
        assert reply["outcome"] == "duplicate"
        assert (await _tasks(db_factory, result["executionId"]))["video"].status == "failed"
