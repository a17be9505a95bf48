"""Tests for the execution status view."""

from __future__ import annotations

import pytest

from conftest import edge, node, run_worker
from flowsched.errors import NotFoundError
from flowsched.services import execution_service
from flowsched.services.status_service import get_status, progress

USER = "user-1"


def _graph() -> dict:
    return {
        "nodes": [node("p", "text-input", text="hello"), node("v", "i2v-kapi")],
        "connections": [edge("p", "v", "text", "prompt")],
    }


async def _start(factory, scheduler, repeat_count=1) -> dict:
    async with factory() as db:
        result = await execution_service.start_execution(
            db, scheduler, user_id=USER, graph=_graph(), repeat_count=repeat_count
        )
        await db.commit()
    return result


class TestProgress:
    @pytest.mark.parametrize("args,expected", [
        ((1, 1, 0, 4), 0.0),
        ((1, 1, 2, 4), 0.5),
        ((2, 4, 1, 2), 0.375),
        ((3, 3, 5, 5), 1.0),
        ((1, 2, 0, 0), 0.5),
        ((1, 0, 0, 0), 0.0),
    ])
    def test_progress(self, args, expected):
        assert progress(*args) == expected


class TestGetStatus:
    @pytest.mark.asyncio
    async def test_unknown_or_foreign_execution(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler)
        async with db_factory() as db:
            with pytest.raises(NotFoundError):
                await get_status(db, "missing")
            with pytest.raises(NotFoundError):
                await get_status(db, result["executionId"], user_id="someone-else")

    @pytest.mark.asyncio
    async def test_fresh_batch(self, db_factory, scheduler):
        result = await _start(db_factory, scheduler, repeat_count=3)
        async with db_factory() as db:
            status = await get_status(db, result["executionId"], user_id=USER)
        assert status["status"] == "running"
        assert status["totalNodes"] == 2
        assert status["completedNodes"] == 0
        assert status["progress"] == 0.0
        assert [i["iteration"] for i in status["iterations"]] == [1, 2, 3]
        assert status["queuedExecutions"] == result["executionIds"][1:]
        assert status["queuedCount"] == 2
        assert status["flows"] == []

    @pytest.mark.asyncio
    async def test_node_waiting_for_admission(self, db_factory, scheduler):
        first = await _start(db_factory, scheduler)
        second = await _start(db_factory, scheduler)
        await run_worker(db_factory, scheduler)
        async with db_factory() as db:
            running = await get_status(db, first["executionId"])
            waiting = await get_status(db, second["executionId"])

        assert running["progress"] == 0.5
        assert running["nodes"][1]["status"] == "processing"
        assert running["nodes"][1]["queuedForAdmission"] is False
        assert waiting["nodes"][0]["output"] == {"text": "hello"}
        assert waiting["nodes"][1]["status"] == "queued"
        assert waiting["nodes"][1]["queuedForAdmission"] is True
