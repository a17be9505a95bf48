"""Shared fixtures for backend tests."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from flowsched.config import Settings
from flowsched.db.models import Base
from flowsched.registry import Provider, SchedulerConfig, build_scheduler_config
from flowsched.runtime.scheduler import Scheduler, build_scheduler
from flowsched.services import credit_service
from flowsched.worker.loop import execute_item, poll_and_claim

_SQLITE_URL = "sqlite+aiosqlite://"

KIE_KEY = "kie-admin-key"


# ── Database ────────────────────────────────────────────────────


async def _make_db() -> tuple:
    """Create an in-memory SQLite engine with all tables and return (engine, session_factory)."""
    eng = create_async_engine(
        _SQLITE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    return eng, factory


@pytest.fixture
async def db_factory():
    eng, factory = await _make_db()
    yield factory
    await eng.dispose()


@pytest.fixture
async def db(db_factory):
    async with db_factory() as session:
        yield session


# ── Scheduler config ────────────────────────────────────────────


def make_config(**overrides: Any) -> SchedulerConfig:
    """A test config: KIE capped at one concurrent call, instant polls."""
    base = build_scheduler_config(Settings(_env_file=None))
    defaults: dict[str, Any] = {
        "app_url": "http://test",
        "credential_encryption_key": "test-encryption-secret",
        "fallback_api_keys": {Provider.KIE: KIE_KEY},
        "max_concurrent": {Provider.KIE: 1},
        "node_costs": {},
        "poll_interval_seconds": 0,
        "store_results": False,
    }
    defaults.update(overrides)
    return base.with_overrides(**defaults)


@pytest.fixture
def config() -> SchedulerConfig:
    return make_config()


# ── Provider stub ───────────────────────────────────────────────


class ProviderStub:
    """httpx.MockTransport handler that records requests and hands out task ids."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response] | None = None):
        self.requests: list[httpx.Request] = []
        self._counter = 0
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._responder is not None:
            return self._responder(request)
        self._counter += 1
        return httpx.Response(200, json={"code": 200, "data": {"taskId": f"ext-{self._counter}"}})

    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def provider_stub() -> ProviderStub:
    return ProviderStub()


def make_scheduler(config: SchedulerConfig, stub: ProviderStub | None = None) -> Scheduler:
    return build_scheduler(config, transport=httpx.MockTransport(stub or ProviderStub()))


@pytest.fixture
async def scheduler(config, provider_stub):
    sched = make_scheduler(config, provider_stub)
    yield sched
    await sched.close()


# ── Graph helpers ───────────────────────────────────────────────


def node(node_id: str, node_type: str, **data: Any) -> dict[str, Any]:
    return {"id": node_id, "type": node_type, "data": data}


def edge(src: str, dst: str, from_port: str = "output", to_port: str = "input") -> dict[str, Any]:
    return {"from": {"nodeId": src, "portId": from_port}, "to": {"nodeId": dst, "portId": to_port}}


def kie_callback(task_id: str, *, success: bool = True, url: str = "https://cdn.test/out.mp4") -> bytes:
    data: dict[str, Any] = {"taskId": task_id, "state": "success" if success else "fail"}
    if success:
        data["resultJson"] = json.dumps({"resultUrls": [url]})
    else:
        data["failMsg"] = "Model crashed"
    return json.dumps({"code": 200, "data": data}).encode()


async def grant_credits(factory, user_id: str, amount: float) -> None:
    async with factory() as session:
        await credit_service.grant(session, user_id, amount)
        await session.commit()


async def run_worker(factory, scheduler: Scheduler, max_rounds: int = 25) -> int:
    """Claim and execute work items until the queue is idle.  Returns items run."""
    executed = 0
    for _ in range(max_rounds):
        items = await poll_and_claim("test-worker", 10, factory)
        if not items:
            break
        for item in items:
            await execute_item(item, scheduler, "test-worker", factory)
            executed += 1
    return executed
