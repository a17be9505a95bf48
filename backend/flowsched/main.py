"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched import __version__
from flowsched.config import settings
from flowsched.db.engine import async_session, engine, get_db
from flowsched.db.models import Base
from flowsched.registry import build_scheduler_config
from flowsched.runtime.scheduler import Scheduler, build_scheduler

# Routers
from flowsched.api.admission import router as admission_router
from flowsched.api.errors import install_error_handlers
from flowsched.api.webhook import router as webhook_router
from flowsched.api.workflows import router as workflows_router

from flowsched.utils.logger import setup_logger
logger = setup_logger(log_format=settings.LOG_FORMAT, log_level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL)


async def _maintenance_loop(scheduler: Scheduler) -> None:
    """Background task: admission cleanup, stranded-queue drain, retention."""
    from flowsched.services.maintenance_service import run_maintenance

    while True:
        await asyncio.sleep(settings.MAINTENANCE_INTERVAL_SECONDS)
        try:
            async with async_session() as db:
                await run_maintenance(db, scheduler, settings)
                await db.commit()
        except Exception:
            logger.exception("Error in maintenance loop")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.is_sqlite:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    scheduler = build_scheduler(build_scheduler_config(settings))
    app.state.scheduler = scheduler

    _maintenance_task = asyncio.create_task(_maintenance_loop(scheduler))
    _worker_task: asyncio.Task | None = None
    if settings.WORKER_EMBEDDED:
        from flowsched.worker.loop import worker_loop as _worker_loop
        _worker_task = asyncio.create_task(_worker_loop(scheduler))
        logger.info(
            "Embedded worker started (concurrency=%d, poll_interval=%.1fs)",
            settings.WORKER_CONCURRENCY,
            settings.WORKER_POLL_INTERVAL,
        )
    logger.info("Application lifespan startup complete; entering serve loop")
    try:
        yield
    finally:
        background = [t for t in (_maintenance_task, _worker_task) if t is not None]
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await scheduler.close()
        await engine.dispose()


app = FastAPI(
    title="flowsched",
    description="Admission-controlled workflow execution scheduler",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)

app.include_router(workflows_router, prefix="/api/workflows", tags=["workflows"])
app.include_router(webhook_router, prefix="/api/webhook", tags=["webhook"])
app.include_router(admission_router, prefix="/api/admission", tags=["admission"])

os.makedirs(settings.ARTIFACTS_DIR, exist_ok=True)
app.mount(
    "/api/artifacts",
    StaticFiles(directory=settings.ARTIFACTS_DIR, html=False),
    name="artifacts",
)


@app.get("/api/health")
async def health(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("Health check database error: %s", exc)
        database = "unreachable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "dialect": settings.FLOW_DB_DIALECT,
        "worker": "embedded" if settings.WORKER_EMBEDDED else "external",
    }


@app.get("/api/metrics", response_class=PlainTextResponse, tags=["observability"])
async def prometheus_metrics():
    """Prometheus-compatible text exposition of in-process metrics.

    Example line: ``flowsched_executions_started_total 42``
    """
    from flowsched.utils.metrics import to_prometheus_text
    return to_prometheus_text()
