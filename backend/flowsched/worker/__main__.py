"""``python -m flowsched.worker``: standalone dispatcher process.

Used with PostgreSQL, where several workers can share the ``work_items``
table.  ``WORKER_ID`` names the process in claim records; concurrency and
poll interval come from settings.  In SQLite dev mode the API process runs
the same loop itself (``WORKER_EMBEDDED``) and this entrypoint is not needed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("flowsched.worker")

SCHEMA_PROBE = text("SELECT 1 FROM work_items LIMIT 1")


async def _await_schema(attempts: int = 10, pause: float = 2.0) -> None:
    from flowsched.db.engine import async_session

    last_error: Exception | None = None
    for attempt in range(attempts):
        try:
            async with async_session() as db:
                await db.execute(SCHEMA_PROBE)
            return
        except (SQLAlchemyError, OSError) as exc:
            last_error = exc
            logger.warning("Schema probe %d/%d failed: %s", attempt + 1, attempts, exc)
            await asyncio.sleep(pause)
    raise RuntimeError(
        "work_items table unavailable; run `alembic upgrade head` first"
    ) from last_error


def _install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)


async def main() -> None:
    from flowsched.config import settings
    from flowsched.registry import build_scheduler_config
    from flowsched.runtime.scheduler import build_scheduler
    from flowsched.utils.logger import setup_logger
    from flowsched.worker.loop import worker_loop

    setup_logger(log_format=settings.LOG_FORMAT, log_level=settings.LOG_LEVEL)
    await _await_schema()

    scheduler = build_scheduler(build_scheduler_config(settings))
    stop = asyncio.Event()
    _install_stop_handlers(stop)

    runner = asyncio.create_task(
        worker_loop(
            scheduler,
            worker_id=os.environ.get("WORKER_ID"),
            concurrency=settings.WORKER_CONCURRENCY,
            poll_interval=settings.WORKER_POLL_INTERVAL,
        )
    )
    logger.info("Worker running against %s", settings.FLOW_DB_DIALECT)

    await stop.wait()
    logger.info("Shutdown requested")
    runner.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await runner
    await scheduler.close()


if __name__ == "__main__":
    asyncio.run(main())
