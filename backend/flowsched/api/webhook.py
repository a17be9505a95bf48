"""Provider completion webhook.

Always answers 200: providers do not usefully retry on errors, and a retry
would re-apply a partially processed state change.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.api.deps import get_scheduler
from flowsched.db.engine import get_db
from flowsched.runtime.scheduler import Scheduler
from flowsched.services import completion_service

logger = logging.getLogger("flowsched.api.webhook")

router = APIRouter()


@router.post("")
async def receive_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    query = dict(request.query_params)
    body = await request.body()
    try:
        return await completion_service.ingest_webhook(db, scheduler, query.get("source"), body, query)
    except Exception:
        logger.exception("Webhook ingest failed for source=%s", query.get("source"))
        await db.rollback()
        return {"success": True, "outcome": "error"}
