"""Admission admin endpoints - per-provider load and stuck-slot release."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.api.deps import get_scheduler
from flowsched.db.engine import get_db
from flowsched.errors import NotFoundError
from flowsched.registry import Provider
from flowsched.runtime.scheduler import Scheduler
from flowsched.schemas.admission import ProviderAdmissionStats, SlotOut

router = APIRouter()


@router.get("/stats", response_model=list[ProviderAdmissionStats])
async def admission_stats(
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    return await scheduler.admission.stats(db)


@router.get("/slots", response_model=list[SlotOut])
async def list_slots(
    provider: str | None = None,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    scope = Provider.from_source(provider) if provider else None
    return await scheduler.admission.list_slots(db, scope)


@router.delete("/slots/{slot_id}", status_code=204)
async def release_slot(
    slot_id: str,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    """Force-release a slot (admin action for a provider that never called back)."""
    slot = await scheduler.admission.release_slot_by_id(db, slot_id)
    if slot is None:
        raise NotFoundError(f"Slot {slot_id} not found")
    await scheduler.dispatcher.drain_scope(db, Provider(slot.provider), slot.credential_hash)
