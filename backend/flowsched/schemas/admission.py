"""Pydantic models for the admission admin endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ProviderAdmissionStats(BaseModel):
    provider: str
    max_concurrent: int
    active_slots: int
    queue_pending: int
    queue_processing: int
    queue_completed: int
    queue_failed: int
    queue_expired: int


class SlotOut(BaseModel):
    slot_id: str
    provider: str
    credential_hash: str
    external_id: str
    execution_id: str | None = None
    node_id: str | None = None
    acquired_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}
