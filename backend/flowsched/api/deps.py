"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Header, Request

from flowsched.runtime.scheduler import Scheduler

DEFAULT_USER = "default"


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity, set by the fronting platform's gateway."""
    return x_user_id or DEFAULT_USER
