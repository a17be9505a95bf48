"""Maps scheduler errors onto HTTP responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from flowsched.errors import ErrorKind, SchedulerError

logger = logging.getLogger("flowsched.api")

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.CYCLIC_GRAPH: 422,
    ErrorKind.PROVIDER: 502,
}


async def scheduler_error_handler(request: Request, exc: SchedulerError) -> JSONResponse:
    status = STATUS_BY_KIND.get(exc.kind, 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"success": False, **exc.to_dict()})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SchedulerError, scheduler_error_handler)
