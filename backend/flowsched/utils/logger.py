import contextvars
import logging
import sys
from contextlib import contextmanager
from typing import Iterator

from pythonjsonlogger import jsonlogger

# Context variables for correlation
ctx_execution_id = contextvars.ContextVar("execution_id", default=None)
ctx_task_id = contextvars.ContextVar("task_id", default=None)
ctx_provider = contextvars.ContextVar("provider", default=None)


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        # Inject context variables if present
        execution_id = ctx_execution_id.get()
        if execution_id:
            log_record["execution_id"] = execution_id

        task_id = ctx_task_id.get()
        if task_id:
            log_record["task_id"] = task_id

        provider = ctx_provider.get()
        if provider:
            log_record["provider"] = provider


@contextmanager
def bind_execution_context(
    execution_id: str | None = None,
    task_id: str | None = None,
    provider: str | None = None,
) -> Iterator[None]:
    """Bind correlation ids for every log line emitted inside the block."""
    tokens = []
    if execution_id is not None:
        tokens.append((ctx_execution_id, ctx_execution_id.set(execution_id)))
    if task_id is not None:
        tokens.append((ctx_task_id, ctx_task_id.set(task_id)))
    if provider is not None:
        tokens.append((ctx_provider, ctx_provider.set(provider)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def setup_logger(log_format: str = "text", log_level: str = "INFO"):
    """Configure the root logger."""
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format.lower() == "json":
        formatter = CorrelationJsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    # Silence third-party noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)

    return root_logger
