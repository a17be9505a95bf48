"""Typed scheduler errors.

Every failure the scheduler surfaces carries an ``ErrorKind`` so callers can
tell user-facing, retryable and terminal conditions apart without matching on
message text.  The HTTP layer maps kinds to status codes in one table
(``flowsched.api.errors``).

Admission denial is deliberately absent: a denied provider call is a queued
task, not an error (see ``flowsched.runtime.node_executor.NodeOutcome``).
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    CYCLIC_GRAPH = "cyclic_graph"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PROVIDER = "provider"
    CALLBACK_FAILURE = "callback_failure"
    UNKNOWN_CALLBACK = "unknown_callback"
    INTERNAL = "internal"


class SchedulerError(Exception):
    """Base class for all scheduler errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.kind.value, "message": self.message}
        if self.detail:
            body.update(self.detail)
        return body


class ValidationError(SchedulerError):
    """Malformed request: missing graph, bad repeat bounds, unknown node type."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or [message]
        super().__init__(message, detail={"errors": self.errors} if errors else None)


class UnknownNodeTypeError(ValidationError):
    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown node type: '{node_type}'")


class UnknownProviderError(ValidationError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: '{provider}'")


class CyclicGraphError(SchedulerError):
    """The graph has a cycle and cannot be ordered."""

    kind = ErrorKind.CYCLIC_GRAPH

    def __init__(self, unresolved: list[str]):
        self.unresolved = unresolved
        super().__init__(
            "Workflow graph contains a cycle",
            detail={"unresolved_nodes": unresolved},
        )


class InsufficientCredits(SchedulerError):
    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, required: float, available: float, iterations: int = 1):
        self.required = required
        self.available = available
        self.iterations = iterations
        super().__init__(
            f"Insufficient credits. Required: {required:g} (for {iterations} iterations), "
            f"Available: {available:g}",
            detail={"required": required, "available": available, "iterations": iterations},
        )


class NotFoundError(SchedulerError):
    kind = ErrorKind.NOT_FOUND


class InvalidStateError(SchedulerError):
    """A manual control operation was requested from the wrong state."""

    kind = ErrorKind.CONFLICT


class ProviderError(SchedulerError):
    """An outbound provider call was refused, failed, or returned an error code."""

    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message, detail={"provider": provider, "status_code": status_code})
