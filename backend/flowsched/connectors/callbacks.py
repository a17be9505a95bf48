"""Provider callback normalisation.

Each provider reports completion in its own shape.  The functions here turn a
raw callback body into a ``CompletionEvent`` (``{external_task_id, status,
result_uri, error}`` with ``status`` in ``processing | completed | failed``)
so the ingest path never branches on provider.  Failure text is sanitised for
display; the raw message is logged here once.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from flowsched.registry import Provider
from flowsched.utils.redaction import sanitize_error_message

logger = logging.getLogger("flowsched.callbacks")

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

_COMPLETED_WORDS = frozenset({"completed", "success", "succeeded", "done", "finished"})
_FAILED_WORDS = frozenset({"failed", "fail", "error", "cancelled", "canceled"})


@dataclass(frozen=True)
class CompletionEvent:
    external_task_id: str | None
    status: str
    result_uri: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (COMPLETED, FAILED)


def normalize_status(raw: Any) -> str:
    """Map a provider status word onto the internal three-state vocabulary."""
    word = str(raw or "").strip().lower()
    if word in _COMPLETED_WORDS:
        return COMPLETED
    if word in _FAILED_WORDS:
        return FAILED
    return PROCESSING


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _first_file_url(items: Any) -> str | None:
    if not isinstance(items, list):
        return None
    files = [i for i in items if isinstance(i, dict) and i.get("fileUrl")]
    for item in files:
        if item.get("fileType") == "mp4":
            return item["fileUrl"]
    return files[0]["fileUrl"] if files else None


def _failed(task_id: str | None, raw_error: str | None, provider: Provider) -> CompletionEvent:
    logger.warning("%s reported failure for %s: %s", provider.value, task_id, raw_error)
    return CompletionEvent(task_id, FAILED, error=sanitize_error_message(raw_error))


# ── Per-provider normalisers ────────────────────────────────────


def _runninghub(payload: dict[str, Any]) -> CompletionEvent:
    if "eventData" in payload:
        task_id = payload.get("taskId")
        event_data = _maybe_json(payload.get("eventData")) or {}
        code = event_data.get("code")
        if code not in (None, 0, "0"):
            raw = event_data.get("msg") or "Task failed"
            data = event_data.get("data")
            reason = data.get("failedReason") if isinstance(data, dict) else None
            if isinstance(reason, dict) and reason.get("exception_message"):
                raw = reason["exception_message"]
            return _failed(task_id, raw, Provider.RUNNINGHUB)
        event = payload.get("event")
        if event == "TASK_FAIL":
            return _failed(task_id, payload.get("msg") or "Task failed", Provider.RUNNINGHUB)
        if event == "TASK_END":
            return CompletionEvent(task_id, COMPLETED, result_uri=_first_file_url(event_data.get("data")))
        return CompletionEvent(task_id, PROCESSING)

    # Legacy flat shape
    task_id = payload.get("task_id") or payload.get("id")
    status = normalize_status(payload.get("status"))
    if status == FAILED:
        return _failed(task_id, payload.get("error"), Provider.RUNNINGHUB)
    return CompletionEvent(
        task_id,
        status,
        result_uri=payload.get("result_url") or payload.get("output_url"),
    )


def _kie(payload: dict[str, Any]) -> CompletionEvent:
    data = payload.get("data") or {}
    task_id = data.get("taskId")
    state = data.get("state")
    if state == "fail":
        return _failed(task_id, data.get("failMsg") or "Task failed", Provider.KIE)
    if state != "success":
        return CompletionEvent(task_id, PROCESSING)
    result = _maybe_json(data.get("resultJson")) or {}
    urls = result.get("resultUrls") if isinstance(result, dict) else None
    return CompletionEvent(task_id, COMPLETED, result_uri=urls[0] if urls else None)


def _jsoncut(payload: dict[str, Any]) -> CompletionEvent:
    task_id = payload.get("task_id")
    status = normalize_status(payload.get("status"))
    if status == FAILED:
        return _failed(task_id, payload.get("error"), Provider.JSONCUT)
    return CompletionEvent(task_id, status, result_uri=payload.get("output_url"))


def _postforme(payload: dict[str, Any]) -> CompletionEvent:
    event_type = payload.get("event_type") or payload.get("type") or ""
    data = payload.get("data") or payload
    if event_type != "social.post.result.created" and "post_id" not in data:
        # Account events and the like carry no task.
        logger.info("postforme event without a task: %s", event_type or "(none)")
        return CompletionEvent(None, PROCESSING)

    task_id = data.get("post_id") or data.get("social_post_id") or data.get("id")
    success = data.get("success")
    if success in (True, "true"):
        status = COMPLETED
    elif success in (False, "false"):
        status = FAILED
    else:
        status = normalize_status(data.get("status") or COMPLETED)

    if status == FAILED:
        err = data.get("error")
        raw = (err.get("message") or json.dumps(err)) if isinstance(err, dict) else err
        return _failed(task_id, raw, Provider.POSTFORME)

    platform = data.get("platform_data") or {}
    return CompletionEvent(task_id, status, result_uri=platform.get("url") or platform.get("post_url"))


_NORMALIZERS: dict[Provider, Callable[[dict[str, Any]], CompletionEvent]] = {
    Provider.RUNNINGHUB: _runninghub,
    Provider.KIE: _kie,
    Provider.JSONCUT: _jsoncut,
    Provider.POSTFORME: _postforme,
}


def normalize_callback(
    provider: Provider,
    payload: dict[str, Any],
    query: Mapping[str, str] | None = None,
) -> CompletionEvent:
    """Normalise a callback body; a ``task_id`` query parameter fills a missing id."""
    event = _NORMALIZERS[provider](payload)
    task_id = event.external_task_id
    if task_id is None and query and query.get("task_id"):
        task_id = query["task_id"]
    if task_id is not None:
        task_id = str(task_id)
    if task_id != event.external_task_id:
        event = CompletionEvent(task_id, event.status, event.result_uri, event.error)
    return event
