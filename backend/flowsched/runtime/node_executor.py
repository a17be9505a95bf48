"""Node executor - runs a single task.

Local node types complete in-process.  Provider node types go through the
admission controller: a denied call is parked on the admission queue and
reported as ``QUEUED`` (not an error); an admitted call takes a slot under a
temporary token, posts to the provider with the callback URL embedded, and on
acceptance re-keys the slot to the provider's task id so the callback can
release it.

The slot is taken and committed before the POST and re-keyed afterwards in a
new transaction, so concurrent workers never wait on one another's HTTP calls.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.connectors.mapping import extract_response, render_template
from flowsched.connectors.provider_client import ProviderClient
from flowsched.db.models import NodeTask
from flowsched.registry import LocalKind, NodeTypeSpec, SchedulerConfig
from flowsched.services.admission_service import AdmissionController
from flowsched.services.credentials import INLINE_KEY_FIELDS, CredentialResolver, ResolvedCredential
from flowsched.utils.metrics import record_admission

logger = logging.getLogger("flowsched.runtime.executor")

QUEUED_MESSAGE = (
    "Request queued due to API rate limits. "
    "It will be processed automatically when a slot becomes available."
)
MAX_DELAY_SECONDS = 60


class NodeOutcome(str, Enum):
    COMPLETED = "completed"  # result available now
    SUBMITTED = "submitted"  # provider accepted; completion arrives later
    QUEUED = "queued"  # admission denied; will be promoted automatically
    FAILED = "failed"


@dataclass
class NodeResult:
    outcome: NodeOutcome
    output: dict[str, Any] = field(default_factory=dict)
    result_url: str | None = None
    external_task_id: str | None = None
    error: str | None = None
    queue_id: str | None = None


@dataclass
class AdmittedCall:
    """A node cleared to run.  Provider calls hold a slot under *slot_token*."""

    spec: NodeTypeSpec
    node_id: str
    inputs: dict[str, Any]
    credential: ResolvedCredential | None = None
    slot_token: str | None = None


def _condition(inputs: dict[str, Any]) -> dict[str, Any]:
    value = inputs.get("input")
    condition = inputs.get("condition", "exists")
    expected = inputs.get("value", "")
    if condition == "empty":
        matched = not value
    elif condition == "contains":
        matched = isinstance(value, str) and str(expected) in value
    elif condition == "equals":
        matched = value == expected or str(value) == str(expected)
    else:
        matched = bool(value)
    return {"true": value if matched else None, "false": None if matched else value, "result": matched}


class NodeExecutor:
    """Runs one task in three steps so no transaction spans the outbound call.

    ``admit`` does the database work and the caller commits it before
    ``issue`` makes the call with no session open.  ``settle`` then swaps or
    frees the slot in a fresh transaction.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        admission: AdmissionController,
        credentials: CredentialResolver,
        client: ProviderClient,
    ):
        self.config = config
        self.admission = admission
        self.credentials = credentials
        self.client = client

    async def admit(
        self,
        db: AsyncSession,
        task: NodeTask,
        inputs: dict[str, Any],
        *,
        promoted_queue_id: str | None = None,
        priority: int = 0,
    ) -> NodeResult | AdmittedCall:
        """Clear *task* to run, or return the result that stops it here.

        *promoted_queue_id* is set when the call comes off the admission queue;
        such calls skip the capacity pre-check (the queue drain already did it)
        and go back on the queue if the slot was taken in the meantime.
        """
        spec = self.config.node_type(task.node_type)
        if spec.is_local:
            return AdmittedCall(spec, task.node_id, dict(inputs))

        provider = spec.provider
        credential = self.credentials.resolve(provider, task)
        if credential is None:
            return NodeResult(
                NodeOutcome.FAILED,
                error=(
                    f"API key not provided for {provider.value}. "
                    "Configure it on the node or in the administrator settings."
                ),
            )

        async def _park() -> NodeResult:
            if promoted_queue_id is not None:
                await self.admission.return_to_queue(db, promoted_queue_id)
                return NodeResult(NodeOutcome.QUEUED, queue_id=promoted_queue_id, output={"message": QUEUED_MESSAGE})
            item = await self.admission.enqueue(
                db,
                provider,
                credential.hash,
                node_type=spec.name,
                node_id=task.node_id,
                execution_id=task.execution_id,
                task_id=task.task_id,
                input_data=inputs,
                priority=priority,
            )
            return NodeResult(NodeOutcome.QUEUED, queue_id=item.queue_id, output={"message": QUEUED_MESSAGE})

        if promoted_queue_id is None and not await self.admission.can_proceed(db, provider, credential.hash):
            return await _park()

        token = f"pending_{uuid.uuid4().hex}"
        if not await self.admission.acquire_slot(
            db, provider, credential.hash, token, task.execution_id, task.node_id
        ):
            return await _park()
        if promoted_queue_id is not None:
            await self.admission.mark_queue_completed(db, promoted_queue_id)
        record_admission(provider.value, "granted")
        return AdmittedCall(
            spec,
            task.node_id,
            self._request_body(spec, inputs),
            credential=credential,
            slot_token=token,
        )

    async def issue(self, call: AdmittedCall) -> NodeResult:
        """Run an admitted node.  Touches no database state.

        ``ProviderError`` propagates; the caller settles the slot either way.
        """
        if call.slot_token is None:
            return await self._run_local(call.spec, call.inputs)

        provider = call.spec.provider
        reply = await self.client.submit(call.spec, call.inputs, call.credential)
        mapped = extract_response(call.spec.response_mapping, reply)
        external_id = mapped.get("taskId")
        external_id = str(external_id) if external_id not in (None, "") else None
        result_url = mapped.get("resultUrl")
        output = {k: v for k, v in mapped.items() if v is not None}

        if external_id and not result_url and not self.config.provider(provider).completes_on_accept:
            logger.info("%s accepted node %s as task %s", provider.value, call.node_id, external_id)
            return NodeResult(NodeOutcome.SUBMITTED, output=output, external_task_id=external_id)
        if result_url or external_id:
            return NodeResult(
                NodeOutcome.COMPLETED,
                output=output,
                result_url=result_url,
                external_task_id=external_id,
            )
        return NodeResult(NodeOutcome.FAILED, error=f"{provider.value} response carried no task id")

    async def settle(self, db: AsyncSession, call: AdmittedCall, result: NodeResult | None) -> str | None:
        """Hand the slot to the provider's task id, or free it.

        A submitted call keeps its slot until the completion arrives; anything
        else (finished on accept, rejected, *result* None after an error)
        releases it.  Returns the freed scope's credential hash, if any.
        """
        if call.slot_token is None:
            return None
        provider = call.spec.provider
        if result is not None and result.outcome is NodeOutcome.SUBMITTED:
            await self.admission.rekey_slot(db, provider, call.slot_token, result.external_task_id)
            return None
        return await self.admission.release_slot(db, provider, call.slot_token)

    # ── Local ───────────────────────────────────────────────────

    async def _run_local(self, spec: NodeTypeSpec, inputs: dict[str, Any]) -> NodeResult:
        kind = spec.local_kind
        if kind is LocalKind.PASSTHROUGH:
            return NodeResult(NodeOutcome.COMPLETED, output=dict(inputs))

        if kind is LocalKind.TEXT_INPUT:
            text = inputs.get("text", inputs.get("value", ""))
            return NodeResult(NodeOutcome.COMPLETED, output={"text": text})

        if kind is LocalKind.MEDIA_INPUT:
            key = spec.name.removesuffix("-input")
            url = inputs.get("url")
            if inputs.get("source") == "upload" and isinstance(inputs.get("file"), dict):
                url = inputs["file"].get("url") or url
            if not url:
                return NodeResult(NodeOutcome.FAILED, error=f"No {key} provided")
            return NodeResult(NodeOutcome.COMPLETED, output={key: url}, result_url=url)

        if kind is LocalKind.CONDITION:
            return NodeResult(NodeOutcome.COMPLETED, output=_condition(inputs))

        if kind is LocalKind.DELAY:
            try:
                duration = float(inputs.get("duration", 5))
            except (TypeError, ValueError):
                duration = 5.0
            await asyncio.sleep(max(0.0, min(duration, MAX_DELAY_SECONDS)))
            return NodeResult(NodeOutcome.COMPLETED, output=dict(inputs))

        raise ValueError(f"Local node type '{spec.name}' has no handler")

    # ── Provider ────────────────────────────────────────────────

    def _request_body(self, spec: NodeTypeSpec, inputs: dict[str, Any]) -> dict[str, Any]:
        payload = {k: v for k, v in inputs.items() if k not in INLINE_KEY_FIELDS}
        payload.setdefault("webhook_url", self.config.callback_url(spec.provider))
        if "text" in payload and "prompt" not in payload:
            payload["prompt"] = payload["text"]
        if not spec.request_mapping:
            return payload
        return render_template(spec.request_mapping, payload)
