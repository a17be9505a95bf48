"""Async HTTP client for provider APIs (submit + status query).

All errors surface as ``ProviderError``; HTTP 5xx and transport failures are
flagged ``retryable`` so the worker backs off instead of failing the task.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from flowsched.connectors.callbacks import COMPLETED, FAILED, PROCESSING, normalize_status
from flowsched.errors import ProviderError
from flowsched.registry import NodeTypeSpec, Provider, SchedulerConfig
from flowsched.services.credentials import ResolvedCredential
from flowsched.utils.metrics import record_provider_call

logger = logging.getLogger("flowsched.connectors.provider")

# RunningHub codes meaning "no such task" on the status query.
_MISSING_TASK_CODES = frozenset({404, 40001, 40002, 50001})


@dataclass(frozen=True)
class StatusResult:
    status: str  # processing | completed | failed
    result_url: str | None = None
    error: str | None = None


class ProviderClient:
    def __init__(
        self,
        config: SchedulerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self._client = httpx.AsyncClient(
            timeout=config.provider_timeout_seconds,
            transport=transport,
        )

    def url_for(self, spec: NodeTypeSpec) -> str:
        if spec.provider is None:
            raise ProviderError("none", f"Node type '{spec.name}' has no provider")
        if spec.endpoint.startswith(("http://", "https://")):
            return spec.endpoint
        base = self.config.provider(spec.provider).base_url
        return base.rstrip("/") + "/" + spec.endpoint.lstrip("/")

    async def _post(
        self,
        provider: Provider,
        url: str,
        body: dict[str, Any],
        credential: ResolvedCredential,
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json", **credential.authorization_header()}
        started = time.monotonic()
        try:
            resp = await self._client.post(url, json=body, headers=headers)
        except httpx.RequestError as exc:
            record_provider_call(provider.value, time.monotonic() - started, ok=False)
            raise ProviderError(provider.value, f"Request to {provider.value} failed: {exc}", retryable=True) from exc
        record_provider_call(provider.value, time.monotonic() - started, ok=resp.status_code < 400)
        return resp

    async def submit(
        self,
        spec: NodeTypeSpec,
        body: dict[str, Any],
        credential: ResolvedCredential,
    ) -> dict[str, Any]:
        """POST *body* to the node type's endpoint and return the JSON reply."""
        provider = spec.provider
        url = self.url_for(spec)
        logger.info("Submitting %s to %s (credential %r)", spec.name, url, credential)
        resp = await self._post(provider, url, body, credential)

        if resp.status_code >= 400:
            raise ProviderError(
                provider.value,
                f"{provider.value} returned HTTP {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
                retryable=resp.status_code >= 500,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(provider.value, f"{provider.value} returned invalid JSON") from exc

        provider_spec = self.config.provider(provider)
        if provider_spec.code_field_signals_error and isinstance(data, dict):
            code = data.get("code")
            if code not in (None, 0, "0"):
                msg = str(data.get("msg") or "API error")
                if "required_input_missing" in msg:
                    msg = "Required input is missing. Please check all inputs are connected."
                raise ProviderError(provider.value, f"{provider.value} API error (code {code}): {msg}")
        return data if isinstance(data, dict) else {"data": data}

    async def query_status(
        self,
        provider: Provider,
        external_task_id: str,
        credential: ResolvedCredential,
    ) -> StatusResult:
        """Ask the provider for a task's status (pull completion path)."""
        spec = self.config.provider(provider)
        if not spec.supports_polling:
            raise ProviderError(provider.value, f"{provider.value} does not support status queries")

        resp = await self._post(provider, spec.status_url, {"taskId": external_task_id}, credential)
        if resp.status_code >= 400:
            return StatusResult(FAILED, error=f"Task not found or expired (HTTP {resp.status_code})")
        if resp.status_code != 200:
            raise ProviderError(provider.value, f"HTTP {resp.status_code}", status_code=resp.status_code, retryable=True)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(provider.value, "Invalid JSON response", retryable=True) from exc
        if not isinstance(data, dict):
            raise ProviderError(provider.value, "Unexpected status response shape", retryable=True)

        code = data.get("code")
        if code not in (None, 0, "0"):
            msg = data.get("msg") or "Unknown API error"
            if code in _MISSING_TASK_CODES:
                return StatusResult(FAILED, error=f"Task not found: {msg}")
            return StatusResult(FAILED, error=f"API error (code {code}): {msg}")

        task_data = data.get("data") if isinstance(data.get("data"), dict) else data
        status = normalize_status(task_data.get("status") or data.get("status"))
        result_url = None
        for results in (task_data.get("results"), data.get("results")):
            if isinstance(results, list) and results and isinstance(results[0], dict):
                result_url = results[0].get("url")
                break
        if result_url is None:
            output = task_data.get("output")
            if isinstance(output, dict) and output.get("video"):
                result_url = output["video"]
            else:
                result_url = task_data.get("resultUrl")

        error = task_data.get("errorMessage") or data.get("errorMessage") or data.get("msg")
        if status == COMPLETED:
            return StatusResult(COMPLETED, result_url=result_url)
        if status == FAILED:
            return StatusResult(FAILED, error=error)
        return StatusResult(PROCESSING)

    async def close(self) -> None:
        await self._client.aclose()
