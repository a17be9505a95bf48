"""Node-type table - static metadata selecting how each node type executes.

Local types run in-process and complete immediately.  Provider types map
the node's merged input onto a request body with ``{{path}}`` templates and
pull the external task id / result URL out of the accept response with
``$.path`` selectors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from flowsched.registry.providers import Provider


class ExecutionMode(str, Enum):
    LOCAL = "local"
    PROVIDER = "provider"


class LocalKind(str, Enum):
    PASSTHROUGH = "passthrough"
    TEXT_INPUT = "text_input"
    MEDIA_INPUT = "media_input"
    CONDITION = "condition"
    DELAY = "delay"


@dataclass(frozen=True)
class NodeTypeSpec:
    name: str
    mode: ExecutionMode
    local_kind: LocalKind | None = None
    provider: Provider | None = None
    endpoint: str = ""
    request_mapping: dict[str, Any] = field(default_factory=dict)
    response_mapping: dict[str, str] = field(default_factory=dict)
    # Marks the graph's repeat trigger (may override the requested repeat count).
    is_trigger: bool = False

    @property
    def is_local(self) -> bool:
        return self.mode is ExecutionMode.LOCAL


def _local(name: str, kind: LocalKind, *, is_trigger: bool = False) -> NodeTypeSpec:
    return NodeTypeSpec(name=name, mode=ExecutionMode.LOCAL, local_kind=kind, is_trigger=is_trigger)


BUILTIN_NODE_TYPES: tuple[NodeTypeSpec, ...] = (
    _local("manual-trigger", LocalKind.PASSTHROUGH, is_trigger=True),
    _local("start-flow", LocalKind.PASSTHROUGH),
    _local("flow-merge", LocalKind.PASSTHROUGH),
    _local("text-input", LocalKind.TEXT_INPUT),
    _local("image-input", LocalKind.MEDIA_INPUT),
    _local("video-input", LocalKind.MEDIA_INPUT),
    _local("audio-input", LocalKind.MEDIA_INPUT),
    _local("condition", LocalKind.CONDITION),
    _local("delay", LocalKind.DELAY),
    NodeTypeSpec(
        name="t2i-rh",
        mode=ExecutionMode.PROVIDER,
        provider=Provider.RUNNINGHUB,
        endpoint="/task/openapi/ai-app/run",
        request_mapping={
            "webappId": "{{data.webappId}}",
            "nodeInfoList": [{"fieldName": "text", "fieldValue": "{{prompt}}"}],
            "webhookUrl": "{{webhook_url}}",
        },
        response_mapping={"taskId": "$.data.taskId"},
    ),
    NodeTypeSpec(
        name="i2v-rh",
        mode=ExecutionMode.PROVIDER,
        provider=Provider.RUNNINGHUB,
        endpoint="/task/openapi/ai-app/run",
        request_mapping={
            "webappId": "{{data.webappId}}",
            "nodeInfoList": [
                {"fieldName": "image", "fieldValue": "{{image}}"},
                {"fieldName": "text", "fieldValue": "{{prompt}}"},
            ],
            "webhookUrl": "{{webhook_url}}",
        },
        response_mapping={"taskId": "$.data.taskId"},
    ),
    NodeTypeSpec(
        name="i2v-kapi",
        mode=ExecutionMode.PROVIDER,
        provider=Provider.KIE,
        endpoint="/api/v1/jobs/createTask",
        request_mapping={
            "model": "{{model}}",
            "callBackUrl": "{{webhook_url}}",
            "input": {"prompt": "{{prompt}}", "image_url": "{{image}}"},
        },
        response_mapping={"taskId": "$.data.taskId"},
    ),
    NodeTypeSpec(
        name="i2i-banana",
        mode=ExecutionMode.PROVIDER,
        provider=Provider.KIE,
        endpoint="/api/v1/jobs/createTask",
        request_mapping={
            "model": "google/nano-banana-edit",
            "callBackUrl": "{{webhook_url}}",
            "input": {"prompt": "{{prompt}}", "image_urls": ["{{image}}"]},
        },
        response_mapping={"taskId": "$.data.taskId"},
    ),
    NodeTypeSpec(
        name="video-merge",
        mode=ExecutionMode.PROVIDER,
        provider=Provider.JSONCUT,
        endpoint="/v1/jobs",
        request_mapping={
            "type": "merge",
            "inputs": ["{{video}}", "{{video2}}"],
            "webhook_url": "{{webhook_url}}",
        },
        response_mapping={"taskId": "$.task_id", "resultUrl": "$.output_url"},
    ),
    NodeTypeSpec(
        name="social-post",
        mode=ExecutionMode.PROVIDER,
        provider=Provider.POSTFORME,
        endpoint="/v1/social-posts",
        request_mapping={
            "caption": "{{prompt}}",
            "media": [{"url": "{{video}}"}],
            "social_accounts": "{{accounts}}",
        },
        response_mapping={"taskId": "$.id", "resultUrl": "$.platform_data.url"},
    ),
)
