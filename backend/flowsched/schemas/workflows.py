"""Pydantic models for workflow start and control requests."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class WorkflowCreate(_CamelModel):
    name: str = ""
    graph: dict[str, Any]


class WorkflowOut(_CamelModel):
    workflow_id: str = Field(serialization_alias="workflowId")
    name: str
    graph: dict[str, Any]


class ExecuteRequest(_CamelModel):
    workflow_id: str | None = Field(default=None, alias="workflowId")
    graph: dict[str, Any] | None = None
    repeat_count: int = Field(default=1, alias="repeatCount", ge=1)
    inputs: dict[str, Any] | None = None
    flow_id: str | None = Field(default=None, alias="flowId")

    @model_validator(mode="after")
    def _graph_or_workflow(self) -> "ExecuteRequest":
        if self.graph is None and not self.workflow_id:
            raise ValueError("Either workflowId or graph is required")
        return self


class ExecuteResponse(_CamelModel):
    execution_id: str = Field(serialization_alias="executionId")
    execution_ids: list[str] = Field(serialization_alias="executionIds")
    batch_id: str = Field(serialization_alias="batchId")
    status: str
    node_count: int = Field(serialization_alias="nodeCount")
    total_iterations: int = Field(serialization_alias="totalIterations")


class CancelRequest(_CamelModel):
    id: str
    cancel_queued: bool = Field(default=False, alias="cancelQueued")


class NodeControlRequest(_CamelModel):
    execution_id: str = Field(alias="executionId")
    task_id: str = Field(alias="taskId")
