"""Workflows API router - start runs, read status, manual control."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.api.deps import get_scheduler, get_user_id
from flowsched.db.engine import get_db
from flowsched.runtime.scheduler import Scheduler
from flowsched.schemas.workflows import (
    CancelRequest,
    ExecuteRequest,
    ExecuteResponse,
    NodeControlRequest,
    WorkflowCreate,
    WorkflowOut,
)
from flowsched.services import control_service, execution_service, status_service

router = APIRouter()


@router.post("", response_model=WorkflowOut, status_code=201, response_model_by_alias=True)
async def save_workflow(
    body: WorkflowCreate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    workflow = await execution_service.save_workflow(db, user_id, body.name, body.graph)
    return WorkflowOut(workflow_id=workflow.workflow_id, name=workflow.name, graph=body.graph)


@router.get("/status")
async def get_status(
    id: str = Query(...),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return await status_service.get_status(db, id, user_id)


@router.get("/{workflow_id}", response_model=WorkflowOut, response_model_by_alias=True)
async def get_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    workflow = await execution_service.get_workflow(db, workflow_id, user_id)
    return WorkflowOut(workflow_id=workflow.workflow_id, name=workflow.name, graph=json.loads(workflow.graph_json))


@router.post("/execute", response_model=ExecuteResponse, response_model_by_alias=True)
async def execute(
    body: ExecuteRequest,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
    user_id: str = Depends(get_user_id),
):
    result = await execution_service.start_execution(
        db,
        scheduler,
        user_id=user_id,
        graph=body.graph,
        workflow_id=body.workflow_id,
        repeat_count=body.repeat_count,
        inputs=body.inputs,
        flow_id=body.flow_id,
    )
    return ExecuteResponse(
        execution_id=result["executionId"],
        execution_ids=result["executionIds"],
        batch_id=result["batchId"],
        status=result["status"],
        node_count=result["nodeCount"],
        total_iterations=result["totalIterations"],
    )


@router.post("/cancel")
async def cancel(
    body: CancelRequest,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
    user_id: str = Depends(get_user_id),
):
    return await control_service.cancel_execution(
        db, scheduler, body.id, body.cancel_queued, user_id=user_id
    )


@router.post("/retry-node")
async def retry_node(
    body: NodeControlRequest,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
    user_id: str = Depends(get_user_id),
):
    return await control_service.retry_node(
        db, scheduler, body.execution_id, body.task_id, user_id=user_id
    )


@router.post("/stop-node")
async def stop_node(
    body: NodeControlRequest,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
    user_id: str = Depends(get_user_id),
):
    return await control_service.stop_node(
        db, scheduler, body.execution_id, body.task_id, user_id=user_id
    )
