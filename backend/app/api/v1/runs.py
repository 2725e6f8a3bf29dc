"""
Run endpoints — start, retrigger, status and per-node summaries.

Runs are advanced in the background; these routes return as soon as the
run row exists.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_coordinator
from app.api.schemas.runs import (
    ExecutionResponse,
    NodeStatusResponse,
    RetriggerRequest,
    RunCreatedResponse,
    RunStatusResponse,
    StartRunRequest,
)
from app.engine.coordinator import RunCoordinator

router = APIRouter(tags=["Runs"])


# ─── Start ────────────────────────────────────────────────
@router.post(
    "/workflows/{workflow_id}/runs",
    response_model=RunCreatedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_run(
    workflow_id: str,
    payload: StartRunRequest,
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> RunCreatedResponse:
    """Create a MANUAL run and advance it in the background."""
    run_id = await coordinator.start_run(
        workflow_id,
        [entry.model_dump() for entry in payload.entries],
        background=True,
    )
    return RunCreatedResponse(run_id=run_id)


@router.post(
    "/workflows/{workflow_id}/retrigger",
    response_model=RunCreatedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retrigger(
    workflow_id: str,
    payload: RetriggerRequest,
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> RunCreatedResponse:
    """Re-run the given executions' documents from the given nodes."""
    run_id = await coordinator.retrigger(
        workflow_id,
        payload.execution_ids,
        payload.node_ids,
        background=True,
    )
    return RunCreatedResponse(run_id=run_id)


# ─── Executions by workflow ───────────────────────────────
@router.get("/workflows/{workflow_id}/executions", response_model=list[ExecutionResponse])
async def list_workflow_executions(
    workflow_id: str,
    status_filter: list[str] | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> list[ExecutionResponse]:
    """Failed / held / unrouted executions for operator queues."""
    executions = await coordinator.state.list_workflow_executions(
        workflow_id, status_filter, limit=limit, offset=offset
    )
    return [ExecutionResponse.model_validate(e) for e in executions]


@router.post("/workflows/{workflow_id}/mark-orphaned")
async def mark_orphaned(
    workflow_id: str,
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> dict[str, object]:
    """Orphan waiting executions whose node was removed from the graph."""
    orphaned = await coordinator.mark_orphaned(workflow_id)
    return {"orphaned": orphaned, "total": len(orphaned)}


# ─── Run views ────────────────────────────────────────────
@router.get("/runs/{run_id}", response_model=RunStatusResponse)
async def get_run_status(
    run_id: str,
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> RunStatusResponse:
    return RunStatusResponse(**await coordinator.get_run_status(run_id))


@router.get("/runs/{run_id}/node-statuses", response_model=list[NodeStatusResponse])
async def get_node_statuses(
    run_id: str,
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> list[NodeStatusResponse]:
    return [NodeStatusResponse(**row) for row in await coordinator.get_node_status_summary(run_id)]
