"""Execution endpoints — detail, resume and operator deletion."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from app.api.deps import get_coordinator
from app.api.schemas.runs import (
    ExecutionDetailResponse,
    ExecutionResponse,
    NodeLogResponse,
    ResumeRequest,
    ResumeResponse,
)
from app.engine.coordinator import RunCoordinator

router = APIRouter(prefix="/executions", tags=["Executions"])


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    execution_id: str,
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> ExecutionDetailResponse:
    """Execution with its node visit log, oldest first."""
    execution = await coordinator.state.get_execution(execution_id)
    logs = await coordinator.state.list_logs(execution_id)
    return ExecutionDetailResponse(
        **ExecutionResponse.model_validate(execution).model_dump(),
        logs=[NodeLogResponse.model_validate(log) for log in logs],
    )


@router.post("/{execution_id}/resume", response_model=ResumeResponse)
async def resume_execution(
    execution_id: str,
    payload: ResumeRequest,
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> ResumeResponse:
    """Continue a held or unrouted execution past ``from_node_id``."""
    result = await coordinator.resume_execution(
        execution_id,
        payload.from_node_id,
        payload.run_id,
        payload.port,
    )
    return ResumeResponse(execution_id=execution_id, status=result)


@router.delete("/{execution_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_execution(
    execution_id: str,
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> Response:
    await coordinator.delete_execution(execution_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
