"""Webhook trigger endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, status

from app.api.deps import get_coordinator
from app.api.schemas.runs import RunCreatedResponse
from app.engine.coordinator import RunCoordinator

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/{node_id}/trigger",
    response_model=RunCreatedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_webhook(
    node_id: str,
    payload: dict[str, Any] | None = Body(None),
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> RunCreatedResponse:
    """Start a WEBHOOK run at ``node_id`` with the request body as metadata."""
    run_id = await coordinator.trigger_webhook(node_id, payload or {}, background=True)
    return RunCreatedResponse(run_id=run_id)
