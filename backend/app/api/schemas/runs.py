"""Run, execution and resume request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RunEntry(BaseModel):
    """One document entering a new run."""

    document_id: str = Field(..., min_length=1)
    start_node_id: str | None = None
    metadata: dict[str, Any] | None = None


class StartRunRequest(BaseModel):
    entries: list[RunEntry] = Field(..., min_length=1)


class RetriggerRequest(BaseModel):
    execution_ids: list[str] = Field(..., min_length=1)
    node_ids: list[str] = Field(..., min_length=1)


class ResumeRequest(BaseModel):
    from_node_id: str
    run_id: str
    port: str | None = None


class RunCreatedResponse(BaseModel):
    run_id: str
    status: str = "running"


class RunStatusResponse(BaseModel):
    id: str
    workflow_id: str
    status: str
    triggered_by: str
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    execution_counts: dict[str, int]


class NodeStatusResponse(BaseModel):
    """Executions parked at a node plus completed / failed visits."""

    node_id: str
    name: str | None
    kind: str
    processing: int = 0
    held: int = 0
    unrouted: int = 0
    failed: int = 0
    completed: int = 0


class ExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    run_id: str
    document_id: str | None
    status: str
    current_node_id: str | None
    unrouted_port: str | None
    orphaned_node_name: str | None
    error_message: str | None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime


class NodeLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    node_id: str
    sequence: int
    status: str
    output_port: str | None
    error: str | None
    input_metadata: dict[str, Any] | None
    output_metadata: dict[str, Any] | None
    started_at: datetime | None
    completed_at: datetime | None


class ExecutionDetailResponse(ExecutionResponse):
    logs: list[NodeLogResponse] = Field(default_factory=list)


class ResumeResponse(BaseModel):
    execution_id: str
    status: str
