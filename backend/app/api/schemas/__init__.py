"""API schema package."""

from app.api.schemas.reconciliation import (
    ComparisonResultResponse,
    MatchingSetResponse,
    SetDocumentResponse,
)
from app.api.schemas.runs import (
    ExecutionDetailResponse,
    ExecutionResponse,
    NodeLogResponse,
    NodeStatusResponse,
    ResumeRequest,
    ResumeResponse,
    RetriggerRequest,
    RunCreatedResponse,
    RunEntry,
    RunStatusResponse,
    StartRunRequest,
)

__all__ = [
    "ComparisonResultResponse",
    "ExecutionDetailResponse",
    "ExecutionResponse",
    "MatchingSetResponse",
    "NodeLogResponse",
    "NodeStatusResponse",
    "ResumeRequest",
    "ResumeResponse",
    "RetriggerRequest",
    "RunCreatedResponse",
    "RunEntry",
    "RunStatusResponse",
    "SetDocumentResponse",
    "StartRunRequest",
]
