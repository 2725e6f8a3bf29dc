"""Matching set review schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class SetDocumentResponse(BaseModel):
    document_execution_id: str
    extractor_id: str


class ComparisonResultResponse(BaseModel):
    comparison_rule_id: str
    status: str
    note: str | None
    resolved_at: datetime | None


class MatchingSetResponse(BaseModel):
    id: str
    rule_id: str
    variation_id: str | None
    anchor_document_execution_id: str | None
    status: str
    created_at: datetime
    resolved_at: datetime | None
    documents: list[SetDocumentResponse]
    comparison_results: list[ComparisonResultResponse]
