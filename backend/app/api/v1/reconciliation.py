"""Matching set review endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import get_review
from app.api.schemas.reconciliation import MatchingSetResponse
from app.reconciliation.review import ReconciliationReview

router = APIRouter(prefix="/reconciliation/sets", tags=["Reconciliation"])


@router.get("/{set_id}", response_model=MatchingSetResponse)
async def get_matching_set(
    set_id: str,
    review: ReconciliationReview = Depends(get_review),
) -> MatchingSetResponse:
    return MatchingSetResponse(**await review.get_matching_set(set_id))


@router.post("/{set_id}/comparisons/{rule_id}/force", response_model=MatchingSetResponse)
async def force_reconcile_comparison(
    set_id: str,
    rule_id: str,
    review: ReconciliationReview = Depends(get_review),
) -> MatchingSetResponse:
    """Force one comparison rule to pass."""
    return MatchingSetResponse(**await review.force_reconcile_comparison(set_id, rule_id))


@router.post("/{set_id}/force", response_model=MatchingSetResponse)
async def force_reconcile_set(
    set_id: str,
    review: ReconciliationReview = Depends(get_review),
) -> MatchingSetResponse:
    """Reconcile the set regardless of comparison results and resume its members."""
    return MatchingSetResponse(**await review.force_reconcile_set(set_id))


@router.post("/{set_id}/reject", response_model=MatchingSetResponse)
async def reject_matching_set(
    set_id: str,
    review: ReconciliationReview = Depends(get_review),
) -> MatchingSetResponse:
    return MatchingSetResponse(**await review.reject_matching_set(set_id))


@router.post("/{set_id}/rerun", response_model=MatchingSetResponse)
async def rerun_comparisons(
    set_id: str,
    review: ReconciliationReview = Depends(get_review),
) -> MatchingSetResponse:
    """Re-evaluate comparison rules after member data changed."""
    return MatchingSetResponse(**await review.rerun_comparisons(set_id))
