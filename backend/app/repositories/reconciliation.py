"""
Reconciliation repository — held documents, matching sets, set docs and
comparison results.

Repository rules:
- Pure data-access logic only
- Every function receives AsyncSession explicitly
- Functions flush, but never commit
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import ComparisonStatus, HeldStatus, MatchingSetStatus
from app.db.models.base import utcnow
from app.db.models.held_document import HeldDocument
from app.db.models.matching_set import ComparisonResult, MatchingSet, SetDoc

# Results an automatic evaluation is never allowed to replace
LOCKED_COMPARISON_STATUSES = (ComparisonStatus.FORCE.value, ComparisonStatus.REJECTED.value)


# ─── Held documents ───────────────────────────────────────

async def upsert_held_document(
    db: AsyncSession,
    *,
    execution_id: str,
    node_id: str,
    hold_kind: str,
    status: str = HeldStatus.HELD.value,
    **fields: Any,
) -> HeldDocument:
    """Create or refresh the single held row for (execution, node)."""
    result = await db.execute(
        select(HeldDocument).where(
            HeldDocument.document_execution_id == execution_id,
            HeldDocument.node_id == node_id,
        )
    )
    held = result.scalar_one_or_none()
    if held is None:
        held = HeldDocument(document_execution_id=execution_id, node_id=node_id, hold_kind=hold_kind)
        db.add(held)

    held.hold_kind = hold_kind
    held.status = status
    for key in ("extractor_id", "rule_id", "folder_id", "slot_id", "slot_label", "reason"):
        if key in fields:
            setattr(held, key, fields[key])
    held.updated_at = utcnow()

    await db.flush()
    return held


async def set_held_status(
    db: AsyncSession,
    execution_ids: list[str],
    status: str,
    *,
    node_id: str | None = None,
    rule_id: str | None = None,
    only_open: bool = False,
) -> int:
    if not execution_ids:
        return 0
    stmt = update(HeldDocument).where(HeldDocument.document_execution_id.in_(execution_ids))
    if node_id is not None:
        stmt = stmt.where(HeldDocument.node_id == node_id)
    if rule_id is not None:
        stmt = stmt.where(HeldDocument.rule_id == rule_id)
    if only_open:
        stmt = stmt.where(HeldDocument.status == HeldStatus.HELD.value)
    result = await db.execute(stmt.values(status=status, updated_at=utcnow()))
    await db.flush()
    return result.rowcount or 0


async def list_held_documents(db: AsyncSession, execution_id: str) -> list[HeldDocument]:
    result = await db.execute(
        select(HeldDocument).where(HeldDocument.document_execution_id == execution_id).order_by(HeldDocument.held_at)
    )
    return list(result.scalars().all())


# ─── Matching sets ────────────────────────────────────────

async def create_matching_set(db: AsyncSession, *, rule_id: str, anchor_execution_id: str) -> MatchingSet:
    matching_set = MatchingSet(
        rule_id=rule_id,
        anchor_document_execution_id=anchor_execution_id,
        status=MatchingSetStatus.PENDING.value,
    )
    db.add(matching_set)
    await db.flush()
    return matching_set


async def get_matching_set(db: AsyncSession, set_id: str) -> MatchingSet | None:
    return await db.get(MatchingSet, set_id)


async def list_pending_sets(db: AsyncSession, rule_id: str) -> list[MatchingSet]:
    """Pending sets for a rule, oldest first."""
    stmt = (
        select(MatchingSet)
        .where(MatchingSet.rule_id == rule_id, MatchingSet.status == MatchingSetStatus.PENDING.value)
        .order_by(MatchingSet.created_at, MatchingSet.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def update_matching_set(db: AsyncSession, set_id: str, **fields: Any) -> MatchingSet | None:
    matching_set = await get_matching_set(db, set_id)
    if matching_set is None:
        return None
    for key, value in fields.items():
        if key not in {"status", "variation_id", "resolved_at"}:
            raise ValueError(f"Unknown matching set field: {key}")
        setattr(matching_set, key, value)
    await db.flush()
    return matching_set


async def add_set_doc(db: AsyncSession, *, set_id: str, execution_id: str, extractor_id: str) -> SetDoc:
    """Add a member; the (set, extractor) unique constraint rejects duplicate roles."""
    doc = SetDoc(matching_set_id=set_id, document_execution_id=execution_id, extractor_id=extractor_id)
    db.add(doc)
    await db.flush()
    return doc


async def list_set_docs(db: AsyncSession, set_id: str) -> list[SetDoc]:
    result = await db.execute(
        select(SetDoc).where(SetDoc.matching_set_id == set_id).order_by(SetDoc.added_at, SetDoc.id)
    )
    return list(result.scalars().all())


async def list_set_docs_for_sets(db: AsyncSession, set_ids: list[str]) -> dict[str, list[SetDoc]]:
    if not set_ids:
        return {}
    result = await db.execute(
        select(SetDoc).where(SetDoc.matching_set_id.in_(set_ids)).order_by(SetDoc.added_at, SetDoc.id)
    )
    grouped: dict[str, list[SetDoc]] = {set_id: [] for set_id in set_ids}
    for doc in result.scalars().all():
        grouped[doc.matching_set_id].append(doc)
    return grouped


# ─── Comparison results ───────────────────────────────────

async def list_comparison_results(db: AsyncSession, set_id: str) -> list[ComparisonResult]:
    result = await db.execute(
        select(ComparisonResult)
        .where(ComparisonResult.matching_set_id == set_id)
        .order_by(ComparisonResult.comparison_rule_id)
    )
    return list(result.scalars().all())


async def get_comparison_result(db: AsyncSession, set_id: str, rule_id: str) -> ComparisonResult | None:
    result = await db.execute(
        select(ComparisonResult).where(
            ComparisonResult.matching_set_id == set_id,
            ComparisonResult.comparison_rule_id == rule_id,
        )
    )
    return result.scalar_one_or_none()


async def upsert_comparison_result(
    db: AsyncSession,
    *,
    set_id: str,
    rule_id: str,
    status: str,
    note: str | None = None,
    override: bool = False,
) -> ComparisonResult:
    """
    Record a comparison outcome.

    Automatic evaluations (``override=False``) never replace a result an
    operator has forced or rejected.
    """
    existing = await get_comparison_result(db, set_id, rule_id)
    if existing is None:
        existing = ComparisonResult(matching_set_id=set_id, comparison_rule_id=rule_id)
        db.add(existing)
    elif not override and existing.status in LOCKED_COMPARISON_STATUSES:
        return existing

    existing.status = status
    existing.note = note
    existing.resolved_at = utcnow() if status != ComparisonStatus.PENDING else None
    await db.flush()
    return existing
