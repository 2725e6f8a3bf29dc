"""
Human review of matching sets.

Operators force single comparison results, force or reject whole sets,
or re-run the comparison step after fixing data.  State changes for a set
run under the same per-rule ordering guard as live arrivals; members of a
set that ends up reconciled are resumed past their reconciliation node
once the guard is released.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from app.core.constants import (
    ComparisonStatus,
    ExecutionStatus,
    HeldStatus,
    HoldKind,
    MatchingSetStatus,
)
from app.core.logging import get_logger
from app.db.models.base import utcnow
from app.db.models.matching_set import MatchingSet
from app.engine.errors import ConsistencyViolation, NotFoundError
from app.reconciliation.engine import PASSING_COMPARISON_STATUSES, expected_roles, ordering_key_for
from app.repositories import reconciliation as reconciliation_repository

if TYPE_CHECKING:
    from app.engine.coordinator import RunCoordinator

logger = get_logger(__name__)


class ReconciliationReview:
    """Review operations over persisted reconciliation state."""

    def __init__(self, coordinator: "RunCoordinator") -> None:
        self.coordinator = coordinator
        self.state = coordinator.state
        self.engine = coordinator.reconciliation

    # ─── Queries ──────────────────────────────────────────

    async def get_matching_set(self, set_id: str) -> dict[str, Any]:
        async with self.state.transaction() as db:
            matching_set = await self._load_set(db, set_id)
            docs = await reconciliation_repository.list_set_docs(db, set_id)
            results = await reconciliation_repository.list_comparison_results(db, set_id)
            return {
                "id": matching_set.id,
                "rule_id": matching_set.rule_id,
                "variation_id": matching_set.variation_id,
                "anchor_document_execution_id": matching_set.anchor_document_execution_id,
                "status": matching_set.status,
                "created_at": matching_set.created_at,
                "resolved_at": matching_set.resolved_at,
                "documents": [
                    {"document_execution_id": d.document_execution_id, "extractor_id": d.extractor_id}
                    for d in docs
                ],
                "comparison_results": [
                    {
                        "comparison_rule_id": r.comparison_rule_id,
                        "status": r.status,
                        "note": r.note,
                        "resolved_at": r.resolved_at,
                    }
                    for r in results
                ],
            }

    # ─── Operations ───────────────────────────────────────

    async def force_reconcile_comparison(self, set_id: str, comparison_rule_id: str) -> dict[str, Any]:
        """Force one comparison result; reconciles the set when that completes a variation."""
        rule_id = await self._rule_id_of(set_id)
        rule = await self.engine.load_rule(rule_id)
        known = {
            comparison.get("id")
            for variation in rule.get("variations") or []
            for comparison in variation.get("comparison_rules") or []
        }
        if comparison_rule_id not in known:
            raise NotFoundError(
                f"Comparison rule {comparison_rule_id} is not part of rule {rule_id}",
                details={"matching_set_id": set_id, "comparison_rule_id": comparison_rule_id},
            )
        members: list[str] = []

        async with self.coordinator.guard.hold(ordering_key_for(rule_id)):
            async with self.state.transaction() as db:
                matching_set = await self._load_pending(db, set_id)
                await reconciliation_repository.upsert_comparison_result(
                    db,
                    set_id=set_id,
                    rule_id=comparison_rule_id,
                    status=ComparisonStatus.FORCE.value,
                    note="Forced by operator",
                    override=True,
                )
                variation_id = await self._passing_variation(db, matching_set, rule)
                if variation_id is not None:
                    members = await self.engine.resolve_set(
                        db, matching_set, variation_id, MatchingSetStatus.RECONCILED
                    )

        logger.info(
            "Comparison force-reconciled",
            matching_set_id=set_id,
            comparison_rule_id=comparison_rule_id,
            set_reconciled=bool(members),
        )
        await self._resume_members(set_id, rule_id, members)
        return await self.get_matching_set(set_id)

    async def force_reconcile_set(self, set_id: str) -> dict[str, Any]:
        """Reconcile regardless of comparisons; pending results become forced."""
        rule_id = await self._rule_id_of(set_id)

        async with self.coordinator.guard.hold(ordering_key_for(rule_id)):
            async with self.state.transaction() as db:
                matching_set = await self._load_pending(db, set_id)
                for result in await reconciliation_repository.list_comparison_results(db, set_id):
                    if result.status == ComparisonStatus.PENDING:
                        await reconciliation_repository.upsert_comparison_result(
                            db,
                            set_id=set_id,
                            rule_id=result.comparison_rule_id,
                            status=ComparisonStatus.FORCE.value,
                            note="Set forced by operator",
                            override=True,
                        )
                members = await self.engine.resolve_set(
                    db, matching_set, matching_set.variation_id, MatchingSetStatus.FORCE_RECONCILED
                )

        logger.info("Matching set force-reconciled", matching_set_id=set_id, members=len(members))
        await self._resume_members(set_id, rule_id, members)
        return await self.get_matching_set(set_id)

    async def reject_matching_set(self, set_id: str) -> dict[str, Any]:
        """Reject the set; member executions stay held."""
        rule_id = await self._rule_id_of(set_id)

        async with self.coordinator.guard.hold(ordering_key_for(rule_id)):
            async with self.state.transaction() as db:
                matching_set = await self._load_pending(db, set_id)
                await reconciliation_repository.update_matching_set(
                    db,
                    set_id,
                    status=MatchingSetStatus.REJECTED.value,
                    resolved_at=utcnow(),
                )
                docs = await reconciliation_repository.list_set_docs(db, set_id)
                await reconciliation_repository.set_held_status(
                    db,
                    [d.document_execution_id for d in docs],
                    HeldStatus.REJECTED.value,
                    rule_id=matching_set.rule_id,
                    only_open=True,
                )

        logger.info("Matching set rejected", matching_set_id=set_id)
        return await self.get_matching_set(set_id)

    async def rerun_comparisons(self, set_id: str) -> dict[str, Any]:
        """Re-evaluate comparison rules only; membership is left unchanged."""
        rule_id = await self._rule_id_of(set_id)
        rule = await self.engine.load_rule(rule_id)
        members: list[str] = []

        async with self.coordinator.guard.hold(ordering_key_for(rule_id)):
            async with self.state.transaction() as db:
                matching_set = await self._load_set(db, set_id)
                docs = await reconciliation_repository.list_set_docs(db, set_id)
                present = {d.extractor_id for d in docs}
                complete = all(role in present for role in expected_roles(rule))
                if complete:
                    passing = await self.engine.evaluate_set(db, matching_set, rule)
                    if passing is not None and matching_set.status == MatchingSetStatus.PENDING:
                        members = await self.engine.resolve_set(
                            db, matching_set, passing, MatchingSetStatus.RECONCILED
                        )

        logger.info(
            "Comparisons re-run",
            matching_set_id=set_id,
            complete=complete,
            set_reconciled=bool(members),
        )
        await self._resume_members(set_id, rule_id, members)
        return await self.get_matching_set(set_id)

    # ─── Helpers ──────────────────────────────────────────

    async def _rule_id_of(self, set_id: str) -> str:
        async with self.state.transaction() as db:
            return (await self._load_set(db, set_id)).rule_id

    @staticmethod
    async def _load_set(db, set_id: str) -> MatchingSet:
        matching_set = await reconciliation_repository.get_matching_set(db, set_id)
        if matching_set is None:
            raise NotFoundError(f"Matching set {set_id} not found", details={"matching_set_id": set_id})
        return matching_set

    async def _load_pending(self, db, set_id: str) -> MatchingSet:
        matching_set = await self._load_set(db, set_id)
        if matching_set.status != MatchingSetStatus.PENDING:
            raise ConsistencyViolation(
                f"Matching set {set_id} is already {matching_set.status}",
                details={"matching_set_id": set_id, "status": matching_set.status},
            )
        return matching_set

    async def _passing_variation(self, db, matching_set: MatchingSet, rule: dict[str, Any]) -> str | None:
        """First variation (in order) whose every comparison has a passing result, if the set is complete."""
        docs = await reconciliation_repository.list_set_docs(db, matching_set.id)
        present = {d.extractor_id for d in docs}
        if any(role not in present for role in expected_roles(rule)):
            return None

        results = {
            r.comparison_rule_id: r.status
            for r in await reconciliation_repository.list_comparison_results(db, matching_set.id)
        }
        for variation in rule.get("variations") or []:
            rule_ids = [str(c.get("id")) for c in variation.get("comparison_rules") or []]
            if all(results.get(rule_id) in PASSING_COMPARISON_STATUSES for rule_id in rule_ids):
                return str(variation.get("id"))
        return None

    async def _resume_members(self, set_id: str, rule_id: str, member_ids: list[str]) -> None:
        """Resume held members past the reconciliation node they wait at."""
        for execution in await self.state.get_executions(member_ids):
            if execution.status != ExecutionStatus.HELD:
                logger.warning(
                    "Skipping resume of member not held",
                    matching_set_id=set_id,
                    execution_id=execution.id,
                    status=execution.status,
                )
                continue
            held = [
                h for h in await self.state.list_held_documents(execution.id)
                if h.hold_kind == HoldKind.RECONCILIATION and h.rule_id == rule_id
            ]
            if not held:
                logger.error(
                    "Reconciled member has no reconciliation hold",
                    matching_set_id=set_id,
                    execution_id=execution.id,
                )
                continue
            try:
                await self.coordinator.resume_execution(execution.id, held[-1].node_id, execution.run_id)
            except ConsistencyViolation as exc:
                logger.error(
                    "Could not resume reconciled member",
                    matching_set_id=set_id,
                    execution_id=execution.id,
                    error=str(exc),
                )
