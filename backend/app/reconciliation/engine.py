"""
ReconciliationEngine — correlates documents from different graph paths
into matching sets and decides when a set is reconciled.

Flow for one arrival (extractor role X, rule R):

    1. X is R's anchor          → new pending set with X as first member, Hold
    2. X is a target            → first pending set (oldest first) and first
                                  variation (declaration order) whose links
                                  X satisfies claims the document
    3. nothing claims it        → Hold
    4. set still missing roles  → Hold
    5. set complete             → evaluate comparison rules per variation
    6. a variation passes       → set reconciled, Continue, advance the others
    7. none passes              → Hold for human review

The coordinator runs ``process()`` and the resulting state transition
under the per-rule ordering guard, so steps 2–6 never interleave for one
rule.  Everything for one arrival is written in a single transaction.
"""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import (
    ComparisonStatus,
    DefinitionKind,
    HeldStatus,
    HoldKind,
    MatchingSetStatus,
)
from app.core.logging import get_logger
from app.db.models.base import utcnow
from app.db.models.matching_set import MatchingSet
from app.engine.errors import ConsistencyViolation, ReconciliationConfigError
from app.engine.formula import FormulaEvaluator
from app.engine.graph import Node
from app.engine.interfaces import DefinitionStore
from app.engine.results import Continue, Hold, RunContext
from app.engine.state_store import ExecutionStateStore
from app.reconciliation.comparison import ComparisonRunner
from app.reconciliation.matching import document_qualifies, header_of
from app.repositories import executions as execution_repository
from app.repositories import reconciliation as reconciliation_repository

logger = get_logger(__name__)

# Statuses that count as "not pending" when deciding whether a variation passes
PASSING_COMPARISON_STATUSES = (ComparisonStatus.AUTO.value, ComparisonStatus.FORCE.value)


def ordering_key_for(rule_id: str) -> str:
    return f"reconciliation:{rule_id}"


def expected_roles(rule: Mapping[str, Any]) -> list[str]:
    return [rule["anchor_extractor_id"], *(rule.get("target_extractor_ids") or [])]


class ReconciliationEngine:
    """Matching, comparison and set resolution against persisted state."""

    def __init__(
        self,
        state: ExecutionStateStore,
        definitions: DefinitionStore,
        formulas: FormulaEvaluator,
    ) -> None:
        self.state = state
        self.definitions = definitions
        self.comparisons = ComparisonRunner(formulas)

    # ─── Definitions ──────────────────────────────────────

    async def load_rule(self, rule_id: str, *, node_id: str | None = None) -> dict[str, Any]:
        rule = await self.definitions.get(DefinitionKind.RECONCILIATION_RULE, rule_id)
        if rule is None:
            raise ReconciliationConfigError(f"Reconciliation rule {rule_id} not found", node_id=node_id)
        if not rule.get("anchor_extractor_id"):
            raise ReconciliationConfigError(f"Reconciliation rule {rule_id} has no anchor extractor", node_id=node_id)
        return {**rule, "id": rule.get("id") or rule_id}

    @staticmethod
    def resolve_slot(node: Node, target_port: str | None) -> dict[str, Any]:
        for slot in (node.config or {}).get("slots") or []:
            if target_port is not None and str(slot.get("id")) == str(target_port):
                return slot
        return {}

    # ─── Arrival ──────────────────────────────────────────

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue | Hold:
        rule_id = (node.config or {}).get("rule_id")
        if not rule_id:
            raise ReconciliationConfigError("Reconciliation node has no rule_id", node_id=node.id)
        rule = await self.load_rule(rule_id, node_id=node.id)

        slot = self.resolve_slot(node, ctx.target_port)
        extractor_id = slot.get("extractor_id") or metadata.get("extractor_id")
        if not extractor_id:
            raise ReconciliationConfigError(
                "Cannot determine the extractor role of the arriving document",
                node_id=node.id,
                execution_id=ctx.execution_id,
            )

        log = logger.bind(rule_id=rule_id, extractor_id=extractor_id, node_id=node.id, **ctx.log_context())

        async with self.state.transaction() as db:
            await reconciliation_repository.upsert_held_document(
                db,
                execution_id=ctx.execution_id,
                node_id=node.id,
                hold_kind=HoldKind.RECONCILIATION.value,
                extractor_id=extractor_id,
                rule_id=rule_id,
                slot_id=slot.get("id") or ctx.target_port,
                slot_label=slot.get("label"),
                reason="Awaiting reconciliation",
            )

            # ── 1. Anchor ─────────────────────────
            if extractor_id == rule["anchor_extractor_id"]:
                matching_set = await reconciliation_repository.create_matching_set(
                    db, rule_id=rule_id, anchor_execution_id=ctx.execution_id
                )
                await self._add_member(db, matching_set.id, ctx.execution_id, extractor_id)
                log.info("Anchor opened matching set", matching_set_id=matching_set.id)
                return Hold(reason="Waiting for matching documents")

            if extractor_id not in (rule.get("target_extractor_ids") or []):
                raise ReconciliationConfigError(
                    f"Extractor {extractor_id} is not part of rule {rule_id}",
                    node_id=node.id,
                    execution_id=ctx.execution_id,
                )

            # ── 2. Claim ──────────────────────────
            claimed = await self._claim(db, rule, extractor_id, metadata, ctx.execution_id)
            if claimed is None:
                log.info("No pending matching set accepted the document")
                return Hold(reason="No matching set found")
            matching_set, variation_id = claimed
            log.info("Document joined matching set", matching_set_id=matching_set.id, variation_id=variation_id)

            # ── 4. Completeness ───────────────────
            docs = await reconciliation_repository.list_set_docs(db, matching_set.id)
            present = {doc.extractor_id for doc in docs}
            missing = [role for role in expected_roles(rule) if role not in present]
            if missing:
                return Hold(reason=f"Waiting for: {', '.join(missing)}")

            # ── 5. Compare ────────────────────────
            passing = await self.evaluate_set(db, matching_set, rule, current={ctx.execution_id: metadata})
            if passing is None:
                log.info("Matching set complete but comparisons failed", matching_set_id=matching_set.id)
                return Hold(reason="Comparison rules not satisfied; awaiting review")

            # ── 6. Reconciled ─────────────────────
            members = await self.resolve_set(db, matching_set, passing, MatchingSetStatus.RECONCILED)
            log.info("Matching set reconciled", matching_set_id=matching_set.id, variation_id=passing)

        return Continue(
            output_metadata={**metadata, "_reconciled": True},
            advance_executions=[m for m in members if m != ctx.execution_id],
        )

    async def _add_member(self, db: AsyncSession, set_id: str, execution_id: str, extractor_id: str) -> None:
        try:
            await reconciliation_repository.add_set_doc(
                db, set_id=set_id, execution_id=execution_id, extractor_id=extractor_id
            )
        except IntegrityError as exc:
            raise ConsistencyViolation(
                f"Matching set {set_id} already holds extractor role {extractor_id}",
                execution_id=execution_id,
                details={"matching_set_id": set_id},
            ) from exc

    async def _claim(
        self,
        db: AsyncSession,
        rule: Mapping[str, Any],
        extractor_id: str,
        metadata: Mapping[str, Any],
        execution_id: str,
    ) -> tuple[MatchingSet, str] | None:
        pending = await reconciliation_repository.list_pending_sets(db, rule["id"])
        docs_by_set = await reconciliation_repository.list_set_docs_for_sets(db, [s.id for s in pending])
        member_ids = [doc.document_execution_id for docs in docs_by_set.values() for doc in docs]
        metadata_by_execution = {
            e.id: e.metadata_ or {} for e in await execution_repository.get_executions(db, member_ids)
        }
        record = header_of(metadata)

        for matching_set in pending:
            docs = docs_by_set.get(matching_set.id, [])
            if any(doc.extractor_id == extractor_id for doc in docs):
                continue
            members = {
                doc.extractor_id: header_of(metadata_by_execution.get(doc.document_execution_id, {}))
                for doc in docs
            }
            for variation in rule.get("variations") or []:
                if document_qualifies(extractor_id, record, members, variation.get("matching_links") or []):
                    await self._add_member(db, matching_set.id, execution_id, extractor_id)
                    await reconciliation_repository.update_matching_set(
                        db, matching_set.id, variation_id=str(variation.get("id"))
                    )
                    return matching_set, str(variation.get("id"))
        return None

    # ─── Comparison / resolution (shared with review) ─────

    async def evaluate_set(
        self,
        db: AsyncSession,
        matching_set: MatchingSet,
        rule: Mapping[str, Any],
        *,
        current: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> str | None:
        """
        Run every variation's comparison rules in order and record results.

        Returns the id of the first variation whose rules are all auto /
        force, or None.  ``current`` overrides stored metadata for
        executions whose latest data is not persisted yet.
        """
        docs = await reconciliation_repository.list_set_docs(db, matching_set.id)
        executions = await execution_repository.get_executions(db, [d.document_execution_id for d in docs])
        metadata_by_execution = {e.id: dict(e.metadata_ or {}) for e in executions}
        metadata_by_execution.update({k: dict(v) for k, v in (current or {}).items()})
        members = {d.extractor_id: metadata_by_execution.get(d.document_execution_id, {}) for d in docs}

        for variation in rule.get("variations") or []:
            outcomes = self.comparisons.evaluate_variation(rule, variation, members)
            passed = True
            for outcome in outcomes:
                result = await reconciliation_repository.upsert_comparison_result(
                    db,
                    set_id=matching_set.id,
                    rule_id=outcome.rule_id,
                    status=(ComparisonStatus.AUTO if outcome.passed else ComparisonStatus.PENDING).value,
                    note=outcome.note,
                )
                if result.status not in PASSING_COMPARISON_STATUSES:
                    passed = False
            if passed:
                return str(variation.get("id"))
        return None

    async def resolve_set(
        self,
        db: AsyncSession,
        matching_set: MatchingSet,
        variation_id: str | None,
        status: MatchingSetStatus,
    ) -> list[str]:
        """Mark the set resolved and its members' holds reconciled; return member execution ids."""
        await reconciliation_repository.update_matching_set(
            db,
            matching_set.id,
            status=status.value,
            variation_id=variation_id or matching_set.variation_id,
            resolved_at=utcnow(),
        )
        docs = await reconciliation_repository.list_set_docs(db, matching_set.id)
        member_ids = [doc.document_execution_id for doc in docs]
        await reconciliation_repository.set_held_status(
            db,
            member_ids,
            HeldStatus.RECONCILED.value,
            rule_id=matching_set.rule_id,
            only_open=True,
        )
        return member_ids
