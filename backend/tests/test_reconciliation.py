"""Tests for cross-document reconciliation through the coordinator."""

import asyncio
import copy

import pytest
from sqlalchemy import select

from app.core.constants import DefinitionKind
from app.db.models.matching_set import MatchingSet
from app.repositories import reconciliation as reconciliation_repository

from conftest import PO_INVOICE_RULE, node

PO = {"metadata": {"kind": "po"}}
INVOICE = {"metadata": {"kind": "invoice"}}


async def matching_sets(state):
    async with state.transaction() as db:
        result = await db.execute(select(MatchingSet).order_by(MatchingSet.created_at, MatchingSet.id))
        return list(result.scalars().all())


async def set_members(state, set_id):
    async with state.transaction() as db:
        return {doc.extractor_id: doc.document_execution_id for doc in await reconciliation_repository.list_set_docs(db, set_id)}


async def comparison_results(state, set_id):
    async with state.transaction() as db:
        return {
            r.comparison_rule_id: (r.status, r.note)
            for r in await reconciliation_repository.list_comparison_results(db, set_id)
        }


async def wait_for_status(state, run_id, document_id, status):
    async def poll():
        while True:
            for execution in await state.list_run_executions(run_id):
                if execution.document_id == document_id and execution.status == status:
                    return execution
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(poll(), timeout=5)


async def run_document(coordinator, state, document_id, role):
    run_id = await coordinator.start_run("wf-rec", [{"document_id": document_id, **role}])
    executions = await state.list_run_executions(run_id)
    assert len(executions) == 1
    return run_id, executions[0]


class TestReconciliationFlow:
    @pytest.mark.asyncio
    async def test_anchor_then_target_reconciles_and_advances_both(self, coordinator, state, reconciliation_workflow):
        """Test that PO holds, the matching invoice reconciles, and both continue."""
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 100})

        po_run, po = await run_document(coordinator, state, "po-1", PO)
        assert po.status == "held"
        assert po.current_node_id == "reconcile"
        [pending] = await matching_sets(state)
        assert pending.status == "pending"
        assert pending.anchor_document_execution_id == po.id

        _, invoice = await run_document(coordinator, state, "inv-1", INVOICE)

        assert invoice.status == "completed"
        assert invoice.metadata_["_reconciled"] is True
        assert invoice.metadata_["done"] is True

        po = await state.get_execution(po.id)
        assert po.status == "completed"
        assert po.metadata_["done"] is True
        logs = [(log.node_id, log.status) for log in await state.list_logs(po.id)]
        assert logs[-2:] == [("reconcile", "held"), ("done", "completed")]

        [reconciled] = await matching_sets(state)
        assert reconciled.status == "reconciled"
        assert reconciled.variation_id == "v1"
        assert reconciled.resolved_at is not None
        assert await set_members(state, reconciled.id) == {"po": po.id, "invoice": invoice.id}
        assert await comparison_results(state, reconciled.id) == {"total": ("auto", None)}

        for execution_id in (po.id, invoice.id):
            held = await state.list_held_documents(execution_id)
            assert [(h.hold_kind, h.status, h.rule_id) for h in held] == [("reconciliation", "reconciled", "po-invoice")]

        run = await coordinator.get_run_status(po_run)
        assert run["status"] == "completed"

    @pytest.mark.asyncio
    async def test_comparison_mismatch_holds_for_review(self, coordinator, state, reconciliation_workflow):
        """Test that a complete set failing its comparisons stays pending."""
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 150})

        _, po = await run_document(coordinator, state, "po-1", PO)
        _, invoice = await run_document(coordinator, state, "inv-1", INVOICE)

        assert invoice.status == "held"
        assert (await state.get_execution(po.id)).status == "held"
        [pending] = await matching_sets(state)
        assert pending.status == "pending"
        assert set(await set_members(state, pending.id)) == {"po", "invoice"}
        status, note = (await comparison_results(state, pending.id))["total"]
        assert status == "pending"
        assert "false" in note

    @pytest.mark.asyncio
    async def test_unmatched_target_is_held_without_a_set(self, coordinator, state, reconciliation_workflow):
        """Test that a target whose links fail joins no set."""
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-999", "amount": 100})

        _, po = await run_document(coordinator, state, "po-1", PO)
        _, invoice = await run_document(coordinator, state, "inv-1", INVOICE)

        assert invoice.status == "held"
        held = (await state.list_held_documents(invoice.id))[0]
        assert held.status == "held"
        assert held.slot_id == "inv-in"
        assert held.slot_label == "Invoice"
        [pending] = await matching_sets(state)
        assert await set_members(state, pending.id) == {"po": po.id}

    @pytest.mark.asyncio
    async def test_target_before_anchor_waits(self, coordinator, state, reconciliation_workflow):
        """Test that a target arriving first holds and the later anchor opens its own set."""
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 100})

        _, invoice = await run_document(coordinator, state, "inv-1", INVOICE)
        assert invoice.status == "held"
        assert await matching_sets(state) == []

        _, po = await run_document(coordinator, state, "po-1", PO)
        assert po.status == "held"
        [pending] = await matching_sets(state)
        assert await set_members(state, pending.id) == {"po": po.id}

    @pytest.mark.asyncio
    async def test_oldest_pending_set_claims_first(self, coordinator, state, reconciliation_workflow):
        """Test that with two candidate sets the oldest one wins."""
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("po-2", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 100})

        _, first = await run_document(coordinator, state, "po-1", PO)
        _, second = await run_document(coordinator, state, "po-2", PO)
        await run_document(coordinator, state, "inv-1", INVOICE)

        sets = {s.anchor_document_execution_id: s for s in await matching_sets(state)}
        assert sets[first.id].status == "reconciled"
        assert sets[second.id].status == "pending"
        assert (await state.get_execution(second.id)).status == "held"

    @pytest.mark.asyncio
    async def test_percentage_tolerance(self, coordinator, state, definitions, reconciliation_workflow):
        """Test that a bare equality passes within its tolerance."""
        rule = copy.deepcopy(PO_INVOICE_RULE)
        rule["variations"][0]["comparison_rules"][0].update(tolerance_type="percentage", tolerance_value=1)
        definitions.add(DefinitionKind.RECONCILIATION_RULE, "po-invoice", rule)
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 100.5})

        await run_document(coordinator, state, "po-1", PO)
        _, invoice = await run_document(coordinator, state, "inv-1", INVOICE)

        assert invoice.status == "completed"
        [reconciled] = await matching_sets(state)
        status, note = (await comparison_results(state, reconciled.id))["total"]
        assert status == "auto"
        assert "tolerance" in note

    @pytest.mark.asyncio
    async def test_outside_tolerance_holds(self, coordinator, state, definitions, reconciliation_workflow):
        """Test that a difference beyond the tolerance does not reconcile."""
        rule = copy.deepcopy(PO_INVOICE_RULE)
        rule["variations"][0]["comparison_rules"][0].update(tolerance_type="absolute", tolerance_value=1)
        definitions.add(DefinitionKind.RECONCILIATION_RULE, "po-invoice", rule)
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 102})

        await run_document(coordinator, state, "po-1", PO)
        _, invoice = await run_document(coordinator, state, "inv-1", INVOICE)

        assert invoice.status == "held"

    @pytest.mark.asyncio
    async def test_second_variation_can_pass(self, coordinator, state, definitions, reconciliation_workflow):
        """Test that variations are tried in order and the first passing one is recorded."""
        rule = copy.deepcopy(PO_INVOICE_RULE)
        strict = rule["variations"][0]
        loose = copy.deepcopy(strict)
        loose["id"] = "v2"
        loose["comparison_rules"] = [{"id": "rounded", "formula": "round(PO.total) == round(Invoice.amount)"}]
        rule["variations"] = [strict, loose]
        definitions.add(DefinitionKind.RECONCILIATION_RULE, "po-invoice", rule)
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 100.2})

        await run_document(coordinator, state, "po-1", PO)
        _, invoice = await run_document(coordinator, state, "inv-1", INVOICE)

        assert invoice.status == "completed"
        [reconciled] = await matching_sets(state)
        assert reconciled.variation_id == "v2"
        results = await comparison_results(state, reconciled.id)
        assert results["total"][0] == "pending"
        assert results["rounded"][0] == "auto"

    @pytest.mark.asyncio
    async def test_unknown_rule_fails_the_step(self, coordinator, state, graphs):
        """Test that a missing rule definition is a step failure."""
        graphs.add_workflow("wf-norule", [node("reconcile", "RECONCILIATION", rule_id="ghost")], [])

        run_id = await coordinator.start_run("wf-norule", [{"document_id": "doc-1", "metadata": {"extractor_id": "po"}}])

        [execution] = await state.list_run_executions(run_id)
        assert execution.status == "failed"
        assert "ghost" in execution.error_message


class TestConcurrentArrivals:
    @pytest.mark.asyncio
    async def test_overlapping_targets_claim_one_slot(self, make_coordinator, state, reconciliation_workflow):
        """Test that two invoices racing for one PO never both join its set."""
        coordinator = make_coordinator(concurrency=4)
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 100})
        reconciliation_workflow("inv-2", {"po_ref": "PO-1", "amount": 100})

        _, po = await run_document(coordinator, state, "po-1", PO)
        run_id = await coordinator.start_run(
            "wf-rec",
            [{"document_id": "inv-1", **INVOICE}, {"document_id": "inv-2", **INVOICE}],
        )

        [matching_set] = await matching_sets(state)
        members = await set_members(state, matching_set.id)
        assert set(members) == {"po", "invoice"}
        assert matching_set.status == "reconciled"

        statuses = sorted(e.status for e in await state.list_run_executions(run_id))
        assert statuses == ["completed", "held"]
        assert (await state.get_execution(po.id)).status == "completed"
        assert len(coordinator.guard) == 0

    @pytest.mark.asyncio
    async def test_overlapping_anchor_and_target_create_one_set(self, make_coordinator, state, reconciliation_workflow):
        """Test that an anchor and a target in flight together yield exactly one set."""
        coordinator = make_coordinator(concurrency=4)
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 100})

        await coordinator.start_run(
            "wf-rec",
            [{"document_id": "po-1", **PO}, {"document_id": "inv-1", **INVOICE}],
        )

        [matching_set] = await matching_sets(state)
        members = await set_members(state, matching_set.id)
        assert members["po"] == matching_set.anchor_document_execution_id
        assert len(coordinator.guard) == 0

    @pytest.mark.asyncio
    async def test_each_anchor_gets_its_own_set(self, make_coordinator, state, reconciliation_workflow):
        """Test that concurrent anchors never share a set."""
        coordinator = make_coordinator(concurrency=4)
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("po-2", {"po_number": "PO-2", "total": 200})

        run_id = await coordinator.start_run(
            "wf-rec",
            [{"document_id": "po-1", **PO}, {"document_id": "po-2", **PO}],
        )

        sets = await matching_sets(state)
        anchors = {s.anchor_document_execution_id for s in sets}
        assert len(sets) == 2
        assert anchors == {e.id for e in await state.list_run_executions(run_id)}


class TestOverlappingRuns:
    @pytest.mark.asyncio
    async def test_busy_run_is_not_finalized_by_another_drain(
        self, make_coordinator, state, extraction, reconciliation_workflow
    ):
        """Test that advancing a held PO from another run leaves its still-working run running."""
        coordinator = make_coordinator(concurrency=2)
        reconciliation_workflow("po-1", {"po_number": "PO-1", "total": 100})
        reconciliation_workflow("inv-1", {"po_ref": "PO-1", "amount": 100})
        reconciliation_workflow("inv-2", {"po_ref": "PO-9", "amount": 5})
        gate = asyncio.Event()
        extraction.gates["inv-2"] = gate

        run_a = await coordinator.start_run(
            "wf-rec",
            [{"document_id": "po-1", **PO}, {"document_id": "inv-2", **INVOICE}],
            background=True,
        )
        po = await wait_for_status(state, run_a, "po-1", "held")

        run_b = await coordinator.start_run("wf-rec", [{"document_id": "inv-1", **INVOICE}])

        assert (await coordinator.get_run_status(run_b))["status"] == "completed"
        assert (await state.get_execution(po.id)).status == "completed"
        still_working = await coordinator.get_run_status(run_a)
        assert still_working["status"] == "running"
        assert still_working["error_message"] is None

        gate.set()
        await coordinator.wait_idle()

        finished = await coordinator.get_run_status(run_a)
        assert finished["status"] == "completed"
        assert finished["error_message"] is None
        assert finished["execution_counts"] == {"completed": 1, "held": 1}
