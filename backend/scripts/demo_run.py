#!/usr/bin/env python3
"""
Demo script — run the workflow engine locally without Postgres or services.

Uses an in-memory SQLite database, in-memory graph / definition stores and
canned extraction results to show routing, holds and reconciliation.

Usage:
    cd backend
    python -m scripts.demo_run
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


# ─── Canned external services ─────────────────────────────
class CannedExtraction:
    def __init__(self, results):
        self.results = results

    async def extract(self, document, schema):
        return self.results[document.id]


class NoService:
    async def classify(self, document, labels):
        return labels[0]["label"]

    async def split(self, document, instructions):
        return []

    async def request(self, method, url, headers=None, body=None):
        return {"status": 200, "body": {"ok": True}}


def build_engine():
    from sqlalchemy.pool import StaticPool

    from app.core.constants import DefinitionKind
    from app.db.session import build_engine as build_db_engine, build_session_factory
    from app.engine.coordinator import RunCoordinator
    from app.engine.formula import FormulaEvaluator
    from app.engine.graph import Edge, Node
    from app.engine.interfaces import Collaborators
    from app.engine.memory import InMemoryDefinitionStore, InMemoryDocumentStore, InMemoryGraphStore
    from app.engine.state_store import ExecutionStateStore

    db_engine = build_db_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    state = ExecutionStateStore(build_session_factory(db_engine))

    graphs = InMemoryGraphStore()
    graphs.add_workflow(
        "wf-procure",
        [
            Node("upload", "MANUAL_UPLOAD", "Upload"),
            Node("is-po", "IF", "Is purchase order?", {
                "conditions": [{"field": "$document.doc_type", "operator": "equals", "value": "po"}],
            }),
            Node("extract-po", "EXTRACTOR", "Extract PO", {"extractor_id": "po"}),
            Node("extract-inv", "EXTRACTOR", "Extract invoice", {"extractor_id": "invoice"}),
            Node("match", "RECONCILIATION", "PO ↔ Invoice", {
                "rule_id": "po-invoice",
                "slots": [
                    {"id": "po-in", "label": "PO", "extractor_id": "po"},
                    {"id": "inv-in", "label": "Invoice", "extractor_id": "invoice"},
                ],
            }),
            Node("approve", "SET_VALUE", "Approve", {
                "assignments": [{"field": "approved", "value": "{{ true }}"}],
            }),
        ],
        [
            Edge("upload", "is-po"),
            Edge("is-po", "extract-po", "true"),
            Edge("is-po", "extract-inv", "false"),
            Edge("extract-po", "match", target_port="po-in"),
            Edge("extract-inv", "match", target_port="inv-in"),
            Edge("match", "approve"),
        ],
    )

    definitions = InMemoryDefinitionStore()
    definitions.add(DefinitionKind.EXTRACTOR, "po", {"header_fields": [{"field_name": "po_number", "is_mandatory": True}]})
    definitions.add(DefinitionKind.EXTRACTOR, "invoice", {"header_fields": []})
    definitions.add(DefinitionKind.RECONCILIATION_RULE, "po-invoice", {
        "anchor_extractor_id": "po",
        "target_extractor_ids": ["invoice"],
        "extractor_names": {"po": "PO", "invoice": "Invoice"},
        "variations": [{
            "id": "v1",
            "matching_links": [{
                "left_extractor_id": "po", "left_field": "po_number",
                "right_extractor_id": "invoice", "right_field": "po_ref",
                "match_type": "exact",
            }],
            "comparison_rules": [{
                "id": "total", "level": "header", "formula": "PO.total == Invoice.amount",
                "tolerance_type": "percentage", "tolerance_value": 1,
            }],
        }],
    })

    documents = InMemoryDocumentStore()
    documents.add("doc-po", "po-4711.pdf")
    documents.add("doc-inv", "invoice-0815.pdf")

    services = Collaborators(
        graph_store=graphs,
        document_store=documents,
        definition_store=definitions,
        extraction=CannedExtraction({
            "doc-po": {"header": {"po_number": "PO-4711", "total": 1000}, "tables": {}},
            "doc-inv": {"header": {"po_ref": "PO-4711", "amount": 1005}, "tables": {}},
        }),
        classification=NoService(),
        splitting=NoService(),
        http=NoService(),
        formulas=FormulaEvaluator(),
    )
    return db_engine, RunCoordinator(state, services, concurrency=1)


async def run_reconciliation_demo():
    from app.db.models import Base

    db_engine, coordinator = build_engine()
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    print("\n" + "=" * 70)
    print("  DEMO: Purchase order and invoice reconciliation")
    print("=" * 70)

    po_run = await coordinator.start_run(
        "wf-procure", [{"document_id": "doc-po", "metadata": {"doc_type": "po"}}]
    )
    _print_run(await coordinator.get_run_status(po_run), await coordinator.state.list_run_executions(po_run))

    inv_run = await coordinator.start_run(
        "wf-procure", [{"document_id": "doc-inv", "metadata": {"doc_type": "invoice"}}]
    )
    _print_run(await coordinator.get_run_status(inv_run), await coordinator.state.list_run_executions(inv_run))

    print("  PO run after reconciliation:")
    _print_run(await coordinator.get_run_status(po_run), await coordinator.state.list_run_executions(po_run))

    print("  Node summary (invoice run):")
    for row in await coordinator.get_node_status_summary(inv_run):
        print(f"    {row['name']:<24} completed={row['completed']} held={row['held']} failed={row['failed']}")

    await db_engine.dispose()


def _print_run(run, executions):
    print(f"\n{'─' * 50}")
    print(f"  Run ID   : {run['id'][:12]}...")
    print(f"  Status   : {run['status']}")
    for execution in executions:
        icon = "✓" if execution.status == "completed" else "⏸" if execution.status == "held" else "✗"
        print(f"    {icon} {execution.document_id}: {execution.status} at {execution.current_node_id}")
        if execution.metadata_.get("approved"):
            print("        approved after reconciliation")
    print(f"{'─' * 50}\n")


async def main():
    from app.core.logging import setup_logging
    setup_logging("WARNING")     # quiet logs, show formatted output only

    await run_reconciliation_demo()
    print("\n✅ Demo completed.\n")


if __name__ == "__main__":
    asyncio.run(main())
