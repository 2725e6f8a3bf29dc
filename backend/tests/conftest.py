"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from app.core.constants import DefinitionKind
from app.db.models import Base
from app.db.session import build_engine, build_session_factory
from app.engine.coordinator import RunCoordinator
from app.engine.formula import FormulaEvaluator
from app.engine.graph import Edge, Node
from app.engine.interfaces import Collaborators, DocumentRecord
from app.engine.memory import InMemoryDefinitionStore, InMemoryDocumentStore, InMemoryGraphStore
from app.engine.state_store import ExecutionStateStore


# ─── Fake external services ───────────────────────────────

class FakeExtraction:
    """Returns canned ``{header, tables}`` per document id; ``gates`` block a document until set."""

    def __init__(self) -> None:
        self.results: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.gates: dict[str, asyncio.Event] = {}

    async def extract(self, document: DocumentRecord, schema: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((document.id, schema.get("id")))
        gate = self.gates.get(document.id)
        if gate is not None:
            await gate.wait()
        return self.results.get(document.id, {"header": {}, "tables": {}})


class FakeClassification:
    def __init__(self) -> None:
        self.labels: dict[str, str] = {}

    async def classify(self, document: DocumentRecord, labels: list[dict[str, Any]]) -> str:
        return self.labels.get(document.id, labels[0]["label"])


class FakeSplitting:
    def __init__(self) -> None:
        self.parts: dict[str, list[dict[str, Any]]] = {}

    async def split(self, document: DocumentRecord, instructions: Any) -> list[dict[str, Any]]:
        return self.parts.get(document.id, [])


class FakeHttp:
    def __init__(self) -> None:
        self.response: dict[str, Any] = {"status": 200, "body": {"ok": True}}
        self.error: Exception | None = None
        self.requests: list[dict[str, Any]] = []

    async def request(self, method, url, headers=None, body=None) -> dict[str, Any]:
        self.requests.append({"method": method, "url": url, "headers": headers, "body": body})
        if self.error is not None:
            raise self.error
        return self.response


# ─── Graph helpers ────────────────────────────────────────

def node(node_id: str, kind: str, name: str | None = None, **config: Any) -> Node:
    return Node(id=node_id, kind=kind, name=name or node_id, config=config)


def edge(source: str, target: str, port: str = "default", target_port: str | None = None) -> Edge:
    return Edge(source_node_id=source, target_node_id=target, source_port=port, target_port=target_port)


# ─── Fixtures ─────────────────────────────────────────────

@pytest_asyncio.fixture
async def state(tmp_path) -> ExecutionStateStore:
    """State store over a fresh SQLite file (one connection per session)."""
    engine = build_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield ExecutionStateStore(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def graphs() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def documents() -> InMemoryDocumentStore:
    store = InMemoryDocumentStore()
    for document_id in ("doc-1", "doc-2", "doc-3", "po-1", "po-2", "inv-1", "inv-2"):
        store.add(document_id, f"{document_id}.pdf")
    return store


@pytest.fixture
def definitions() -> InMemoryDefinitionStore:
    return InMemoryDefinitionStore()


@pytest.fixture
def extraction() -> FakeExtraction:
    return FakeExtraction()


@pytest.fixture
def classification() -> FakeClassification:
    return FakeClassification()


@pytest.fixture
def splitting() -> FakeSplitting:
    return FakeSplitting()


@pytest.fixture
def http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def services(graphs, documents, definitions, extraction, classification, splitting, http) -> Collaborators:
    return Collaborators(
        graph_store=graphs,
        document_store=documents,
        definition_store=definitions,
        extraction=extraction,
        classification=classification,
        splitting=splitting,
        http=http,
        formulas=FormulaEvaluator(),
    )


@pytest.fixture
def make_coordinator(state, services):
    def factory(concurrency: int = 1) -> RunCoordinator:
        return RunCoordinator(state, services, concurrency=concurrency)

    return factory


@pytest.fixture
def coordinator(make_coordinator) -> RunCoordinator:
    return make_coordinator()


# ─── Reconciliation fixture data ──────────────────────────

PO_INVOICE_RULE: dict[str, Any] = {
    "anchor_extractor_id": "po",
    "target_extractor_ids": ["invoice"],
    "extractor_names": {"po": "PO", "invoice": "Invoice"},
    "missing_row_policy": "zero",
    "variations": [
        {
            "id": "v1",
            "matching_links": [
                {
                    "left_extractor_id": "po",
                    "left_field": "po_number",
                    "right_extractor_id": "invoice",
                    "right_field": "po_ref",
                    "match_type": "exact",
                },
            ],
            "comparison_rules": [
                {"id": "total", "level": "header", "formula": "PO.total == Invoice.amount"},
            ],
        },
    ],
}


@pytest.fixture
def reconciliation_workflow(graphs, definitions, extraction):
    """upload → extract (po | invoice by IF) → reconcile → done."""
    definitions.add(DefinitionKind.EXTRACTOR, "po", {"header_fields": [{"field_name": "po_number", "is_mandatory": True}]})
    definitions.add(DefinitionKind.EXTRACTOR, "invoice", {"header_fields": []})
    definitions.add(DefinitionKind.RECONCILIATION_RULE, "po-invoice", PO_INVOICE_RULE)

    graphs.add_workflow(
        "wf-rec",
        [
            node("upload", "MANUAL_UPLOAD"),
            node("route", "IF", conditions=[{"field": "$document.kind", "operator": "equals", "value": "po"}]),
            node("extract-po", "EXTRACTOR", extractor_id="po"),
            node("extract-inv", "EXTRACTOR", extractor_id="invoice"),
            node(
                "reconcile",
                "RECONCILIATION",
                rule_id="po-invoice",
                slots=[
                    {"id": "po-in", "label": "PO", "extractor_id": "po"},
                    {"id": "inv-in", "label": "Invoice", "extractor_id": "invoice"},
                ],
            ),
            node("done", "SET_VALUE", assignments=[{"field": "done", "value": "{{ true }}"}]),
        ],
        [
            edge("upload", "route"),
            edge("route", "extract-po", "true"),
            edge("route", "extract-inv", "false"),
            edge("extract-po", "reconcile", target_port="po-in"),
            edge("extract-inv", "reconcile", target_port="inv-in"),
            edge("reconcile", "done"),
        ],
    )

    def set_document(document_id: str, header: dict[str, Any], tables: dict[str, Any] | None = None) -> None:
        extraction.results[document_id] = {"header": header, "tables": tables or {}}

    return set_document
