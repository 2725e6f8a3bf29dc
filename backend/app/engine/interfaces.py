"""
Contracts of the engine's external collaborators.

The coordinator and processors only depend on these protocols; the
default SQL-backed stores live in ``app.engine.stores`` and the httpx
service clients in ``app.engine.clients``.  Tests inject in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from app.engine.formula import FormulaEvaluator
from app.engine.graph import Edge, Node


@dataclass
class DocumentRecord:
    id: str
    file_name: str | None = None
    file_url: str | None = None
    file_type: str | None = None
    parent_document_id: str | None = None


class GraphStore(Protocol):
    async def get_nodes(self, workflow_id: str) -> list[Node]: ...

    async def get_edges(self, workflow_id: str) -> list[Edge]: ...

    async def get_node(self, node_id: str) -> tuple[str, Node] | None:
        """Return ``(workflow_id, node)`` or None."""
        ...


class DocumentStore(Protocol):
    async def get(self, document_id: str) -> DocumentRecord | None: ...

    async def create(
        self,
        *,
        file_name: str | None,
        file_url: str | None = None,
        file_type: str | None = None,
        parent_document_id: str | None = None,
    ) -> DocumentRecord: ...


class DefinitionStore(Protocol):
    async def get(self, kind: str, definition_id: str) -> dict[str, Any] | None: ...


class ExtractionService(Protocol):
    async def extract(self, document: DocumentRecord, schema: dict[str, Any]) -> dict[str, Any]:
        """Return ``{"header": {...}, "tables": {name: [row, ...]}}``."""
        ...


class ClassificationService(Protocol):
    async def classify(self, document: DocumentRecord, labels: list[dict[str, Any]]) -> str:
        """Return one of the ``label`` values of ``labels``."""
        ...


class SplittingService(Protocol):
    async def split(self, document: DocumentRecord, instructions: Any) -> list[dict[str, Any]]:
        """Return ``[{"content": ..., "label": ...}, ...]``."""
        ...


class HttpClient(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> dict[str, Any]:
        """Return ``{"status": int, "body": ...}``; raise on transport errors."""
        ...


@dataclass
class Collaborators:
    """Everything a processor may need, injected once per coordinator."""

    graph_store: GraphStore
    document_store: DocumentStore
    definition_store: DefinitionStore
    extraction: ExtractionService
    classification: ClassificationService
    splitting: SplittingService
    http: HttpClient
    formulas: FormulaEvaluator
