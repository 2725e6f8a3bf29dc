"""
In-memory graph, document and definition stores.

Used by the local demo and the test-suite in place of the SQL stores;
graphs and definitions are registered up front and never change.
"""

from __future__ import annotations

import copy
import uuid
from typing import Any

from app.engine.graph import Edge, Node
from app.engine.interfaces import DocumentRecord


class InMemoryGraphStore:
    def __init__(self) -> None:
        self.nodes: dict[str, list[Node]] = {}
        self.edges: dict[str, list[Edge]] = {}

    def add_workflow(self, workflow_id: str, nodes: list[Node], edges: list[Edge]) -> None:
        self.nodes[workflow_id] = list(nodes)
        self.edges[workflow_id] = list(edges)

    def remove_node(self, workflow_id: str, node_id: str) -> None:
        self.nodes[workflow_id] = [n for n in self.nodes.get(workflow_id, []) if n.id != node_id]
        self.edges[workflow_id] = [
            e for e in self.edges.get(workflow_id, [])
            if node_id not in (e.source_node_id, e.target_node_id)
        ]

    async def get_nodes(self, workflow_id: str) -> list[Node]:
        return list(self.nodes.get(workflow_id, []))

    async def get_edges(self, workflow_id: str) -> list[Edge]:
        return list(self.edges.get(workflow_id, []))

    async def get_node(self, node_id: str) -> tuple[str, Node] | None:
        for workflow_id, nodes in self.nodes.items():
            for node in nodes:
                if node.id == node_id:
                    return workflow_id, node
        return None


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self.documents: dict[str, DocumentRecord] = {}

    def add(self, document_id: str, file_name: str | None = None, **fields: Any) -> DocumentRecord:
        record = DocumentRecord(id=document_id, file_name=file_name, **fields)
        self.documents[document_id] = record
        return record

    async def get(self, document_id: str) -> DocumentRecord | None:
        return self.documents.get(document_id)

    async def create(
        self,
        *,
        file_name: str | None,
        file_url: str | None = None,
        file_type: str | None = None,
        parent_document_id: str | None = None,
    ) -> DocumentRecord:
        record = DocumentRecord(
            id=str(uuid.uuid4()),
            file_name=file_name,
            file_url=file_url,
            file_type=file_type,
            parent_document_id=parent_document_id,
        )
        self.documents[record.id] = record
        return record


class InMemoryDefinitionStore:
    def __init__(self) -> None:
        self.definitions: dict[tuple[str, str], dict[str, Any]] = {}

    def add(self, kind: str, definition_id: str, body: dict[str, Any]) -> None:
        self.definitions[(str(kind), str(definition_id))] = {**body, "id": definition_id}

    async def get(self, kind: str, definition_id: str) -> dict[str, Any] | None:
        definition = self.definitions.get((str(kind), str(definition_id)))
        return copy.deepcopy(definition) if definition is not None else None
