"""
SQL-backed graph, document and definition stores.

Each call opens its own short transaction through the state store's
session factory and returns plain engine values, never ORM rows.
"""

from __future__ import annotations

from typing import Any

from app.core.constants import DEFAULT_PORT
from app.engine.graph import Edge, Node
from app.engine.interfaces import DocumentRecord
from app.engine.state_store import ExecutionStateStore
from app.repositories import documents as document_repository
from app.repositories import graph as graph_repository


def _node(row) -> Node:
    return Node(id=row.id, kind=row.kind, name=row.name, config=dict(row.config or {}))


def _document(row) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        file_name=row.file_name,
        file_url=row.file_url,
        file_type=row.file_type,
        parent_document_id=row.parent_document_id,
    )


class SqlGraphStore:
    def __init__(self, state: ExecutionStateStore) -> None:
        self.state = state

    async def get_nodes(self, workflow_id: str) -> list[Node]:
        async with self.state.transaction() as db:
            return [_node(row) for row in await graph_repository.list_nodes(db, workflow_id)]

    async def get_edges(self, workflow_id: str) -> list[Edge]:
        async with self.state.transaction() as db:
            rows = await graph_repository.list_edges(db, workflow_id)
            return [
                Edge(
                    source_node_id=row.source_node_id,
                    target_node_id=row.target_node_id,
                    source_port=row.source_port or DEFAULT_PORT,
                    target_port=row.target_port,
                )
                for row in rows
            ]

    async def get_node(self, node_id: str) -> tuple[str, Node] | None:
        async with self.state.transaction() as db:
            row = await graph_repository.get_node(db, node_id)
            if row is None:
                return None
            return row.workflow_id, _node(row)


class SqlDocumentStore:
    def __init__(self, state: ExecutionStateStore) -> None:
        self.state = state

    async def get(self, document_id: str) -> DocumentRecord | None:
        async with self.state.transaction() as db:
            row = await document_repository.get_document(db, document_id)
            return _document(row) if row is not None else None

    async def create(
        self,
        *,
        file_name: str | None,
        file_url: str | None = None,
        file_type: str | None = None,
        parent_document_id: str | None = None,
    ) -> DocumentRecord:
        async with self.state.transaction() as db:
            row = await document_repository.create_document(
                db,
                file_name=file_name,
                file_url=file_url,
                file_type=file_type,
                parent_document_id=parent_document_id,
            )
            return _document(row)


class SqlDefinitionStore:
    def __init__(self, state: ExecutionStateStore) -> None:
        self.state = state

    async def get(self, kind: str, definition_id: str) -> dict[str, Any] | None:
        async with self.state.transaction() as db:
            row = await document_repository.get_definition(db, str(kind), str(definition_id))
            if row is None:
                return None
            return {"name": row.name, **(row.body or {}), "id": row.id}
